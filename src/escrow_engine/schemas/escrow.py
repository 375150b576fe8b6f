"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API and
MCP tools. They are separate from the domain snapshots and ORM rows to keep
clean boundaries between the API, the engine and the database layers.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from escrow_engine.domain.enums import EscrowStatus, EscrowType, MilestoneStatus
from escrow_engine.domain.models import CommandResult
from escrow_engine.services.registry import EscrowDraft, MilestoneDraft


def wallet_field(**kwargs):
    return Field(..., min_length=1, max_length=128, **kwargs)


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class MilestoneInput(BaseModel):
    description: str = Field(..., min_length=1, max_length=2000)
    percentage: Decimal = Field(..., gt=0, le=100, decimal_places=4)
    order: int | None = Field(default=None, ge=1)


class CreateEscrowRequest(BaseModel):
    """Request body for creating a new escrow contract."""

    escrow_type: EscrowType = Field(
        ...,
        description="mutual_confirmation, milestone or atomic_swap",
    )
    buyer_wallet: str = wallet_field()
    seller_wallet: str = wallet_field()
    token: str = Field(..., min_length=1, max_length=32, examples=["USDC"])
    buyer_amount: Decimal = Field(
        ...,
        gt=0,
        decimal_places=18,
        description="Buyer payment (or first swap leg)",
        examples=[100],
    )
    seller_amount: Decimal | None = Field(
        default=None,
        gt=0,
        decimal_places=18,
        description="Seller security deposit, or the second swap leg",
    )
    seller_token: str | None = Field(
        default=None,
        max_length=32,
        description="Token of the second swap leg (atomic swaps only)",
    )
    milestones: list[MilestoneInput] = Field(
        default_factory=list,
        description="Milestone breakdown; percentages must sum to 100",
    )
    timeout_hours: int | None = Field(
        default=None,
        gt=0,
        description="Overrides the default expiry for the escrow type",
    )
    description: str | None = Field(default=None, max_length=5000)
    idempotency_key: str | None = Field(
        default=None,
        max_length=128,
        description="Optional idempotency key to prevent duplicate contract creation",
    )

    def to_draft(self) -> EscrowDraft:
        return EscrowDraft(
            escrow_type=self.escrow_type,
            buyer_wallet=self.buyer_wallet,
            seller_wallet=self.seller_wallet,
            token=self.token,
            buyer_amount=self.buyer_amount,
            seller_amount=self.seller_amount,
            seller_token=self.seller_token,
            milestones=tuple(
                MilestoneDraft(m.description, m.percentage, m.order) for m in self.milestones
            ),
            timeout_hours=self.timeout_hours,
            description=self.description,
            idempotency_key=self.idempotency_key,
        )


class RecordDepositRequest(BaseModel):
    """A deposit observed on the settlement network."""

    depositor_wallet: str = wallet_field()
    amount: Decimal = Field(..., gt=0, decimal_places=18)
    tx_reference: str = Field(
        ...,
        min_length=1,
        max_length=256,
        description="Settlement reference of the deposit; repeats are ignored",
    )
    token: str | None = Field(default=None, max_length=32)


class PartyActionRequest(BaseModel):
    """Request body for commands whose only input is the acting party."""

    actor_wallet: str = wallet_field()


class SubmitMilestoneWorkRequest(BaseModel):
    seller_wallet: str = wallet_field()
    notes: str | None = Field(default=None, max_length=5000)
    evidence_urls: list[str] = Field(default_factory=list, max_length=20)


class ApproveMilestoneRequest(BaseModel):
    buyer_wallet: str = wallet_field()
    notes: str | None = Field(default=None, max_length=5000)


class RequestCancellationRequest(BaseModel):
    requested_by: str = wallet_field()
    reason: str = Field(..., min_length=1, max_length=2000)


class CancelUnfundedRequest(BaseModel):
    buyer_wallet: str = wallet_field()
    reason: str | None = Field(default=None, max_length=2000)


class ExtendExpiryRequest(BaseModel):
    admin_wallet: str = wallet_field()
    additional_hours: int = Field(..., gt=0, description="Hours added to the current deadline")


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class MilestoneResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    order: int
    description: str
    percentage: Decimal
    amount: Decimal
    status: MilestoneStatus
    seller_notes: str | None = None
    buyer_notes: str | None = None
    evidence_urls: list[str] = Field(default_factory=list)
    settlement_reference: str | None = None


class EscrowResponse(BaseModel):
    """Response schema for an escrow contract of any type.

    Type-specific fields are null when they do not apply to the escrow type.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_type: EscrowType
    status: EscrowStatus
    buyer_wallet: str
    seller_wallet: str
    escrow_wallet: str
    token: str
    buyer_amount: Decimal
    seller_amount: Decimal | None = None
    seller_token: str | None = None
    buyer_deposited: bool
    seller_deposited: bool
    buyer_confirmed: bool | None = None
    seller_confirmed: bool | None = None
    swap_executed: bool | None = None
    milestones: list[MilestoneResponse] = Field(default_factory=list)
    version: int
    description: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    funded_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


class SettlementLegResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    source: str
    destination: str
    amount: Decimal
    token: str
    label: str
    fee_exempt: bool


class SettlementResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    claim_id: uuid.UUID
    purpose: str
    status: str
    legs: list[SettlementLegResponse]
    references: list[str | None]
    reused: bool = False


class CommandResponse(BaseModel):
    """Updated projection plus any settlement produced by the command."""

    escrow: EscrowResponse
    settlements: list[SettlementResponse] = Field(default_factory=list)
    settlement_references: list[str] = Field(default_factory=list)
    extra: dict = Field(default_factory=dict)

    @classmethod
    def from_result(cls, result: CommandResult) -> CommandResponse:
        return cls(
            escrow=EscrowResponse.model_validate(result.escrow),
            settlements=[SettlementResponse.model_validate(s) for s in result.settlements],
            settlement_references=result.settlement_references,
            extra=dict(result.extra),
        )


class EscrowActionResponse(BaseModel):
    """Response schema for an audit entry."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    action_type: str
    actor_wallet: str
    old_status: str | None
    new_status: str | None
    notes: str | None
    metadata: dict | None = Field(default=None, alias="metadata_json")
    created_at: datetime


class DepositResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    role: str
    depositor_wallet: str
    amount: Decimal
    token: str
    tx_reference: str
    is_late: bool
    observed_at: datetime


class CancellationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    requested_by: str
    requester_role: str
    reason: str
    status: str
    approved_by: str | None
    created_at: datetime
    resolved_at: datetime | None


class EscrowStatusResponse(BaseModel):
    """Lightweight status check response."""

    escrow_id: uuid.UUID
    escrow_type: EscrowType
    status: EscrowStatus
    version: int
    allowed_events: list[str] = Field(
        description="State machine events that can fire from the current status"
    )


class SweepReportResponse(BaseModel):
    scanned: int
    cancelled: list[str]
    refunded: list[str]
    escalated: list[str]
    warned: list[str]
    skipped: list[str]
    failed: dict[str, str]


class FeeExample(BaseModel):
    gross_amount: Decimal
    platform_fee: Decimal
    net_amount: Decimal


class FeeConfigurationResponse(BaseModel):
    platform_fee_percentage: Decimal
    cancellation_fee_percentage: Decimal
    treasury_wallet: str | None
    valid: bool
    errors: list[str]
    warnings: list[str]
    example: FeeExample | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"

