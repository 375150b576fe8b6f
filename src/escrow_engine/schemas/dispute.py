"""Pydantic schemas for disputes, evidence and admin resolution."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from escrow_engine.domain.enums import DisputePriority, EvidenceType, ResolutionAction
from escrow_engine.schemas.escrow import (
    CancellationResponse,
    DepositResponse,
    EscrowActionResponse,
    EscrowResponse,
    SettlementResponse,
    wallet_field,
)

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class RaiseDisputeRequest(BaseModel):
    """Request body for raising a dispute against an escrow or one milestone."""

    raised_by: str = wallet_field(description="Wallet of the party raising the dispute")
    reason: str = Field(..., min_length=1, max_length=256, examples=["not_delivered"])
    description: str = Field(
        ...,
        min_length=1,
        max_length=5000,
        description="Detailed account of the problem",
    )
    milestone_id: uuid.UUID | None = Field(
        default=None,
        description="Scope the dispute to one milestone (milestone escrows only)",
    )
    priority: DisputePriority = DisputePriority.NORMAL


class SubmitEvidenceRequest(BaseModel):
    submitted_by: str = wallet_field()
    evidence_type: EvidenceType = EvidenceType.TEXT
    content: str | None = Field(default=None, max_length=20_000)
    file_url: str | None = Field(default=None, max_length=1024)

    @model_validator(mode="after")
    def _content_or_file(self) -> SubmitEvidenceRequest:
        if not self.content and not self.file_url:
            raise ValueError("either content or file_url is required")
        return self


class ResolveDisputeRequest(BaseModel):
    """Admin decision on a dispute."""

    admin_wallet: str = wallet_field()
    action: ResolutionAction
    notes: str = Field(..., min_length=1, max_length=10_000)
    amount_to_buyer: Decimal | None = Field(default=None, ge=0, decimal_places=18)
    amount_to_seller: Decimal | None = Field(default=None, ge=0, decimal_places=18)


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    milestone_id: uuid.UUID | None
    raised_by: str
    party_role: str
    reason: str
    description: str
    status: str
    priority: str
    resolution_action: str | None
    resolution_notes: str | None
    resolved_by: str | None
    amount_to_buyer: Decimal | None
    amount_to_seller: Decimal | None
    created_at: datetime
    resolved_at: datetime | None


class EvidenceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    dispute_id: uuid.UUID
    submitted_by: str
    party_role: str
    evidence_type: str
    content: str | None
    file_url: str | None
    created_at: datetime


class AdminActionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    escrow_id: uuid.UUID
    dispute_id: uuid.UUID | None
    admin_wallet: str
    decision: str
    amount_to_buyer: Decimal
    amount_to_seller: Decimal
    buyer_settlement_reference: str | None
    seller_settlement_reference: str | None
    settlement_references: list[str] | None
    notes: str
    created_at: datetime


class DisputeDetailsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute: DisputeResponse
    evidence: list[EvidenceResponse]
    admin_actions: list[AdminActionResponse]


class EscrowDetailsResponse(BaseModel):
    """Full projection of one escrow with its history."""

    model_config = ConfigDict(from_attributes=True)

    escrow: EscrowResponse
    actions: list[EscrowActionResponse]
    deposits: list[DepositResponse]
    disputes: list[DisputeResponse]
    admin_actions: list[AdminActionResponse]
    settlements: list[SettlementResponse]
    allowed_events: list[str]
    pending_cancellation: CancellationResponse | None = None
