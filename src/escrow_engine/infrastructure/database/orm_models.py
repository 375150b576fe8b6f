"""SQLAlchemy 2.0 ORM models for the escrow engine.

Tables:
    1. escrow_contracts      — One row per escrow, all variants (flat, tagged by escrow_type).
    2. escrow_milestones     — Installments of a milestone escrow, each with its own version.
    3. escrow_deposits       — Observed deposits; tx_reference is unique.
    4. escrow_disputes       — Party-raised disputes; open_scope_key enforces one open per scope.
    5. escrow_evidence       — Append-only dispute evidence.
    6. escrow_admin_actions  — Append-only privileged decisions.
    7. escrow_actions        — Append-only audit log of every transition.
    8. settlement_claims     — Idempotency guard keyed by (escrow_id, purpose).
    9. cancellation_requests — Mutual cancellation requests.

Design decisions:
    - UUIDs as primary keys (no sequential leakage).
    - Decimal amounts with 9 fractional digits (no floating point rounding errors).
    - `version` counters on contracts and milestones for conditional writes.
    - JSON columns become JSONB on PostgreSQL.
    - Append-only tables are never updated at the application level.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal  # noqa: TC003 - needed at runtime by SQLAlchemy Mapped[]

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

JSONType = JSON().with_variant(JSONB(), "postgresql")
Amount = Numeric(20, 9)
WALLET_LENGTH = 128


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrow_contracts
# ---------------------------------------------------------------------------
class EscrowContractRow(Base):
    """An escrow agreement between a buyer and a seller."""

    __tablename__ = "escrow_contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_type: Mapped[str] = mapped_column(String(32), nullable=False)

    # --- Participants ---
    buyer_wallet: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    seller_wallet: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    escrow_wallet: Mapped[str] = mapped_column(
        String(WALLET_LENGTH),
        nullable=False,
        comment="Wallet holding this escrow's funds; source of every settlement leg",
    )

    # --- Financials ---
    token: Mapped[str] = mapped_column(String(32), nullable=False)
    buyer_amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    seller_amount: Mapped[Decimal | None] = mapped_column(
        Amount,
        nullable=True,
        comment="Security deposit (mutual confirmation) or second swap leg (atomic swap)",
    )
    seller_token: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # --- Status & flags ---
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="created")
    buyer_deposited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_deposited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    buyer_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    seller_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    swap_executed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        comment="Optional client key making createEscrow idempotent",
    )

    # --- Timestamps ---
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    funded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    expiry_warned_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the pre-expiry warning went out; cleared when expires_at moves",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    milestones: Mapped[list[EscrowMilestoneRow]] = relationship(
        "EscrowMilestoneRow",
        cascade="all, delete-orphan",
        order_by="EscrowMilestoneRow.order.asc()",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "escrow_type IN ('mutual_confirmation', 'milestone', 'atomic_swap')",
            name="ck_escrow_valid_type",
        ),
        CheckConstraint(
            "status IN ('created', 'buyer_deposited', 'seller_deposited', 'fully_funded', "
            "'active', 'disputed', 'completed', 'cancelled', 'refunded')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("buyer_amount > 0", name="ck_escrow_positive_amount"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_buyer", "buyer_wallet"),
        Index("idx_escrow_seller", "seller_wallet"),
        Index("idx_escrow_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowContractRow id={self.id} type={self.escrow_type} "
            f"status={self.status} v{self.version}>"
        )


# ---------------------------------------------------------------------------
# 2. escrow_milestones
# ---------------------------------------------------------------------------
class EscrowMilestoneRow(Base):
    __tablename__ = "escrow_milestones"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    order: Mapped[int] = mapped_column("milestone_order", Integer, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    percentage: Mapped[Decimal] = mapped_column(Numeric(7, 4), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending")
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    seller_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    buyer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_urls: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    settlement_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)

    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        UniqueConstraint("escrow_id", "milestone_order", name="uq_milestone_order"),
        CheckConstraint(
            "percentage > 0 AND percentage <= 100", name="ck_milestone_percentage"
        ),
        Index("idx_milestone_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return f"<EscrowMilestoneRow id={self.id} order={self.order} status={self.status}>"


# ---------------------------------------------------------------------------
# 3. escrow_deposits
# ---------------------------------------------------------------------------
class EscrowDepositRow(Base):
    """An observed deposit. Duplicate observations collide on tx_reference."""

    __tablename__ = "escrow_deposits"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    depositor_wallet: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Amount, nullable=False)
    token: Mapped[str] = mapped_column(String(32), nullable=False)
    tx_reference: Mapped[str] = mapped_column(String(256), nullable=False, unique=True)
    is_late: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    observed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_deposit_escrow", "escrow_id"),)


# ---------------------------------------------------------------------------
# 4. escrow_disputes
# ---------------------------------------------------------------------------
class EscrowDisputeRow(Base):
    __tablename__ = "escrow_disputes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("escrow_milestones.id", ondelete="CASCADE"),
        nullable=True,
    )
    raised_by: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    party_role: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    open_scope_key: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
        comment="Set while the dispute is open; NULL once resolved or closed",
    )

    # --- Resolution ---
    resolution_action: Mapped[str | None] = mapped_column(String(32), nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by: Mapped[str | None] = mapped_column(String(WALLET_LENGTH), nullable=True)
    amount_to_buyer: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)
    amount_to_seller: Mapped[Decimal | None] = mapped_column(Amount, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("idx_dispute_escrow", "escrow_id"),
        Index("idx_dispute_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<EscrowDisputeRow id={self.id} escrow={self.escrow_id} status={self.status}>"


# ---------------------------------------------------------------------------
# 5. escrow_evidence (append-only)
# ---------------------------------------------------------------------------
class EscrowEvidenceRow(Base):
    __tablename__ = "escrow_evidence"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_disputes.id", ondelete="CASCADE"),
        nullable=False,
    )
    escrow_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    submitted_by: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    party_role: Mapped[str] = mapped_column(String(16), nullable=False)
    evidence_type: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_evidence_dispute", "dispute_id"),)


# ---------------------------------------------------------------------------
# 6. escrow_admin_actions (append-only)
# ---------------------------------------------------------------------------
class AdminActionRow(Base):
    """System of record for privileged decisions."""

    __tablename__ = "escrow_admin_actions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    dispute_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid,
        ForeignKey("escrow_disputes.id", ondelete="SET NULL"),
        nullable=True,
    )
    admin_wallet: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    decision: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_to_buyer: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=0)
    amount_to_seller: Mapped[Decimal] = mapped_column(Amount, nullable=False, default=0)
    buyer_settlement_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    seller_settlement_reference: Mapped[str | None] = mapped_column(String(256), nullable=True)
    settlement_references: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    notes: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_admin_action_escrow", "escrow_id"),
        Index("idx_admin_action_dispute", "dispute_id"),
    )


# ---------------------------------------------------------------------------
# 7. escrow_actions (append-only audit log)
# ---------------------------------------------------------------------------
class EscrowActionRow(Base):
    """Immutable audit record of a transition in an escrow's lifecycle.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level.
    """

    __tablename__ = "escrow_actions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    milestone_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    actor_wallet: Mapped[str] = mapped_column(
        String(WALLET_LENGTH),
        nullable=False,
        default="system",
        comment="Wallet that triggered the action, or 'system' for automated transitions",
    )
    action_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
        default=None,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (
        Index("idx_action_escrow", "escrow_id"),
        Index("idx_action_type", "action_type"),
        Index("idx_action_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowActionRow id={self.id} type={self.action_type} "
            f"{self.old_status}->{self.new_status}>"
        )


# ---------------------------------------------------------------------------
# 8. settlement_claims
# ---------------------------------------------------------------------------
class SettlementClaimRow(Base):
    """Claim on (escrow_id, purpose). Inserted before any transfer is attempted."""

    __tablename__ = "settlement_claims"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    purpose: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    legs: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    references: Mapped[list] = mapped_column(
        "leg_references", JSONType, nullable=False, default=list
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        comment="Lease start of the current owner; refreshed after every settled leg",
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("escrow_id", "purpose", name="uq_settlement_claim_purpose"),
        CheckConstraint(
            "status IN ('in_flight', 'completed', 'failed', 'partial', 'blocked')",
            name="ck_settlement_claim_status",
        ),
        Index("idx_settlement_escrow", "escrow_id"),
    )

    def __repr__(self) -> str:
        return f"<SettlementClaimRow escrow={self.escrow_id} purpose={self.purpose} {self.status}>"


# ---------------------------------------------------------------------------
# 9. cancellation_requests
# ---------------------------------------------------------------------------
class CancellationRequestRow(Base):
    __tablename__ = "cancellation_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("escrow_contracts.id", ondelete="CASCADE"),
        nullable=False,
    )
    requested_by: Mapped[str] = mapped_column(String(WALLET_LENGTH), nullable=False)
    requester_role: Mapped[str] = mapped_column(String(16), nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    approved_by: Mapped[str | None] = mapped_column(String(WALLET_LENGTH), nullable=True)
    open_scope_key: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("idx_cancellation_escrow", "escrow_id"),)
