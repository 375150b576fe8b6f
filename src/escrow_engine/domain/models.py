"""Domain models: the EscrowContract aggregate as a tagged variant.

Each escrow type carries only the fields that mean something for it: confirmation
flags exist only on mutual-confirmation contracts, milestones only on milestone
contracts, the second swap token and swap_executed only on atomic swaps. The
registry builds these immutable snapshots from stored rows; services never mutate
them, they compute the next values and write them conditionally.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import ClassVar

from escrow_engine.domain.enums import (
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    PartyRole,
)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite returns them without tzinfo)."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


@dataclass(frozen=True, kw_only=True)
class Milestone:
    id: uuid.UUID
    escrow_id: uuid.UUID
    order: int
    description: str
    percentage: Decimal
    amount: Decimal
    status: MilestoneStatus
    version: int
    seller_notes: str | None = None
    buyer_notes: str | None = None
    evidence_urls: tuple[str, ...] = ()
    settlement_reference: str | None = None


@dataclass(frozen=True, kw_only=True)
class EscrowContract:
    """Fields shared by every escrow variant."""

    escrow_type: ClassVar[EscrowType]

    id: uuid.UUID
    buyer_wallet: str
    seller_wallet: str
    escrow_wallet: str
    token: str
    buyer_amount: Decimal
    status: EscrowStatus
    buyer_deposited: bool
    seller_deposited: bool
    version: int
    description: str | None = None
    expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    funded_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_disputed(self) -> bool:
        return self.status == EscrowStatus.DISPUTED

    @property
    def requires_seller_deposit(self) -> bool:
        return True

    @property
    def fully_deposited(self) -> bool:
        if self.requires_seller_deposit:
            return self.buyer_deposited and self.seller_deposited
        return self.buyer_deposited

    def is_expired(self, now: datetime) -> bool:
        expires_at = as_utc(self.expires_at)
        return expires_at is not None and expires_at <= now

    def role_of(self, wallet: str) -> PartyRole | None:
        if wallet == self.buyer_wallet:
            return PartyRole.BUYER
        if wallet == self.seller_wallet:
            return PartyRole.SELLER
        return None

    def wallet_of(self, role: PartyRole) -> str:
        return self.buyer_wallet if role == PartyRole.BUYER else self.seller_wallet

    def counterparty_of(self, wallet: str) -> str:
        return self.seller_wallet if wallet == self.buyer_wallet else self.buyer_wallet

    def expected_deposit(self, role: PartyRole) -> tuple[Decimal, str]:
        """Return (amount, token) the given role must deposit."""
        if role == PartyRole.BUYER:
            return self.buyer_amount, self.token
        raise ValueError(f"{self.escrow_type} escrow takes no {role} deposit")

    def is_deposited(self, role: PartyRole) -> bool:
        return self.buyer_deposited if role == PartyRole.BUYER else self.seller_deposited


@dataclass(frozen=True, kw_only=True)
class MutualConfirmationEscrow(EscrowContract):
    """Buyer pays, seller posts a security deposit, both confirm before release."""

    escrow_type: ClassVar[EscrowType] = EscrowType.MUTUAL_CONFIRMATION

    seller_amount: Decimal
    buyer_confirmed: bool = False
    seller_confirmed: bool = False

    @property
    def both_confirmed(self) -> bool:
        return self.buyer_confirmed and self.seller_confirmed

    def expected_deposit(self, role: PartyRole) -> tuple[Decimal, str]:
        if role == PartyRole.SELLER:
            return self.seller_amount, self.token
        return super().expected_deposit(role)


@dataclass(frozen=True, kw_only=True)
class MilestoneEscrow(EscrowContract):
    """Buyer funds upfront; each approved milestone releases its share."""

    escrow_type: ClassVar[EscrowType] = EscrowType.MILESTONE

    milestones: tuple[Milestone, ...] = field(default_factory=tuple)

    @property
    def requires_seller_deposit(self) -> bool:
        return False

    @property
    def all_milestones_settled(self) -> bool:
        return bool(self.milestones) and all(m.status.is_settled for m in self.milestones)

    @property
    def unsettled_milestones(self) -> tuple[Milestone, ...]:
        return tuple(m for m in self.milestones if not m.status.is_settled)

    @property
    def unsettled_amount(self) -> Decimal:
        return sum((m.amount for m in self.unsettled_milestones), Decimal("0"))

    def milestone(self, milestone_id: uuid.UUID) -> Milestone | None:
        for m in self.milestones:
            if m.id == milestone_id:
                return m
        return None


@dataclass(frozen=True, kw_only=True)
class AtomicSwapEscrow(EscrowContract):
    """Two legs in (possibly) different tokens, exchanged once both arrive."""

    escrow_type: ClassVar[EscrowType] = EscrowType.ATOMIC_SWAP

    seller_amount: Decimal
    seller_token: str
    swap_executed: bool = False

    def expected_deposit(self, role: PartyRole) -> tuple[Decimal, str]:
        if role == PartyRole.SELLER:
            return self.seller_amount, self.seller_token
        return super().expected_deposit(role)


AnyEscrow = MutualConfirmationEscrow | MilestoneEscrow | AtomicSwapEscrow


# ---------------------------------------------------------------------------
# Settlement value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SettlementLeg:
    """One transfer out of the escrow wallet.

    fee_exempt legs (refunds, security deposit returns) move their full amount;
    other legs are split into a net leg and a fee leg by the settlement executor.
    """

    source: str
    destination: str
    amount: Decimal
    token: str
    label: str = ""
    fee_exempt: bool = False

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "destination": self.destination,
            "amount": str(self.amount),
            "token": self.token,
            "label": self.label,
            "fee_exempt": self.fee_exempt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> SettlementLeg:
        return cls(
            source=data["source"],
            destination=data["destination"],
            amount=Decimal(data["amount"]),
            token=data["token"],
            label=data.get("label", ""),
            fee_exempt=bool(data.get("fee_exempt", False)),
        )


@dataclass(frozen=True)
class SettlementResult:
    """Outcome of settle(escrow_id, purpose, legs).

    references align with legs; a None entry is a leg not yet transferred.
    reused is True when the caller observed another caller's claim.
    """

    claim_id: uuid.UUID
    escrow_id: uuid.UUID
    purpose: str
    status: str
    legs: tuple[SettlementLeg, ...]
    references: tuple[str | None, ...]
    reused: bool = False

    @property
    def completed(self) -> bool:
        return self.status == "completed"

    def reference_for(self, destination: str, label: str | None = None) -> str | None:
        """First reference paid to destination (optionally matching a leg label)."""
        for leg, ref in zip(self.legs, self.references, strict=True):
            if leg.destination == destination and (label is None or leg.label == label):
                return ref
        return None

    def to_dict(self) -> dict:
        return {
            "claim_id": str(self.claim_id),
            "purpose": self.purpose,
            "status": self.status,
            "legs": [leg.to_dict() for leg in self.legs],
            "references": list(self.references),
            "reused": self.reused,
        }


@dataclass(frozen=True)
class CommandResult:
    """What every lifecycle command returns: the updated projection plus settlement."""

    escrow: AnyEscrow
    settlements: tuple[SettlementResult, ...] = ()
    extra: dict = field(default_factory=dict)

    @property
    def settlement_references(self) -> list[str]:
        return [
            ref
            for settlement in self.settlements
            for ref in settlement.references
            if ref is not None
        ]
