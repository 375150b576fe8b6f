"""Escrow Registry — creation, validation and loading of the escrow aggregate.

The registry is the only place that knows how a flat escrow_contracts row maps
onto the tagged domain variants. Everything else loads contracts through
`EscrowRegistry.load`, which opens a fresh session each time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.domain.enums import (
    ActionType,
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    NotificationType,
)
from escrow_engine.domain.exceptions import EscrowNotFoundError, EscrowValidationError
from escrow_engine.domain.fees import milestone_amount
from escrow_engine.domain.models import (
    AtomicSwapEscrow,
    Milestone,
    MilestoneEscrow,
    MutualConfirmationEscrow,
    as_utc,
)
from escrow_engine.infrastructure.database.orm_models import (
    EscrowContractRow,
    EscrowMilestoneRow,
)
from escrow_engine.infrastructure.database.repositories import (
    ActionRepository,
    EscrowRepository,
)
from escrow_engine.logging_config import get_logger

if TYPE_CHECKING:
    import uuid

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.config import Settings
    from escrow_engine.domain.models import AnyEscrow
    from escrow_engine.domain.ports import LedgerTransfer
    from escrow_engine.services.notification_service import NotificationService

logger = get_logger(__name__)

HUNDRED = Decimal("100")


@dataclass(frozen=True)
class MilestoneDraft:
    description: str
    percentage: Decimal
    order: int | None = None


@dataclass(frozen=True)
class EscrowDraft:
    """Parameters of createEscrow before validation."""

    escrow_type: EscrowType
    buyer_wallet: str
    seller_wallet: str
    token: str
    buyer_amount: Decimal
    seller_amount: Decimal | None = None
    seller_token: str | None = None
    milestones: tuple[MilestoneDraft, ...] = ()
    timeout_hours: int | None = None
    description: str | None = None
    idempotency_key: str | None = None


# ---------------------------------------------------------------------------
# Row -> domain mapping
# ---------------------------------------------------------------------------


def milestone_to_domain(row: EscrowMilestoneRow) -> Milestone:
    return Milestone(
        id=row.id,
        escrow_id=row.escrow_id,
        order=row.order,
        description=row.description,
        percentage=row.percentage,
        amount=row.amount,
        status=MilestoneStatus(row.status),
        version=row.version,
        seller_notes=row.seller_notes,
        buyer_notes=row.buyer_notes,
        evidence_urls=tuple(row.evidence_urls or ()),
        settlement_reference=row.settlement_reference,
    )


def to_domain(
    row: EscrowContractRow,
    milestones: list[EscrowMilestoneRow] | None = None,
) -> AnyEscrow:
    """Build the immutable variant for a stored contract row."""
    common = {
        "id": row.id,
        "buyer_wallet": row.buyer_wallet,
        "seller_wallet": row.seller_wallet,
        "escrow_wallet": row.escrow_wallet,
        "token": row.token,
        "buyer_amount": row.buyer_amount,
        "status": EscrowStatus(row.status),
        "buyer_deposited": row.buyer_deposited,
        "seller_deposited": row.seller_deposited,
        "version": row.version,
        "description": row.description,
        "expires_at": as_utc(row.expires_at),
        "created_at": as_utc(row.created_at),
        "updated_at": as_utc(row.updated_at),
        "funded_at": as_utc(row.funded_at),
        "completed_at": as_utc(row.completed_at),
        "cancelled_at": as_utc(row.cancelled_at),
    }
    escrow_type = EscrowType(row.escrow_type)

    if escrow_type == EscrowType.MUTUAL_CONFIRMATION:
        return MutualConfirmationEscrow(
            **common,
            seller_amount=row.seller_amount,
            buyer_confirmed=row.buyer_confirmed,
            seller_confirmed=row.seller_confirmed,
        )
    if escrow_type == EscrowType.ATOMIC_SWAP:
        return AtomicSwapEscrow(
            **common,
            seller_amount=row.seller_amount,
            seller_token=row.seller_token,
            swap_executed=row.swap_executed,
        )
    rows = milestones if milestones is not None else row.milestones
    return MilestoneEscrow(
        **common,
        milestones=tuple(milestone_to_domain(m) for m in sorted(rows, key=lambda m: m.order)),
    )


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def validate_draft(draft: EscrowDraft, settings: Settings) -> list[str]:
    """Return every reason the draft cannot become an escrow (empty when valid)."""
    errors: list[str] = []

    if not draft.buyer_wallet or not draft.seller_wallet:
        errors.append("buyer_wallet and seller_wallet are required")
    elif draft.buyer_wallet == draft.seller_wallet:
        errors.append("buyer and seller must be different wallets")
    if not draft.token:
        errors.append("token is required")
    if draft.buyer_amount is None or draft.buyer_amount <= 0:
        errors.append("buyer_amount must be positive")

    if draft.timeout_hours is not None and not (
        0 < draft.timeout_hours <= settings.max_timeout_hours
    ):
        errors.append(f"timeout_hours must be within (0, {settings.max_timeout_hours}]")

    if draft.escrow_type == EscrowType.MUTUAL_CONFIRMATION:
        if draft.seller_amount is None or draft.seller_amount <= 0:
            errors.append("seller_amount (security deposit) must be positive")
        if draft.milestones:
            errors.append("milestones only apply to milestone escrows")

    elif draft.escrow_type == EscrowType.ATOMIC_SWAP:
        if draft.seller_amount is None or draft.seller_amount <= 0:
            errors.append("seller_amount (second swap leg) must be positive")
        if not draft.seller_token:
            errors.append("seller_token is required for atomic swaps")
        if draft.milestones:
            errors.append("milestones only apply to milestone escrows")

    elif draft.escrow_type == EscrowType.MILESTONE:
        if draft.seller_amount:
            errors.append("milestone escrows take no seller deposit")
        if draft.timeout_hours is not None:
            errors.append("milestone escrows have no overall expiry")
        errors.extend(_validate_milestones(draft.milestones))

    return errors


def _validate_milestones(milestones: tuple[MilestoneDraft, ...]) -> list[str]:
    if not milestones:
        return ["milestone escrows need at least one milestone"]

    errors: list[str] = []
    for index, m in enumerate(milestones):
        if not m.description or not m.description.strip():
            errors.append(f"milestone {index} needs a description")
        if not (0 < m.percentage <= HUNDRED):
            errors.append(f"milestone {index} percentage must be within (0, 100]")

    total = sum((m.percentage for m in milestones), Decimal("0"))
    if total != HUNDRED:
        errors.append(f"milestone percentages must sum to 100 (got {total})")

    orders = [m.order for m in milestones if m.order is not None]
    if orders:
        if len(orders) != len(milestones):
            errors.append("either every milestone has an order or none does")
        elif len(set(orders)) != len(orders):
            errors.append("milestone order values must be unique")
    return errors


def _milestone_rows(draft: EscrowDraft) -> list[EscrowMilestoneRow]:
    """Compute milestone amounts. The last milestone absorbs rounding so the sum is exact."""
    ordered = sorted(
        enumerate(draft.milestones),
        key=lambda pair: pair[1].order if pair[1].order is not None else pair[0],
    )
    rows: list[EscrowMilestoneRow] = []
    allocated = Decimal("0")
    for position, (_, m) in enumerate(ordered, start=1):
        if position == len(ordered):
            amount = draft.buyer_amount - allocated
        else:
            amount = milestone_amount(draft.buyer_amount, m.percentage)
        allocated += amount
        rows.append(
            EscrowMilestoneRow(
                order=position,
                description=m.description.strip(),
                percentage=m.percentage,
                amount=amount,
                status=MilestoneStatus.PENDING.value,
                version=1,
            )
        )
    return rows


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class EscrowRegistry:
    """Creates and loads escrow contracts."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerTransfer,
        notifications: NotificationService,
        settings: Settings,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._notifications = notifications
        self._settings = settings

    def default_timeout_hours(self, escrow_type: EscrowType) -> int | None:
        if escrow_type == EscrowType.MUTUAL_CONFIRMATION:
            return self._settings.timeout_hours_mutual_confirmation
        if escrow_type == EscrowType.ATOMIC_SWAP:
            return self._settings.timeout_hours_atomic_swap
        return None

    async def create(self, draft: EscrowDraft, now: datetime | None = None) -> AnyEscrow:
        """Validate and persist a new escrow in `created` with its CREATED action.

        Creation with an idempotency_key that already exists returns the
        existing escrow instead of creating a second one.
        """
        errors = validate_draft(draft, self._settings)
        if errors:
            raise EscrowValidationError(errors)

        if draft.idempotency_key:
            existing = await self._find_by_idempotency_key(draft.idempotency_key)
            if existing is not None:
                logger.info("escrow.create_replayed", escrow_id=str(existing.id))
                return existing

        now = now or datetime.now(UTC)
        hours = draft.timeout_hours or self.default_timeout_hours(draft.escrow_type)
        escrow_wallet = await self._ledger.create_escrow_wallet()

        row = EscrowContractRow(
            escrow_type=draft.escrow_type.value,
            buyer_wallet=draft.buyer_wallet,
            seller_wallet=draft.seller_wallet,
            escrow_wallet=escrow_wallet,
            token=draft.token,
            buyer_amount=draft.buyer_amount,
            seller_amount=draft.seller_amount,
            seller_token=draft.seller_token,
            status=EscrowStatus.CREATED.value,
            version=1,
            description=draft.description,
            idempotency_key=draft.idempotency_key,
            expires_at=now + timedelta(hours=hours) if hours else None,
            created_at=now,
            updated_at=now,
        )
        if draft.escrow_type == EscrowType.MILESTONE:
            row.milestones = _milestone_rows(draft)

        try:
            async with self._session_factory() as session, session.begin():
                await EscrowRepository(session).create(row)
                await ActionRepository(session).record(
                    escrow_id=row.id,
                    action_type=ActionType.CREATED,
                    actor=draft.buyer_wallet,
                    old_status=None,
                    new_status=EscrowStatus.CREATED.value,
                    metadata={
                        "escrow_type": draft.escrow_type.value,
                        "buyer_amount": str(draft.buyer_amount),
                        "seller_amount": (
                            str(draft.seller_amount) if draft.seller_amount else None
                        ),
                    },
                )
        except IntegrityError:
            if not draft.idempotency_key:
                raise
            existing = await self._find_by_idempotency_key(draft.idempotency_key)
            if existing is None:
                raise
            return existing

        escrow = await self.load(row.id)
        logger.info(
            "escrow.created",
            escrow_id=str(escrow.id),
            escrow_type=draft.escrow_type.value,
            amount=str(draft.buyer_amount),
        )
        await self._notifications.notify(
            escrow.seller_wallet,
            NotificationType.ACTION_REQUIRED,
            escrow.id,
            f"You were added as seller to a {draft.escrow_type.value} escrow",
        )
        return escrow

    async def load(self, escrow_id: uuid.UUID) -> AnyEscrow:
        """Read the current snapshot in a fresh session."""
        async with self._session_factory() as session:
            return await self.load_in(session, escrow_id)

    async def load_in(self, session: AsyncSession, escrow_id: uuid.UUID) -> AnyEscrow:
        row = await EscrowRepository(session).get_by_id(escrow_id)
        if row is None:
            raise EscrowNotFoundError(str(escrow_id))
        return to_domain(row)

    async def list_for_wallet(self, wallet: str) -> list[AnyEscrow]:
        async with self._session_factory() as session:
            rows = await EscrowRepository(session).list_by_wallet(wallet)
            return [to_domain(r) for r in rows]

    async def _find_by_idempotency_key(self, key: str) -> AnyEscrow | None:
        async with self._session_factory() as session:
            row = await EscrowRepository(session).get_by_idempotency_key(key)
            return to_domain(row) if row is not None else None
