"""Timeout Sweeper — expired contracts to their terminal state or the admin queue.

Each pass is a stateless scan over the current store snapshot; nothing is
cached between passes. A pass first warns the parties of contracts about to
expire (once per deadline), then handles every expired contract:

    1. block `funding`: a deposit that has not yet funded the contract can no
       longer do so (it is recorded as late and refunded here)
    2. atomic swaps: block `swap_execution`, so a swap cannot start once the
       refunds may
    3. block `mutual_cancellation`, so a cancellation cannot start either
    4. reserve the contract (a version bump), so an expiry extension racing
       the pass either wins before any refund or fails after
    5. refund every deposited role through `timeout_refund:<role>` (fee exempt)
    6. conditional write: cancelled (nothing funded) or refunded

If a block finds the purpose already under way (a funding, a swap or a
cancellation in progress), the contract is skipped for this pass. A funded
mutual-confirmation contract that expired while active is escalated to an
admin-review dispute instead of refunded. Disputed contracts are never swept;
milestone contracts have no overall expiry.

An admin may push the deadline of an open contract out with extend_expiry,
as long as it has not expired and no sweep has started on it.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    EscrowStatus,
    EscrowType,
    NotificationType,
    PartyRole,
    SettlementStatus,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    EscrowError,
    EscrowValidationError,
    InvalidStateError,
    InvalidTransitionError,
)
from escrow_engine.domain.models import (
    CommandResult,
    MutualConfirmationEscrow,
    SettlementLeg,
    as_utc,
)
from escrow_engine.infrastructure.database.repositories import EscrowRepository
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
)
from escrow_engine.services.settlement_service import (
    FUNDING,
    MUTUAL_CANCELLATION,
    SWAP_EXECUTION,
    timeout_refund,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from escrow_engine.domain.models import AnyEscrow, SettlementResult
    from escrow_engine.services.dispute_service import DisputeCoordinator
    from escrow_engine.services.lifecycle import EngineContext

logger = get_logger(__name__)

SWEPT_TYPES = (EscrowType.MUTUAL_CONFIRMATION, EscrowType.ATOMIC_SWAP)

# Mutual-confirmation contracts in these states are funded, not expired.
_FUNDED = (EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE)


@dataclass
class SweepReport:
    """Outcome of one sweepExpired pass."""

    scanned: int = 0
    cancelled: list[str] = field(default_factory=list)
    refunded: list[str] = field(default_factory=list)
    escalated: list[str] = field(default_factory=list)
    warned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    results: list[CommandResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "scanned": self.scanned,
            "cancelled": self.cancelled,
            "refunded": self.refunded,
            "escalated": self.escalated,
            "warned": self.warned,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class _Skip(Exception):
    """The contract is not sweepable on this pass."""


def format_remaining(remaining: timedelta) -> str:
    hours = int(remaining.total_seconds() // 3600)
    if hours < 1:
        return "less than 1 hour"
    if hours < 24:
        return "1 hour" if hours == 1 else f"{hours} hours"
    days = hours // 24
    return "1 day" if days == 1 else f"{days} days"


class TimeoutSweeper(LifecycleComponent):
    """sweepExpired, expiry warnings, extend_expiry and the background loop."""

    def __init__(self, ctx: EngineContext, disputes: DisputeCoordinator) -> None:
        super().__init__(ctx)
        self._disputes = disputes

    async def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        now = now or self._ctx.clock()
        report = SweepReport()
        await self._warn_expiring(now, report)

        async with self._ctx.session_factory() as session:
            rows = await EscrowRepository(session).list_expired(
                now,
                [t.value for t in SWEPT_TYPES],
                limit=self._settings.sweeper_batch_size,
            )
            escrow_ids = [row.id for row in rows]

        report.scanned = len(escrow_ids)
        for escrow_id in escrow_ids:
            try:
                result = await self.sweep_one(escrow_id, now)
            except _Skip as skip:
                logger.info("sweeper.skipped", escrow_id=str(escrow_id), reason=str(skip))
                report.skipped.append(str(escrow_id))
                continue
            except EscrowError as err:
                logger.warning(
                    "sweeper.failed", escrow_id=str(escrow_id), code=err.code, error=err.message
                )
                report.failed[str(escrow_id)] = err.message
                continue

            report.results.append(result)
            if result.escrow.status == EscrowStatus.REFUNDED:
                report.refunded.append(str(escrow_id))
            elif result.escrow.status == EscrowStatus.CANCELLED:
                report.cancelled.append(str(escrow_id))
            elif result.escrow.status == EscrowStatus.DISPUTED:
                report.escalated.append(str(escrow_id))

        logger.info("sweeper.swept", **report.to_dict())
        return report

    async def sweep_one(self, escrow_id: uuid.UUID, now: datetime) -> CommandResult:
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            if self._awaits_review(escrow, now):
                return await self._escalate(escrow, now)
            self._check_sweepable(escrow, now)

            created = await self._take_blocks(escrow)
            if not await self._reserve(escrow):
                current = await self._load(escrow_id)
                if not current.is_expired(now):
                    await self._release_blocks(escrow_id, created)
                    raise _Skip("expiry was extended")
                # A late deposit landed in between; the next round refunds it too.
                continue
            escrow = await self._load(escrow_id)

            # A failed refund leaves the blocks in place; the next pass resumes it.
            settlements = await self._refund(escrow)

            event = self._expiry_event(escrow)
            new_status = self._guard(escrow, event)
            actions = [
                ActionRecord(
                    ActionType.TIMEOUT,
                    SYSTEM_ACTOR,
                    escrow.status.value,
                    new_status,
                    notes=f"Expired at {escrow.expires_at.isoformat()}",
                    metadata={
                        "refunded_roles": [s.purpose.split(":")[1] for s in settlements],
                        "references": [ref for s in settlements for ref in s.references if ref],
                    },
                )
            ]
            won = await self._commit(
                escrow,
                {"status": new_status, "cancelled_at": now},
                actions,
                expected_status=escrow.status.value,
            )
            if won:
                await self._notify(escrow, new_status, settlements)
                return CommandResult(
                    escrow=await self._load(escrow_id), settlements=tuple(settlements)
                )
            logger.info("sweeper.retry", escrow_id=str(escrow_id), blocks=created)

        raise _Skip("contract kept changing during the sweep")

    # ------------------------------------------------------------------

    @staticmethod
    def _awaits_review(escrow: AnyEscrow, now: datetime) -> bool:
        return (
            escrow.escrow_type == EscrowType.MUTUAL_CONFIRMATION
            and escrow.status == EscrowStatus.ACTIVE
            and escrow.is_expired(now)
        )

    async def _escalate(self, escrow: AnyEscrow, now: datetime) -> CommandResult:
        try:
            result = await self._disputes.escalate_expired(escrow.id, now)
        except InvalidTransitionError as err:
            # Completion, a cancellation or a party's own dispute got there first.
            raise _Skip(f"escalation not possible: {err.message}") from err
        logger.info(
            "sweeper.escalated", escrow_id=str(escrow.id), dispute_id=result.extra["dispute_id"]
        )
        return result

    @staticmethod
    def _check_sweepable(escrow: AnyEscrow, now: datetime) -> None:
        if escrow.escrow_type not in SWEPT_TYPES:
            raise _Skip("no overall expiry")
        if escrow.is_terminal:
            raise _Skip(f"already {escrow.status.value}")
        if escrow.is_disputed:
            raise _Skip("disputed")
        if not escrow.is_expired(now):
            raise _Skip("not expired")
        if escrow.escrow_type == EscrowType.MUTUAL_CONFIRMATION and escrow.status in _FUNDED:
            raise _Skip("funded")

    async def _take_blocks(self, escrow: AnyEscrow) -> list[str]:
        purposes = [FUNDING]
        if escrow.escrow_type == EscrowType.ATOMIC_SWAP:
            purposes.append(SWAP_EXECUTION)
        purposes.append(MUTUAL_CANCELLATION)

        created: list[str] = []
        for purpose in purposes:
            try:
                if await self._settlement.block(escrow.id, purpose):
                    created.append(purpose)
            except InvalidStateError as err:
                if purpose == FUNDING and escrow.fully_deposited:
                    # A stalled, fully funded swap: funding is complete, refunds follow.
                    continue
                await self._release_blocks(escrow.id, created)
                raise _Skip(f"{purpose} is under way") from err
        return created

    async def _reserve(self, escrow: AnyEscrow) -> bool:
        async with self._ctx.session_factory() as session, session.begin():
            return await EscrowRepository(session).compare_and_set(
                escrow.id, escrow.version, {}, expected_status=escrow.status.value
            )

    @staticmethod
    def _expiry_event(escrow: AnyEscrow) -> str:
        if escrow.escrow_type == EscrowType.MUTUAL_CONFIRMATION and (
            escrow.buyer_deposited or escrow.seller_deposited
        ):
            return "expire_with_refund"
        return "expire"

    async def _refund(self, escrow: AnyEscrow) -> list[SettlementResult]:
        settlements: list[SettlementResult] = []
        for role in (PartyRole.BUYER, PartyRole.SELLER):
            if not escrow.is_deposited(role):
                continue
            amount, token = escrow.expected_deposit(role)
            leg = SettlementLeg(
                source=escrow.escrow_wallet,
                destination=escrow.wallet_of(role),
                amount=amount,
                token=token,
                label=f"timeout_refund_{role.value}",
                fee_exempt=True,
            )
            result = await self._settlement.settle(escrow.id, timeout_refund(role.value), [leg])
            if not result.completed:
                raise _Skip(f"{role.value} refund is in flight elsewhere")
            settlements.append(result)
        return settlements

    async def _notify(
        self, escrow: AnyEscrow, new_status: str, settlements: list[SettlementResult]
    ) -> None:
        logger.info(
            "sweeper.expired",
            escrow_id=str(escrow.id),
            escrow_type=escrow.escrow_type.value,
            new_status=new_status,
            refunds=len(settlements),
        )
        refunded = {s.legs[0].destination for s in settlements if s.legs}
        for wallet in (escrow.buyer_wallet, escrow.seller_wallet):
            if wallet in refunded:
                await self._notifications.notify(
                    wallet,
                    NotificationType.REFUND_PROCESSED,
                    escrow.id,
                    "The escrow expired and your deposit was refunded",
                )
            else:
                await self._notifications.notify(
                    wallet,
                    NotificationType.ESCROW_CANCELLED,
                    escrow.id,
                    "The escrow expired before it was funded",
                )

    # ------------------------------------------------------------------
    # Pre-expiry warnings
    # ------------------------------------------------------------------

    async def _warn_expiring(self, now: datetime, report: SweepReport) -> None:
        hours = self._settings.expiry_warning_hours
        if not hours:
            return
        async with self._ctx.session_factory() as session:
            rows = await EscrowRepository(session).list_expiring(
                now,
                now + timedelta(hours=hours),
                [t.value for t in SWEPT_TYPES],
                limit=self._settings.sweeper_batch_size,
            )
            pending = [(row.id, row.expires_at) for row in rows]

        for escrow_id, expires_at in pending:
            # Stamped before sending: a warning goes out at most once per deadline.
            async with self._ctx.session_factory() as session, session.begin():
                marked = await EscrowRepository(session).mark_expiry_warned(
                    escrow_id, expires_at, now
                )
            if not marked:
                continue
            escrow = await self._load(escrow_id)
            remaining = format_remaining(as_utc(escrow.expires_at) - now)
            recipients = self._warning_recipients(escrow)
            for wallet, action in recipients:
                await self._notifications.notify(
                    wallet,
                    NotificationType.EXPIRY_WARNING,
                    escrow.id,
                    f"The escrow expires in {remaining}. {action}",
                    expires_at=as_utc(escrow.expires_at).isoformat(),
                )
            logger.info(
                "sweeper.expiry_warned",
                escrow_id=str(escrow_id),
                recipients=len(recipients),
                remaining=remaining,
            )
            report.warned.append(str(escrow_id))

    @staticmethod
    def _warning_recipients(escrow: AnyEscrow) -> list[tuple[str, str]]:
        """Parties that still owe a deposit or, once funded, a confirmation."""
        if not escrow.fully_deposited:
            recipients = []
            for role in (PartyRole.BUYER, PartyRole.SELLER):
                if escrow.is_deposited(role):
                    continue
                amount, token = escrow.expected_deposit(role)
                recipients.append(
                    (escrow.wallet_of(role), f"Please deposit {amount} {token} to the escrow.")
                )
            return recipients
        if isinstance(escrow, MutualConfirmationEscrow):
            pending = (
                (escrow.buyer_wallet, escrow.buyer_confirmed),
                (escrow.seller_wallet, escrow.seller_confirmed),
            )
            return [
                (wallet, "Please confirm completion to release the funds.")
                for wallet, confirmed in pending
                if not confirmed
            ]
        return []

    # ------------------------------------------------------------------
    # Deadline extension
    # ------------------------------------------------------------------

    async def extend_expiry(
        self, escrow_id: uuid.UUID, admin_wallet: str, additional_hours: int
    ) -> CommandResult:
        """Move the deadline of an open contract later. Callers check admin rights."""
        limit = self._settings.max_timeout_hours
        if not 0 < additional_hours <= limit:
            raise EscrowValidationError([f"additional_hours must be between 1 and {limit}"])

        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            if escrow.escrow_type not in SWEPT_TYPES or escrow.expires_at is None:
                raise InvalidTransitionError(
                    escrow.status.value, "extend_expiry", "escrow has no overall expiry"
                )
            if escrow.is_terminal:
                raise InvalidStateError(escrow.status.value, "extend_expiry", "escrow is terminal")
            self._ensure_not_frozen(escrow)
            if escrow.is_expired(self._ctx.clock()):
                raise InvalidStateError(
                    escrow.status.value, "extend_expiry", "escrow has already expired"
                )
            await self._ensure_not_sweeping(escrow)

            previous = as_utc(escrow.expires_at)
            expires_at = previous + timedelta(hours=additional_hours)
            action = ActionRecord(
                ActionType.EXPIRY_EXTENDED,
                admin_wallet,
                escrow.status.value,
                escrow.status.value,
                notes=f"Extended by {additional_hours}h",
                metadata={
                    "previous_expires_at": previous.isoformat(),
                    "expires_at": expires_at.isoformat(),
                    "additional_hours": additional_hours,
                },
            )
            won = await self._commit(
                escrow,
                {"expires_at": expires_at, "expiry_warned_at": None},
                [action],
                expected_status=escrow.status.value,
            )
            if not won:
                continue

            logger.info(
                "sweeper.expiry_extended",
                escrow_id=str(escrow_id),
                admin_wallet=admin_wallet,
                expires_at=expires_at.isoformat(),
            )
            await self._notifications.notify_many(
                [escrow.buyer_wallet, escrow.seller_wallet],
                NotificationType.EXPIRY_EXTENDED,
                escrow.id,
                f"The escrow deadline moved to {expires_at.isoformat()}",
                expires_at=expires_at.isoformat(),
            )
            return CommandResult(escrow=await self._load(escrow_id))

        raise ConcurrentModificationError("escrow", str(escrow_id))

    async def _ensure_not_sweeping(self, escrow: AnyEscrow) -> None:
        for purpose in (FUNDING, SWAP_EXECUTION):
            claim = await self._settlement.get(escrow.id, purpose)
            if claim is not None and claim.status == SettlementStatus.BLOCKED:
                raise InvalidStateError(
                    escrow.status.value, "extend_expiry", f"{purpose} is already closed"
                )

    # ------------------------------------------------------------------

    async def run_forever(self, interval_seconds: float | None = None) -> None:
        """Background loop. Cancelled by the application lifespan on shutdown."""
        interval = interval_seconds or self._settings.sweeper_interval_seconds
        logger.info("sweeper.started", interval_seconds=interval)
        while True:
            try:
                await self.sweep_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("sweeper.pass_failed", error=str(exc))
            await asyncio.sleep(interval)
