"""Mutual cancellation: one party requests, the other approves.

On approval every deposit the escrow still holds is refunded minus the
cancellation fee, and the escrow becomes `cancelled`. Before any refund the
contract's release purposes (completion, milestone releases, the swap) and
`funding` are blocked and the `mutual_cancellation` marker is claimed. A
dispute or the sweeper that got there first makes the approval fail; a release
already under way does too. Once the marker is claimed the cancellation is
committed: a failed refund is retried by approving again.

Before a contract is fully funded its buyer may also cancel it alone
(cancel_unfunded). Deposits already made are refunded without a fee.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    CancellationStatus,
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    NotificationType,
    PartyRole,
)
from escrow_engine.domain.exceptions import (
    CancellationNotFoundError,
    ConcurrentModificationError,
    EscrowValidationError,
    FrozenByDisputeError,
    InvalidStateError,
    InvalidTransitionError,
    SettlementBlockedError,
    UnauthorizedPartyError,
)
from escrow_engine.domain.models import CommandResult, MilestoneEscrow, SettlementLeg
from escrow_engine.infrastructure.database.orm_models import CancellationRequestRow
from escrow_engine.infrastructure.database.repositories import (
    CancellationRepository,
    EscrowRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
    WriteConflict,
)
from escrow_engine.services.settlement_service import (
    COMPLETION,
    FUNDING,
    MUTUAL_CANCELLATION,
    SWAP_EXECUTION,
    cancellation_refund,
    milestone_release,
)

if TYPE_CHECKING:
    import uuid

    from escrow_engine.domain.models import AnyEscrow, SettlementResult

logger = get_logger(__name__)

# Past these states the contract counts as funded whatever its deposit flags say.
_FUNDED = (EscrowStatus.FULLY_FUNDED, EscrowStatus.ACTIVE)


class CancellationCoordinator(LifecycleComponent):
    """requestCancellation / approveCancellation / rejectCancellation / cancel_unfunded."""

    async def request_cancellation(
        self, escrow_id: uuid.UUID, actor: str, reason: str
    ) -> CancellationRequestRow:
        minimum = self._settings.min_cancellation_reason_length
        if len((reason or "").strip()) < minimum:
            raise EscrowValidationError([f"reason must be at least {minimum} characters"])

        escrow = await self._load(escrow_id)
        role = self._require_party(escrow, actor, "request cancellation")
        self._check_cancellable(escrow)

        request = CancellationRequestRow(
            escrow_id=escrow.id,
            requested_by=actor,
            requester_role=role.value,
            reason=reason,
            status=CancellationStatus.PENDING.value,
            open_scope_key=str(escrow.id),
        )
        try:
            async with self._ctx.session_factory() as session, session.begin():
                await CancellationRepository(session).create(request)
                await self._append(
                    session,
                    escrow.id,
                    [
                        ActionRecord(
                            ActionType.CANCELLATION_REQUESTED,
                            actor,
                            escrow.status.value,
                            escrow.status.value,
                            notes=reason,
                            metadata={"request_id": str(request.id), "role": role.value},
                        )
                    ],
                )
        except IntegrityError as err:
            raise InvalidStateError(
                escrow.status.value, "request_cancellation", "a request is already pending"
            ) from err

        logger.info(
            "cancellation.requested",
            escrow_id=str(escrow.id),
            request_id=str(request.id),
            requested_by=actor,
        )
        await self._notifications.notify(
            escrow.counterparty_of(actor),
            NotificationType.CANCELLATION_REQUESTED,
            escrow.id,
            f"The {role.value} asked to cancel the escrow: {reason}",
            request_id=str(request.id),
        )
        return request

    async def approve_cancellation(self, request_id: uuid.UUID, actor: str) -> CommandResult:
        request = await self._load_request(request_id)
        escrow = await self._load(request.escrow_id)
        self._require_party(escrow, actor, "approve cancellation")

        status = CancellationStatus(request.status)
        if status == CancellationStatus.EXECUTED:
            return CommandResult(escrow=escrow, extra={"request_id": str(request.id)})
        if status == CancellationStatus.REJECTED:
            raise InvalidStateError(status.value, "approve_cancellation", "request was rejected")
        if status == CancellationStatus.PENDING:
            if actor == request.requested_by:
                raise InvalidStateError(
                    status.value, "approve_cancellation", "the counterparty must approve"
                )
            await self._approve(request, escrow, actor)

        return await self._execute(request, actor)

    async def reject_cancellation(
        self, request_id: uuid.UUID, actor: str
    ) -> CancellationRequestRow:
        """The counterparty declines, or the requester withdraws."""
        request = await self._load_request(request_id)
        escrow = await self._load(request.escrow_id)
        self._require_party(escrow, actor, "reject cancellation")
        if request.status != CancellationStatus.PENDING.value:
            raise InvalidStateError(request.status, "reject_cancellation", "request is not pending")

        await self._close(request.id, CancellationStatus.PENDING, CancellationStatus.REJECTED)
        logger.info("cancellation.rejected", request_id=str(request.id), by=actor)
        await self._notifications.notify(
            escrow.counterparty_of(actor),
            NotificationType.ACTION_REQUIRED,
            escrow.id,
            "The cancellation request was declined",
            request_id=str(request.id),
        )
        return await self._load_request(request_id)

    async def cancel_unfunded(
        self, escrow_id: uuid.UUID, actor: str, reason: str | None = None
    ) -> CommandResult:
        """The buyer cancels a contract that never became fully funded.

        Deposits already made are refunded in full. The refunds share their
        purposes with mutual cancellation, so a race between the two pays once.
        """
        claimed = False
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            if claimed and escrow.status == EscrowStatus.CANCELLED:
                return CommandResult(escrow=escrow)
            if actor != escrow.buyer_wallet:
                raise UnauthorizedPartyError(actor, "cancel an unfunded escrow")
            if not claimed:
                self._check_unfunded(escrow)
                if not await self._claim_exits(escrow):
                    continue
                claimed = True
                # Deposits that landed before the exits were claimed are refunded too.
                escrow = await self._load(escrow_id)

            settlements = await self._refund(escrow, fee_percentage=Decimal(0))
            new_status = self._guard(escrow, "cancel")
            now = self._ctx.clock()
            try:
                async with self._ctx.session_factory() as session, session.begin():
                    won = await EscrowRepository(session).compare_and_set(
                        escrow.id,
                        escrow.version,
                        {"status": new_status, "cancelled_at": now},
                        expected_status=escrow.status.value,
                    )
                    if not won:
                        raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")
                    requests = CancellationRepository(session)
                    pending = await requests.get_pending_for_escrow(escrow.id)
                    if pending is not None:
                        await requests.transition(
                            pending.id,
                            CancellationStatus.PENDING.value,
                            {
                                "status": CancellationStatus.REJECTED.value,
                                "open_scope_key": None,
                                "resolved_at": now,
                            },
                        )
                    await self._append(
                        session,
                        escrow.id,
                        [
                            ActionRecord(
                                ActionType.CANCELLED,
                                actor,
                                escrow.status.value,
                                new_status,
                                notes=reason or "Cancelled by the buyer before funding",
                                metadata={
                                    "unfunded": True,
                                    "references": [
                                        ref for s in settlements for ref in s.references if ref
                                    ],
                                },
                            )
                        ],
                    )
            except WriteConflict:
                logger.info("cancellation.write_conflict", escrow_id=str(escrow.id))
                continue

            logger.info(
                "cancellation.unfunded_cancelled",
                escrow_id=str(escrow.id),
                by=actor,
                refunds=len(settlements),
            )
            await self._notify(escrow, settlements, "The buyer cancelled the escrow before funding")
            return CommandResult(
                escrow=await self._load(escrow.id), settlements=tuple(settlements)
            )

        raise ConcurrentModificationError("escrow", str(escrow_id))

    async def get_pending(self, escrow_id: uuid.UUID) -> CancellationRequestRow | None:
        async with self._ctx.session_factory() as session:
            return await CancellationRepository(session).get_pending_for_escrow(escrow_id)

    # ------------------------------------------------------------------

    async def _load_request(self, request_id: uuid.UUID) -> CancellationRequestRow:
        async with self._ctx.session_factory() as session:
            request = await CancellationRepository(session).get_by_id(request_id)
        if request is None:
            raise CancellationNotFoundError(str(request_id))
        return request

    def _check_cancellable(self, escrow: AnyEscrow) -> None:
        if escrow.is_terminal:
            raise InvalidTransitionError(escrow.status.value, "cancel", "escrow is terminal")
        self._ensure_not_frozen(escrow)
        if isinstance(escrow, MilestoneEscrow):
            for milestone in escrow.milestones:
                if milestone.status == MilestoneStatus.DISPUTED:
                    raise FrozenByDisputeError(str(escrow.id), str(milestone.id))
        self._guard(escrow, "cancel")

    def _check_unfunded(self, escrow: AnyEscrow) -> None:
        if escrow.is_terminal:
            raise InvalidTransitionError(escrow.status.value, "cancel", "escrow is terminal")
        self._ensure_not_frozen(escrow)
        if escrow.fully_deposited or escrow.status in _FUNDED:
            raise InvalidTransitionError(
                escrow.status.value, "cancel", "escrow is funded; use mutual cancellation"
            )
        self._guard(escrow, "cancel")

    async def _approve(
        self, request: CancellationRequestRow, escrow: AnyEscrow, actor: str
    ) -> None:
        async with self._ctx.session_factory() as session, session.begin():
            won = await CancellationRepository(session).transition(
                request.id,
                CancellationStatus.PENDING.value,
                {"status": CancellationStatus.APPROVED.value, "approved_by": actor},
            )
            if won:
                await self._append(
                    session,
                    escrow.id,
                    [
                        ActionRecord(
                            ActionType.CANCELLATION_APPROVED,
                            actor,
                            escrow.status.value,
                            escrow.status.value,
                            metadata={"request_id": str(request.id)},
                        )
                    ],
                )
        if won:
            logger.info("cancellation.approved", request_id=str(request.id), by=actor)

    async def _close(
        self,
        request_id: uuid.UUID,
        expected: CancellationStatus,
        status: CancellationStatus,
    ) -> None:
        async with self._ctx.session_factory() as session, session.begin():
            await CancellationRepository(session).transition(
                request_id,
                expected.value,
                {
                    "status": status.value,
                    "open_scope_key": None,
                    "resolved_at": self._ctx.clock(),
                },
            )

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _execute(self, request: CancellationRequestRow, actor: str) -> CommandResult:
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(request.escrow_id)
            if escrow.status == EscrowStatus.CANCELLED:
                await self._close(
                    request.id, CancellationStatus.APPROVED, CancellationStatus.EXECUTED
                )
                return CommandResult(escrow=escrow, extra={"request_id": str(request.id)})
            try:
                self._check_cancellable(escrow)
                if not await self._claim_exits(escrow):
                    continue
            except (InvalidTransitionError, FrozenByDisputeError):
                await self._close(
                    request.id, CancellationStatus.APPROVED, CancellationStatus.REJECTED
                )
                raise

            settlements = await self._refund(escrow)
            new_status = self._guard(escrow, "cancel")
            now = self._ctx.clock()
            try:
                async with self._ctx.session_factory() as session, session.begin():
                    won = await EscrowRepository(session).compare_and_set(
                        escrow.id,
                        escrow.version,
                        {"status": new_status, "cancelled_at": now},
                        expected_status=escrow.status.value,
                    )
                    if not won:
                        raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")
                    await CancellationRepository(session).transition(
                        request.id,
                        CancellationStatus.APPROVED.value,
                        {
                            "status": CancellationStatus.EXECUTED.value,
                            "open_scope_key": None,
                            "resolved_at": now,
                        },
                    )
                    await self._append(
                        session,
                        escrow.id,
                        [
                            ActionRecord(
                                ActionType.CANCELLED,
                                SYSTEM_ACTOR,
                                escrow.status.value,
                                new_status,
                                notes=request.reason,
                                metadata={
                                    "request_id": str(request.id),
                                    "approved_by": actor,
                                    "references": [
                                        ref for s in settlements for ref in s.references if ref
                                    ],
                                },
                            )
                        ],
                    )
            except WriteConflict:
                logger.info("cancellation.write_conflict", escrow_id=str(escrow.id))
                continue

            logger.info(
                "cancellation.executed",
                escrow_id=str(escrow.id),
                request_id=str(request.id),
                refunds=len(settlements),
            )
            await self._notify(escrow, settlements, "The escrow was cancelled by mutual agreement")
            return CommandResult(
                escrow=await self._load(escrow.id),
                settlements=tuple(settlements),
                extra={"request_id": str(request.id)},
            )

        raise ConcurrentModificationError("escrow", str(request.escrow_id))

    async def _claim_exits(self, escrow: AnyEscrow) -> bool:
        """Block every other way out, then claim the cancellation marker.

        Returns False when a deposit is completing funding; the caller reloads.
        Raises InvalidTransitionError when a release, dispute or sweep is ahead.
        """
        created: list[str] = []
        if escrow.escrow_type != EscrowType.MILESTONE:
            try:
                if await self._settlement.block(escrow.id, FUNDING):
                    created.append(FUNDING)
            except InvalidStateError:
                if not escrow.fully_deposited:
                    return False

        try:
            created += await self._block_purposes(escrow.id, self._release_purposes(escrow))
        except InvalidStateError as err:
            await self._release_blocks(escrow.id, created)
            raise InvalidTransitionError(
                escrow.status.value, "cancel", "funds are already being released"
            ) from err

        try:
            await self._settlement.settle(escrow.id, MUTUAL_CANCELLATION, [])
        except SettlementBlockedError as err:
            await self._release_blocks(escrow.id, created)
            raise InvalidTransitionError(
                escrow.status.value, "cancel", "a dispute or expiry took over the escrow"
            ) from err
        return True

    @staticmethod
    def _release_purposes(escrow: AnyEscrow) -> list[str]:
        if isinstance(escrow, MilestoneEscrow):
            return [milestone_release(m.id) for m in escrow.unsettled_milestones]
        if escrow.escrow_type == EscrowType.ATOMIC_SWAP:
            return [SWAP_EXECUTION]
        return [COMPLETION]

    def _refund_amount(self, escrow: AnyEscrow, role: PartyRole) -> tuple[Decimal, str]:
        if isinstance(escrow, MilestoneEscrow):
            return escrow.unsettled_amount, escrow.token
        return escrow.expected_deposit(role)

    async def _refund(
        self, escrow: AnyEscrow, fee_percentage: Decimal | None = None
    ) -> list[SettlementResult]:
        if fee_percentage is None:
            fee_percentage = self._settings.cancellation_fee_percentage
        settlements: list[SettlementResult] = []
        for role in (PartyRole.BUYER, PartyRole.SELLER):
            if not escrow.is_deposited(role):
                continue
            amount, token = self._refund_amount(escrow, role)
            leg = SettlementLeg(
                source=escrow.escrow_wallet,
                destination=escrow.wallet_of(role),
                amount=amount,
                token=token,
                label=f"cancellation_refund_{role.value}",
            )
            result = await self._settlement.settle(
                escrow.id,
                cancellation_refund(role.value),
                [leg],
                fee_percentage=fee_percentage,
            )
            if not result.completed:
                raise ConcurrentModificationError("escrow", str(escrow.id))
            settlements.append(result)
        return settlements

    async def _notify(
        self, escrow: AnyEscrow, settlements: list[SettlementResult], message: str
    ) -> None:
        refunded = {s.legs[0].destination for s in settlements if s.legs}
        for wallet in (escrow.buyer_wallet, escrow.seller_wallet):
            if wallet in refunded:
                await self._notifications.notify(
                    wallet,
                    NotificationType.REFUND_PROCESSED,
                    escrow.id,
                    f"{message}; your deposit was refunded",
                )
            else:
                await self._notifications.notify(
                    wallet,
                    NotificationType.ESCROW_CANCELLED,
                    escrow.id,
                    message,
                )
