"""Milestone Coordinator — per-milestone work/approval cycles.

Each milestone is written with its own version, conditioned on the parent being
active, so approvals of different milestones never contend. Approvals of the
same milestone collapse into one release through the `milestone:<id>:release`
settlement claim. The parent completes once every milestone is settled.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    NotificationType,
    PartyRole,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    FrozenByDisputeError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    SettlementBlockedError,
    UnauthorizedPartyError,
)
from escrow_engine.domain.models import CommandResult, SettlementLeg
from escrow_engine.infrastructure.database.repositories import MilestoneRepository
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
    WriteConflict,
)
from escrow_engine.services.settlement_service import milestone_release

if TYPE_CHECKING:
    import uuid
    from typing import Any

    from escrow_engine.domain.models import Milestone, MilestoneEscrow

logger = get_logger(__name__)


class MilestoneCoordinator(LifecycleComponent):
    """submitMilestoneWork / approveMilestone."""

    async def _load_milestone(
        self, escrow_id: uuid.UUID, milestone_id: uuid.UUID, actor: str, role: PartyRole, verb: str
    ) -> tuple[MilestoneEscrow, Milestone]:
        escrow = await self._load(escrow_id)
        self._require_type(escrow, EscrowType.MILESTONE, verb)
        if escrow.role_of(actor) != role:
            raise UnauthorizedPartyError(actor, f"{verb} (only the {role.value} may)")
        milestone = escrow.milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        return escrow, milestone

    @staticmethod
    def _require_active(escrow: MilestoneEscrow, milestone: Milestone, event: str) -> None:
        LifecycleComponent._ensure_not_frozen(escrow, milestone)
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidTransitionError(
                escrow.status.value, event, "milestones move only while the escrow is active"
            )

    async def _write_milestone(
        self,
        escrow: MilestoneEscrow,
        milestone: Milestone,
        values: dict[str, Any],
        action: ActionRecord,
    ) -> bool:
        try:
            async with self._ctx.session_factory() as session, session.begin():
                won = await MilestoneRepository(session).compare_and_set(
                    milestone.id,
                    escrow.id,
                    milestone.version,
                    values,
                    parent_status=EscrowStatus.ACTIVE.value,
                )
                if not won:
                    raise WriteConflict(f"milestone {milestone.id} v{milestone.version}")
                await self._append(session, escrow.id, [action])
        except WriteConflict as conflict:
            logger.info("milestone.write_conflict", conflict=str(conflict))
            return False
        return True

    # ------------------------------------------------------------------

    async def submit_work(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        notes: str | None = None,
        evidence_urls: list[str] | None = None,
    ) -> CommandResult:
        for _ in range(MAX_WRITE_ROUNDS):
            escrow, milestone = await self._load_milestone(
                escrow_id, milestone_id, actor, PartyRole.SELLER, "submit_work"
            )
            if milestone.status == MilestoneStatus.WORK_SUBMITTED:
                return CommandResult(escrow=escrow, extra={"milestone_id": str(milestone.id)})
            self._require_active(escrow, milestone, "submit_work")
            new_status = self._guard_milestone(milestone, "submit_work")

            won = await self._write_milestone(
                escrow,
                milestone,
                {
                    "status": new_status,
                    "seller_notes": notes,
                    "evidence_urls": list(evidence_urls or []),
                    "submitted_at": self._ctx.clock(),
                },
                ActionRecord(
                    ActionType.SUBMITTED,
                    actor,
                    milestone.status.value,
                    new_status,
                    notes=notes,
                    metadata={"order": milestone.order},
                    milestone_id=milestone.id,
                ),
            )
            if won:
                break
        else:
            raise ConcurrentModificationError("milestone", str(milestone_id))

        logger.info(
            "milestone.work_submitted",
            escrow_id=str(escrow.id),
            milestone_id=str(milestone.id),
            order=milestone.order,
        )
        await self._notifications.notify(
            escrow.buyer_wallet,
            NotificationType.WORK_SUBMITTED,
            escrow.id,
            f"Work was submitted for milestone {milestone.order}: {milestone.description}",
            milestone_id=str(milestone.id),
        )
        return CommandResult(
            escrow=await self._load(escrow_id), extra={"milestone_id": str(milestone.id)}
        )

    async def approve_milestone(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        notes: str | None = None,
    ) -> CommandResult:
        escrow, milestone = await self._load_milestone(
            escrow_id, milestone_id, actor, PartyRole.BUYER, "approve"
        )
        purpose = milestone_release(milestone.id)
        if milestone.status == MilestoneStatus.APPROVED:
            existing = await self._settlement.get(escrow.id, purpose)
            return CommandResult(escrow=escrow, settlements=(existing,) if existing else ())
        self._require_active(escrow, milestone, "approve")
        new_status = self._guard_milestone(milestone, "approve")

        leg = SettlementLeg(
            source=escrow.escrow_wallet,
            destination=escrow.seller_wallet,
            amount=milestone.amount,
            token=escrow.token,
            label="milestone_payment",
        )
        try:
            result = await self._settlement.settle(escrow.id, purpose, [leg], actor=actor)
        except SettlementBlockedError as err:
            current = await self._load(escrow.id)
            current_milestone = current.milestone(milestone.id)
            if current.is_disputed or (
                current_milestone is not None
                and current_milestone.status == MilestoneStatus.DISPUTED
            ):
                raise FrozenByDisputeError(str(escrow.id), str(milestone.id)) from err
            raise InvalidTransitionError(
                current.status.value, "approve", "the release was blocked"
            ) from err

        if not result.completed:
            return CommandResult(escrow=escrow, settlements=(result,))

        reference = result.reference_for(escrow.seller_wallet, "milestone_payment")
        for _ in range(MAX_WRITE_ROUNDS):
            won = await self._write_milestone(
                escrow,
                milestone,
                {
                    "status": new_status,
                    "buyer_notes": notes,
                    "settlement_reference": reference,
                    "approved_at": self._ctx.clock(),
                },
                ActionRecord(
                    ActionType.APPROVED,
                    actor,
                    milestone.status.value,
                    new_status,
                    notes=notes,
                    metadata={
                        "order": milestone.order,
                        "amount": str(milestone.amount),
                        "references": list(result.references),
                    },
                    milestone_id=milestone.id,
                ),
            )
            if won:
                break
            escrow = await self._load(escrow_id)
            milestone = escrow.milestone(milestone_id)
            if milestone.status == MilestoneStatus.APPROVED:
                return CommandResult(escrow=escrow, settlements=(result,))
            if milestone.status != MilestoneStatus.WORK_SUBMITTED:
                raise ConcurrentModificationError("milestone", str(milestone_id))
        else:
            raise ConcurrentModificationError("milestone", str(milestone_id))

        logger.info(
            "milestone.approved",
            escrow_id=str(escrow.id),
            milestone_id=str(milestone.id),
            amount=str(milestone.amount),
            reference=reference,
        )
        await self._notifications.notify(
            escrow.seller_wallet,
            NotificationType.MILESTONE_APPROVED,
            escrow.id,
            f"Milestone {milestone.order} was approved and {milestone.amount} "
            f"{escrow.token} released",
            milestone_id=str(milestone.id),
        )
        escrow = await self.complete_if_settled(escrow.id)
        return CommandResult(escrow=escrow, settlements=(result,))

    async def complete_if_settled(self, escrow_id: uuid.UUID) -> MilestoneEscrow:
        """Move an active parent to completed once every milestone is settled.

        Runs after every milestone settlement against a fresh snapshot, so two
        concurrent final approvals cannot both miss the completion.
        """
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            if escrow.status != EscrowStatus.ACTIVE or not escrow.all_milestones_settled:
                return escrow
            new_status = self._guard(escrow, "complete")
            won = await self._commit(
                escrow,
                {"status": new_status, "completed_at": self._ctx.clock()},
                [
                    ActionRecord(
                        ActionType.COMPLETED,
                        SYSTEM_ACTOR,
                        escrow.status.value,
                        new_status,
                        notes="Every milestone is settled",
                    )
                ],
                expected_status=EscrowStatus.ACTIVE.value,
            )
            if won:
                logger.info("escrow.completed", escrow_id=str(escrow.id))
                await self._notifications.notify_many(
                    [escrow.buyer_wallet, escrow.seller_wallet],
                    NotificationType.ESCROW_COMPLETED,
                    escrow.id,
                    "Every milestone is settled; the escrow is complete",
                )
                return await self._load(escrow_id)
        raise ConcurrentModificationError("escrow", str(escrow_id))
