"""Admin Resolution Service — the only exit from `disputed`.

resolveDispute(dispute_id, admin, action, notes, split):

    release_to_seller  -> the disputed amount goes to the seller
    refund_to_buyer    -> the disputed amount goes back to the buyer (fee exempt)
    partial_split      -> amount_to_buyer + amount_to_seller <= disputed amount
    other              -> no settlement; the decision is recorded, the dispute
                          moves to under_review and the escrow stays disputed

The disputed amount is the escrow's buyer_amount for an escrow-scoped dispute
on a mutual-confirmation escrow, the unsettled remainder for an escrow-scoped
dispute on a milestone escrow, and the milestone's amount for a
milestone-scoped dispute. A mutual-confirmation resolution also returns the
seller's security deposit in the same settlement.

Every decision writes exactly one AdminAction.
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from escrow_engine.domain.enums import (
    ActionType,
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    NotificationType,
    ResolutionAction,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DisputeNotFoundError,
    InsufficientJustificationError,
    InvalidStateError,
    MilestoneNotFoundError,
    SplitExceedsEscrowError,
    UnauthorizedPartyError,
)
from escrow_engine.domain.models import (
    CommandResult,
    MilestoneEscrow,
    MutualConfirmationEscrow,
    SettlementLeg,
)
from escrow_engine.infrastructure.database.orm_models import AdminActionRow
from escrow_engine.infrastructure.database.repositories import (
    AdminActionRepository,
    DisputeRepository,
    EscrowRepository,
    MilestoneRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
    WriteConflict,
)
from escrow_engine.services.settlement_service import dispute_resolution

if TYPE_CHECKING:
    import uuid

    from escrow_engine.domain.models import AnyEscrow, Milestone, SettlementResult
    from escrow_engine.infrastructure.database.orm_models import EscrowDisputeRow
    from escrow_engine.services.lifecycle import EngineContext
    from escrow_engine.services.milestone_service import MilestoneCoordinator

logger = get_logger(__name__)

ZERO = Decimal("0")


class AdminResolutionService(LifecycleComponent):
    """resolveDispute and the admin dispute queue."""

    def __init__(self, ctx: EngineContext, milestones: MilestoneCoordinator) -> None:
        super().__init__(ctx)
        self._milestones = milestones

    def ensure_admin(self, admin_wallet: str, action: str = "resolve disputes") -> None:
        admins = self._settings.admin_wallet_list
        if admins and admin_wallet not in admins:
            raise UnauthorizedPartyError(admin_wallet, action)

    async def list_open_disputes(self, limit: int = 100) -> list[EscrowDisputeRow]:
        async with self._ctx.session_factory() as session:
            return await DisputeRepository(session).list_open(limit)

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        admin_wallet: str,
        action: ResolutionAction,
        notes: str,
        amount_to_buyer: Decimal | None = None,
        amount_to_seller: Decimal | None = None,
    ) -> CommandResult:
        self.ensure_admin(admin_wallet)
        minimum = self._settings.min_resolution_notes_length
        if len((notes or "").strip()) < minimum:
            raise InsufficientJustificationError(minimum, len((notes or "").strip()))
        action = ResolutionAction(action)

        dispute = await self._load_dispute(dispute_id)
        escrow = await self._load(dispute.escrow_id)
        if dispute.status == DisputeStatus.RESOLVED.value:
            return CommandResult(escrow=escrow, extra={"dispute_id": str(dispute_id)})
        if not DisputeStatus(dispute.status).is_open:
            raise InvalidStateError(dispute.status, "resolve", "dispute is closed")

        milestone = self._disputed_milestone(escrow, dispute)
        available = self._disputed_amount(escrow, milestone)
        to_buyer, to_seller = self._split(action, available, amount_to_buyer, amount_to_seller)

        if action == ResolutionAction.OTHER:
            return await self._record_other(escrow, dispute, admin_wallet, notes)

        if not escrow.is_disputed and milestone is None:
            raise InvalidStateError(escrow.status.value, "resolve", "escrow is not disputed")

        legs = self._legs(escrow, action, to_buyer, to_seller)
        # A retry must repeat the decision whose legs the claim already holds.
        result = await self._settlement.settle(
            escrow.id,
            dispute_resolution(dispute.id),
            legs,
            require_same_legs=True,
            actor=admin_wallet,
        )
        if not result.completed:
            return CommandResult(escrow=escrow, settlements=(result,))

        for _ in range(MAX_WRITE_ROUNDS):
            if await self._commit_resolution(
                escrow, dispute, milestone, admin_wallet, action, notes, to_buyer, to_seller, result
            ):
                break
            dispute = await self._load_dispute(dispute_id)
            escrow = await self._load(dispute.escrow_id)
            milestone = self._disputed_milestone(escrow, dispute)
            if dispute.status == DisputeStatus.RESOLVED.value:
                return CommandResult(escrow=escrow, settlements=(result,))
        else:
            raise ConcurrentModificationError("dispute", str(dispute_id))

        logger.info(
            "dispute.resolved",
            dispute_id=str(dispute.id),
            escrow_id=str(escrow.id),
            action=action.value,
            amount_to_buyer=str(to_buyer),
            amount_to_seller=str(to_seller),
            references=result.references,
        )
        await self._notifications.notify_many(
            [escrow.buyer_wallet, escrow.seller_wallet],
            NotificationType.DISPUTE_RESOLVED,
            escrow.id,
            f"The dispute was resolved: {action.value.replace('_', ' ')}",
            dispute_id=str(dispute.id),
            amount_to_buyer=str(to_buyer),
            amount_to_seller=str(to_seller),
        )
        if milestone is not None:
            escrow = await self._milestones.complete_if_settled(escrow.id)
        else:
            escrow = await self._load(escrow.id)
        return CommandResult(
            escrow=escrow, settlements=(result,), extra={"dispute_id": str(dispute.id)}
        )

    # ------------------------------------------------------------------
    # Amounts and legs
    # ------------------------------------------------------------------

    async def _load_dispute(self, dispute_id: uuid.UUID) -> EscrowDisputeRow:
        async with self._ctx.session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        return dispute

    @staticmethod
    def _disputed_milestone(escrow: AnyEscrow, dispute: EscrowDisputeRow) -> Milestone | None:
        if dispute.milestone_id is None:
            return None
        milestone = escrow.milestone(dispute.milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(dispute.milestone_id))
        return milestone

    @staticmethod
    def _disputed_amount(escrow: AnyEscrow, milestone: Milestone | None) -> Decimal:
        if milestone is not None:
            return milestone.amount
        if isinstance(escrow, MilestoneEscrow):
            return escrow.unsettled_amount
        return escrow.buyer_amount

    @staticmethod
    def _split(
        action: ResolutionAction,
        available: Decimal,
        amount_to_buyer: Decimal | None,
        amount_to_seller: Decimal | None,
    ) -> tuple[Decimal, Decimal]:
        if action == ResolutionAction.RELEASE_TO_SELLER:
            return ZERO, available
        if action == ResolutionAction.REFUND_TO_BUYER:
            return available, ZERO
        if action == ResolutionAction.OTHER:
            return ZERO, ZERO

        to_buyer = amount_to_buyer if amount_to_buyer is not None else ZERO
        to_seller = amount_to_seller if amount_to_seller is not None else ZERO
        if to_buyer < 0 or to_seller < 0 or to_buyer + to_seller > available:
            raise SplitExceedsEscrowError(str(to_buyer), str(to_seller), str(available))
        return to_buyer, to_seller

    @staticmethod
    def _legs(
        escrow: AnyEscrow,
        action: ResolutionAction,
        to_buyer: Decimal,
        to_seller: Decimal,
    ) -> list[SettlementLeg]:
        legs = [
            SettlementLeg(
                source=escrow.escrow_wallet,
                destination=escrow.buyer_wallet,
                amount=to_buyer,
                token=escrow.token,
                label="resolution_buyer",
                fee_exempt=action == ResolutionAction.REFUND_TO_BUYER,
            ),
            SettlementLeg(
                source=escrow.escrow_wallet,
                destination=escrow.seller_wallet,
                amount=to_seller,
                token=escrow.token,
                label="resolution_seller",
            ),
        ]
        if isinstance(escrow, MutualConfirmationEscrow) and escrow.seller_deposited:
            legs.append(
                SettlementLeg(
                    source=escrow.escrow_wallet,
                    destination=escrow.seller_wallet,
                    amount=escrow.seller_amount,
                    token=escrow.token,
                    label="security_deposit_return",
                    fee_exempt=True,
                )
            )
        return [leg for leg in legs if leg.amount > 0]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def _admin_action_row(
        self,
        escrow: AnyEscrow,
        dispute: EscrowDisputeRow,
        admin_wallet: str,
        action: ResolutionAction,
        notes: str,
        to_buyer: Decimal,
        to_seller: Decimal,
        result: SettlementResult | None,
    ) -> AdminActionRow:
        references = [ref for ref in result.references if ref] if result else []
        return AdminActionRow(
            escrow_id=escrow.id,
            dispute_id=dispute.id,
            admin_wallet=admin_wallet,
            decision=action.value,
            amount_to_buyer=to_buyer,
            amount_to_seller=to_seller,
            buyer_settlement_reference=(
                result.reference_for(escrow.buyer_wallet, "resolution_buyer") if result else None
            ),
            seller_settlement_reference=(
                result.reference_for(escrow.seller_wallet, "resolution_seller") if result else None
            ),
            settlement_references=references,
            notes=notes,
        )

    async def _record_other(
        self,
        escrow: AnyEscrow,
        dispute: EscrowDisputeRow,
        admin_wallet: str,
        notes: str,
    ) -> CommandResult:
        row = self._admin_action_row(
            escrow, dispute, admin_wallet, ResolutionAction.OTHER, notes, ZERO, ZERO, None
        )
        async with self._ctx.session_factory() as session, session.begin():
            won = await DisputeRepository(session).compare_and_set(
                dispute.id,
                [DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value],
                {
                    "status": DisputeStatus.UNDER_REVIEW.value,
                    "resolution_action": ResolutionAction.OTHER.value,
                    "resolution_notes": notes,
                    "resolved_by": admin_wallet,
                },
            )
            if not won:
                # Raised inside the transaction so nothing below is written.
                raise InvalidStateError(
                    DisputeStatus.RESOLVED.value, "resolve", "dispute was closed concurrently"
                )
            await AdminActionRepository(session).record(row)
            await self._append(
                session,
                escrow.id,
                [
                    ActionRecord(
                        ActionType.ADMIN_ACTION,
                        admin_wallet,
                        escrow.status.value,
                        escrow.status.value,
                        notes=notes,
                        metadata={
                            "dispute_id": str(dispute.id),
                            "decision": ResolutionAction.OTHER.value,
                        },
                        milestone_id=dispute.milestone_id,
                    )
                ],
            )

        logger.info(
            "dispute.under_review",
            dispute_id=str(dispute.id),
            escrow_id=str(escrow.id),
            admin=admin_wallet,
        )
        await self._notifications.notify_many(
            [escrow.buyer_wallet, escrow.seller_wallet],
            NotificationType.ACTION_REQUIRED,
            escrow.id,
            "An admin recorded a decision on the dispute; it stays under review",
            dispute_id=str(dispute.id),
        )
        return CommandResult(
            escrow=await self._load(escrow.id),
            extra={"dispute_id": str(dispute.id), "admin_action_id": str(row.id)},
        )

    async def _commit_resolution(
        self,
        escrow: AnyEscrow,
        dispute: EscrowDisputeRow,
        milestone: Milestone | None,
        admin_wallet: str,
        action: ResolutionAction,
        notes: str,
        to_buyer: Decimal,
        to_seller: Decimal,
        result: SettlementResult,
    ) -> bool:
        """One transaction: AdminAction, dispute resolved, scope settled."""
        now = self._ctx.clock()
        milestone_event = (
            "admin_release" if action == ResolutionAction.RELEASE_TO_SELLER else "admin_settle"
        )
        row = self._admin_action_row(
            escrow, dispute, admin_wallet, action, notes, to_buyer, to_seller, result
        )
        try:
            async with self._ctx.session_factory() as session, session.begin():
                won = await DisputeRepository(session).compare_and_set(
                    dispute.id,
                    [DisputeStatus.OPEN.value, DisputeStatus.UNDER_REVIEW.value],
                    {
                        "status": DisputeStatus.RESOLVED.value,
                        "open_scope_key": None,
                        "resolution_action": action.value,
                        "resolution_notes": notes,
                        "resolved_by": admin_wallet,
                        "amount_to_buyer": to_buyer,
                        "amount_to_seller": to_seller,
                        "resolved_at": now,
                    },
                )
                if not won:
                    raise WriteConflict(f"dispute {dispute.id}")

                milestones = MilestoneRepository(session)
                if milestone is not None:
                    targets = [milestone]
                elif isinstance(escrow, MilestoneEscrow):
                    targets = list(escrow.unsettled_milestones)
                else:
                    targets = []
                for target in targets:
                    new_milestone_status = self._guard_milestone(target, milestone_event)
                    values = {"status": new_milestone_status}
                    if new_milestone_status == MilestoneStatus.APPROVED.value:
                        values["approved_at"] = now
                        values["settlement_reference"] = result.reference_for(
                            escrow.seller_wallet, "resolution_seller"
                        )
                    if not await milestones.compare_and_set(
                        target.id, escrow.id, target.version, values
                    ):
                        raise WriteConflict(f"milestone {target.id} v{target.version}")

                actions = [
                    ActionRecord(
                        ActionType.ADMIN_ACTION,
                        admin_wallet,
                        (milestone.status if milestone else escrow.status).value,
                        (
                            self._guard_milestone(milestone, milestone_event)
                            if milestone
                            else EscrowStatus.COMPLETED.value
                        ),
                        notes=notes,
                        metadata={
                            "dispute_id": str(dispute.id),
                            "decision": action.value,
                            "amount_to_buyer": str(to_buyer),
                            "amount_to_seller": str(to_seller),
                            "references": list(result.references),
                        },
                        milestone_id=milestone.id if milestone else None,
                    )
                ]
                if milestone is None:
                    new_status = self._guard(escrow, "admin_resolve")
                    if not await EscrowRepository(session).compare_and_set(
                        escrow.id,
                        escrow.version,
                        {"status": new_status, "completed_at": now},
                        expected_status=EscrowStatus.DISPUTED.value,
                    ):
                        raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")

                await AdminActionRepository(session).record(row)
                await self._append(session, escrow.id, actions)
        except WriteConflict as conflict:
            logger.info("dispute.write_conflict", conflict=str(conflict))
            return False
        return True
