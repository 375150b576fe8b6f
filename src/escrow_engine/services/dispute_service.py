"""Dispute Coordinator — raiseDispute, expiry escalation and submitEvidence.

A dispute freezes its scope: the whole escrow, or a single milestone of a
milestone escrow. Before the scope flips to `disputed`, every settlement purpose
that could still release its funds is blocked, so a release that has not
started can never start, and a release already under way makes the dispute
fail instead of racing it. The `mutual_cancellation` marker is blocked too.

At most one open dispute per scope is enforced by the unique `open_scope_key`
column, which is cleared when the dispute is resolved or closed.

An expired mutual-confirmation contract that was funded but never confirmed
by both parties is escalated by the sweeper: a system-raised, high-priority
dispute puts it in the admin queue.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    DisputePriority,
    DisputeStatus,
    EscrowStatus,
    EscrowType,
    EvidenceType,
    MilestoneStatus,
    NotificationType,
    PartyRole,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DisputeNotFoundError,
    EscrowValidationError,
    InvalidStateError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    UnauthorizedPartyError,
)
from escrow_engine.domain.models import CommandResult, MilestoneEscrow, as_utc
from escrow_engine.infrastructure.database.orm_models import (
    EscrowDisputeRow,
    EscrowEvidenceRow,
)
from escrow_engine.infrastructure.database.repositories import (
    DisputeRepository,
    EscrowRepository,
    EvidenceRepository,
    MilestoneRepository,
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
    MUTUAL_CANCELLATION,
    milestone_release,
)

if TYPE_CHECKING:
    import uuid
    from datetime import datetime

    from escrow_engine.domain.models import AnyEscrow, Milestone

logger = get_logger(__name__)

ESCALATION_REASON = "timeout_escalation"


def escrow_scope_key(escrow_id: uuid.UUID) -> str:
    return f"escrow:{escrow_id}"


def milestone_scope_key(milestone_id: uuid.UUID) -> str:
    return f"milestone:{milestone_id}"


class DisputeCoordinator(LifecycleComponent):
    """raiseDispute / escalate_expired / submitEvidence."""

    async def raise_dispute(
        self,
        escrow_id: uuid.UUID,
        actor: str,
        reason: str,
        description: str,
        milestone_id: uuid.UUID | None = None,
        priority: DisputePriority = DisputePriority.NORMAL,
    ) -> CommandResult:
        self._validate_input(reason, description)

        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            if escrow.escrow_type == EscrowType.ATOMIC_SWAP:
                raise InvalidTransitionError(
                    escrow.status.value, "raise_dispute", "atomic swaps have no dispute path"
                )
            role = self._require_party(escrow, actor, "raise a dispute on this escrow")

            if milestone_id is None:
                result = await self._raise_on_escrow(
                    escrow, actor, role, reason, description, priority
                )
            else:
                result = await self._raise_on_milestone(
                    escrow, milestone_id, actor, role, reason, description, priority
                )
            if result is not None:
                return result

        raise ConcurrentModificationError("escrow", str(escrow_id))

    async def escalate_expired(
        self, escrow_id: uuid.UUID, now: datetime | None = None
    ) -> CommandResult:
        """Put an expired, funded contract that never got both confirmations in the admin queue.

        Opens a system-raised dispute on the whole escrow, so the usual
        resolution path (release, refund or split) settles it.
        """
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            self._require_type(escrow, EscrowType.MUTUAL_CONFIRMATION, "escalate")
            if not escrow.is_expired(now or self._ctx.clock()):
                raise InvalidStateError(escrow.status.value, "escalate", "escrow has not expired")
            expires_at = as_utc(escrow.expires_at)
            result = await self._raise_on_escrow(
                escrow,
                SYSTEM_ACTOR,
                PartyRole.ADMIN,
                ESCALATION_REASON,
                f"Expired at {expires_at.isoformat()} before both parties confirmed completion",
                DisputePriority.HIGH,
                action_type=ActionType.ESCALATED,
            )
            if result is not None:
                return result

        raise ConcurrentModificationError("escrow", str(escrow_id))

    def _validate_input(self, reason: str, description: str) -> None:
        errors: list[str] = []
        if not reason or not reason.strip():
            errors.append("reason is required")
        minimum = self._settings.min_dispute_description_length
        if len((description or "").strip()) < minimum:
            errors.append(f"description must be at least {minimum} characters")
        if errors:
            raise EscrowValidationError(errors)

    # ------------------------------------------------------------------
    # Escrow scope
    # ------------------------------------------------------------------

    async def _raise_on_escrow(
        self,
        escrow: AnyEscrow,
        actor: str,
        role: PartyRole,
        reason: str,
        description: str,
        priority: DisputePriority,
        action_type: ActionType = ActionType.DISPUTED,
    ) -> CommandResult | None:
        if escrow.is_terminal:
            raise InvalidStateError(escrow.status.value, "raise_dispute", "escrow is terminal")
        if escrow.is_disputed:
            raise InvalidStateError(
                escrow.status.value, "raise_dispute", "escrow is already disputed"
            )
        if isinstance(escrow, MilestoneEscrow) and any(
            m.status == MilestoneStatus.DISPUTED for m in escrow.milestones
        ):
            raise InvalidStateError(
                escrow.status.value, "raise_dispute", "a milestone dispute is already open"
            )
        new_status = self._guard(escrow, "raise_dispute", "disputes are raised while active")

        purposes = [*self._release_purposes(escrow), MUTUAL_CANCELLATION]
        created = await self._block_purposes(escrow.id, purposes)

        dispute = EscrowDisputeRow(
            escrow_id=escrow.id,
            raised_by=actor,
            party_role=role.value,
            reason=reason,
            description=description,
            status=DisputeStatus.OPEN.value,
            priority=priority.value,
            open_scope_key=escrow_scope_key(escrow.id),
        )
        try:
            async with self._ctx.session_factory() as session, session.begin():
                won = await EscrowRepository(session).compare_and_set(
                    escrow.id,
                    escrow.version,
                    {"status": new_status},
                    expected_status=EscrowStatus.ACTIVE.value,
                )
                if not won:
                    raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")
                await DisputeRepository(session).create(dispute)
                await self._append(
                    session,
                    escrow.id,
                    [
                        ActionRecord(
                            action_type,
                            actor,
                            escrow.status.value,
                            new_status,
                            notes=reason,
                            metadata={"dispute_id": str(dispute.id), "role": role.value},
                        )
                    ],
                )
        except WriteConflict:
            await self._undo_blocks(escrow.id, created)
            return None
        except IntegrityError as err:
            await self._undo_blocks(escrow.id, created)
            raise InvalidStateError(
                escrow.status.value, "raise_dispute", "escrow is already disputed"
            ) from err

        return await self._after_raise(escrow, dispute, actor, role, None)

    @staticmethod
    def _release_purposes(escrow: AnyEscrow) -> list[str]:
        if isinstance(escrow, MilestoneEscrow):
            return [milestone_release(m.id) for m in escrow.unsettled_milestones]
        return [COMPLETION]

    # ------------------------------------------------------------------
    # Milestone scope
    # ------------------------------------------------------------------

    async def _raise_on_milestone(
        self,
        escrow: AnyEscrow,
        milestone_id: uuid.UUID,
        actor: str,
        role: PartyRole,
        reason: str,
        description: str,
        priority: DisputePriority,
    ) -> CommandResult | None:
        self._require_type(escrow, EscrowType.MILESTONE, "raise_dispute")
        milestone = escrow.milestone(milestone_id)
        if milestone is None:
            raise MilestoneNotFoundError(str(milestone_id))
        if escrow.is_terminal or milestone.status.is_settled:
            raise InvalidStateError(milestone.status.value, "raise_dispute", "scope is terminal")
        if escrow.is_disputed or milestone.status == MilestoneStatus.DISPUTED:
            raise InvalidStateError(
                milestone.status.value, "raise_dispute", "scope is already disputed"
            )
        if escrow.status != EscrowStatus.ACTIVE:
            raise InvalidTransitionError(
                escrow.status.value, "raise_dispute", "disputes are raised while active"
            )
        new_status = self._guard_milestone(milestone, "raise_dispute")

        created = await self._block_purposes(
            escrow.id, [milestone_release(milestone.id), MUTUAL_CANCELLATION]
        )

        dispute = EscrowDisputeRow(
            escrow_id=escrow.id,
            milestone_id=milestone.id,
            raised_by=actor,
            party_role=role.value,
            reason=reason,
            description=description,
            status=DisputeStatus.OPEN.value,
            priority=priority.value,
            open_scope_key=milestone_scope_key(milestone.id),
        )
        try:
            async with self._ctx.session_factory() as session, session.begin():
                won = await MilestoneRepository(session).compare_and_set(
                    milestone.id,
                    escrow.id,
                    milestone.version,
                    {"status": new_status},
                    parent_status=EscrowStatus.ACTIVE.value,
                )
                # Bumping the parent version serializes against escrow-scoped disputes.
                won = won and await EscrowRepository(session).compare_and_set(
                    escrow.id, escrow.version, {}, expected_status=EscrowStatus.ACTIVE.value
                )
                if not won:
                    raise WriteConflict(f"milestone {milestone.id} v{milestone.version}")
                await DisputeRepository(session).create(dispute)
                await self._append(
                    session,
                    escrow.id,
                    [
                        ActionRecord(
                            ActionType.DISPUTED,
                            actor,
                            milestone.status.value,
                            new_status,
                            notes=reason,
                            metadata={"dispute_id": str(dispute.id), "role": role.value},
                            milestone_id=milestone.id,
                        )
                    ],
                )
        except WriteConflict:
            await self._undo_blocks(escrow.id, created)
            return None
        except IntegrityError as err:
            await self._undo_blocks(escrow.id, created)
            raise InvalidStateError(
                milestone.status.value, "raise_dispute", "scope is already disputed"
            ) from err

        return await self._after_raise(escrow, dispute, actor, role, milestone)

    # ------------------------------------------------------------------

    async def _undo_blocks(self, escrow_id: uuid.UUID, created: list[str]) -> None:
        """Release our blocks unless a dispute that won in the meantime still needs them."""
        current = await self._load(escrow_id)
        if current.is_disputed:
            return
        keep: set[str] = set()
        if isinstance(current, MilestoneEscrow):
            keep = {
                milestone_release(m.id)
                for m in current.milestones
                if m.status == MilestoneStatus.DISPUTED
            }
            if keep:
                keep.add(MUTUAL_CANCELLATION)
        await self._release_blocks(escrow_id, [p for p in created if p not in keep])

    async def _after_raise(
        self,
        escrow: AnyEscrow,
        dispute: EscrowDisputeRow,
        actor: str,
        role: PartyRole,
        milestone: Milestone | None,
    ) -> CommandResult:
        logger.info(
            "dispute.raised",
            escrow_id=str(escrow.id),
            dispute_id=str(dispute.id),
            milestone_id=str(milestone.id) if milestone else None,
            raised_by=actor,
            role=role.value,
        )
        scope = f"milestone {milestone.order}" if milestone else "the escrow"
        if role == PartyRole.ADMIN:
            await self._notifications.notify_many(
                [escrow.buyer_wallet, escrow.seller_wallet],
                NotificationType.DISPUTE_RAISED,
                escrow.id,
                "The escrow expired before both parties confirmed; an admin will review it",
                dispute_id=str(dispute.id),
            )
            return CommandResult(
                escrow=await self._load(escrow.id), extra={"dispute_id": str(dispute.id)}
            )
        await self._notifications.notify(
            escrow.counterparty_of(actor),
            NotificationType.DISPUTE_RAISED,
            escrow.id,
            f"The {role.value} raised a dispute on {scope}: {dispute.reason}",
            dispute_id=str(dispute.id),
        )
        return CommandResult(
            escrow=await self._load(escrow.id), extra={"dispute_id": str(dispute.id)}
        )

    # ------------------------------------------------------------------
    # Evidence
    # ------------------------------------------------------------------

    async def submit_evidence(
        self,
        dispute_id: uuid.UUID,
        actor: str,
        evidence_type: EvidenceType,
        content: str | None = None,
        file_url: str | None = None,
    ) -> EscrowEvidenceRow:
        """Append evidence to an open dispute. No state effect."""
        if not (content and content.strip()) and not file_url:
            raise EscrowValidationError(["evidence needs content or a file_url"])

        async with self._ctx.session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
        if dispute is None:
            raise DisputeNotFoundError(str(dispute_id))
        if not DisputeStatus(dispute.status).is_open:
            raise InvalidStateError(dispute.status, "submit_evidence", "dispute is closed")

        escrow = await self._load(dispute.escrow_id)
        role = escrow.role_of(actor)
        if role is None and actor in self._settings.admin_wallet_list:
            role = PartyRole.ADMIN
        if role is None:
            raise UnauthorizedPartyError(actor, "submit evidence on this dispute")

        evidence = EscrowEvidenceRow(
            dispute_id=dispute.id,
            escrow_id=escrow.id,
            submitted_by=actor,
            party_role=role.value,
            evidence_type=EvidenceType(evidence_type).value,
            content=content,
            file_url=file_url,
        )
        async with self._ctx.session_factory() as session, session.begin():
            await EvidenceRepository(session).append(evidence)

        logger.info(
            "dispute.evidence_submitted",
            dispute_id=str(dispute.id),
            escrow_id=str(escrow.id),
            submitted_by=actor,
            evidence_type=evidence.evidence_type,
        )
        return evidence
