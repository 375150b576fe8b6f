"""Shared plumbing for the lifecycle coordinators.

Every command follows the same shape:

    load the current snapshot (fresh session)
      -> validate preconditions against type + state (state machine guards)
      -> settle through the SettlementExecutor, if funds move
      -> one transaction: conditional write + EscrowAction(s)
      -> notifications, after commit

A conditional write that loses means another writer changed the contract
since it was read. The coordinator reloads and either returns a no-op (the
target state is already reached) or raises ConcurrentModificationError.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.domain.enums import ActionType, EscrowType, MilestoneStatus
from escrow_engine.domain.exceptions import (
    FrozenByDisputeError,
    InvalidStateError,
    InvalidTransitionError,
    UnauthorizedPartyError,
)
from escrow_engine.domain.state_machine import (
    validate_milestone_transition,
    validate_transition,
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
    from escrow_engine.domain.enums import PartyRole
    from escrow_engine.domain.models import AnyEscrow, Milestone
    from escrow_engine.services.notification_service import NotificationService
    from escrow_engine.services.registry import EscrowRegistry
    from escrow_engine.services.settlement_service import SettlementExecutor

logger = get_logger(__name__)

# Reload-and-retry rounds for writes that lose to a concurrent, compatible writer.
MAX_WRITE_ROUNDS = 3


class WriteConflict(Exception):
    """Raised inside a transaction to roll it back when a conditional write lost."""


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class EngineContext:
    """Collaborators shared by every coordinator."""

    session_factory: async_sessionmaker[AsyncSession]
    registry: EscrowRegistry
    settlement: SettlementExecutor
    notifications: NotificationService
    settings: Settings
    clock: Callable[[], datetime] = field(default=utcnow)


@dataclass(frozen=True)
class ActionRecord:
    """An EscrowAction to append inside a transition's transaction."""

    action_type: ActionType
    actor: str
    old_status: str | None = None
    new_status: str | None = None
    notes: str | None = None
    metadata: dict | None = None
    milestone_id: uuid.UUID | None = None


class LifecycleComponent:
    """Base class for coordinators: loading, guards and conditional commits."""

    def __init__(self, ctx: EngineContext) -> None:
        self._ctx = ctx
        self._settings = ctx.settings
        self._settlement = ctx.settlement
        self._notifications = ctx.notifications

    async def _load(self, escrow_id: uuid.UUID) -> AnyEscrow:
        return await self._ctx.registry.load(escrow_id)

    # --- Guards ---

    @staticmethod
    def _guard(escrow: AnyEscrow, event: str, reason: str = "") -> str:
        """Validate an escrow transition; return the target status."""
        try:
            return validate_transition(escrow.escrow_type, escrow.status.value, event)
        except TransitionNotAllowed as err:
            raise InvalidTransitionError(escrow.status.value, event, reason) from err

    @staticmethod
    def _guard_milestone(milestone: Milestone, event: str) -> str:
        try:
            return validate_milestone_transition(milestone.status.value, event)
        except TransitionNotAllowed as err:
            raise InvalidTransitionError(milestone.status.value, event) from err

    @staticmethod
    def _require_type(escrow: AnyEscrow, escrow_type: EscrowType, event: str) -> None:
        if escrow.escrow_type != escrow_type:
            raise InvalidTransitionError(
                escrow.status.value,
                event,
                f"{event} applies to {escrow_type.value} escrows only",
            )

    @staticmethod
    def _require_party(escrow: AnyEscrow, actor: str, action: str) -> PartyRole:
        role = escrow.role_of(actor)
        if role is None:
            raise UnauthorizedPartyError(actor, action)
        return role

    @staticmethod
    def _ensure_not_frozen(escrow: AnyEscrow, milestone: Milestone | None = None) -> None:
        if escrow.is_disputed:
            raise FrozenByDisputeError(str(escrow.id))
        if milestone is not None and milestone.status == MilestoneStatus.DISPUTED:
            raise FrozenByDisputeError(str(escrow.id), str(milestone.id))

    # --- Settlement blocks ---

    async def _block_purposes(self, escrow_id: uuid.UUID, purposes: list[str]) -> list[str]:
        """Block every purpose or none. Returns the blocks this call created.

        Raises InvalidStateError (after undoing its own blocks) when one of the
        purposes is already settling or settled.
        """
        created: list[str] = []
        try:
            for purpose in purposes:
                if await self._settlement.block(escrow_id, purpose):
                    created.append(purpose)
        except InvalidStateError:
            await self._release_blocks(escrow_id, created)
            raise
        return created

    async def _release_blocks(self, escrow_id: uuid.UUID, purposes: list[str]) -> None:
        for purpose in purposes:
            await self._settlement.release_block(escrow_id, purpose)

    # --- Writes ---

    async def _commit(
        self,
        escrow: AnyEscrow,
        values: dict[str, Any] | None,
        actions: list[ActionRecord],
        expected_status: str | None = None,
    ) -> bool:
        """Conditionally write the escrow and append actions in one transaction.

        Returns False (and writes nothing) when the conditional write lost.
        """
        try:
            async with self._ctx.session_factory() as session, session.begin():
                if values is not None:
                    won = await EscrowRepository(session).compare_and_set(
                        escrow.id,
                        escrow.version,
                        values,
                        expected_status=expected_status,
                    )
                    if not won:
                        raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")
                await self._append(session, escrow.id, actions)
        except WriteConflict as conflict:
            logger.info("escrow.write_conflict", conflict=str(conflict))
            return False
        return True

    @staticmethod
    async def _append(
        session: AsyncSession,
        escrow_id: uuid.UUID,
        actions: list[ActionRecord],
    ) -> None:
        repo = ActionRepository(session)
        for action in actions:
            await repo.record(
                escrow_id=escrow_id,
                action_type=action.action_type,
                actor=action.actor,
                old_status=action.old_status,
                new_status=action.new_status,
                notes=action.notes,
                metadata=action.metadata,
                milestone_id=action.milestone_id,
            )

    async def _record(self, escrow_id: uuid.UUID, action: ActionRecord) -> None:
        """Append a single action in its own transaction (failure records)."""
        async with self._ctx.session_factory() as session, session.begin():
            await self._append(session, escrow_id, [action])
