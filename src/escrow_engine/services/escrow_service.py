"""Escrow Service — the single entry point for every escrow command and read.

Wires the registry, the settlement executor and the lifecycle coordinators
around one session factory. Both REST routes and MCP tools call into this
service, ensuring a single source of truth for all business rules.

The service holds no contract state between calls; every command reloads the
current snapshot from the store.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from escrow_engine.domain.exceptions import DisputeNotFoundError
from escrow_engine.domain.fees import calculate_platform_fee, validate_fee_configuration
from escrow_engine.domain.state_machine import machine_for
from escrow_engine.infrastructure.database.repositories import (
    ActionRepository,
    AdminActionRepository,
    DepositRepository,
    DisputeRepository,
    EvidenceRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.admin_service import AdminResolutionService
from escrow_engine.services.cancellation_service import CancellationCoordinator
from escrow_engine.services.confirmation_service import ConfirmationCoordinator
from escrow_engine.services.deposit_service import DepositCoordinator
from escrow_engine.services.dispute_service import DisputeCoordinator
from escrow_engine.services.lifecycle import EngineContext, utcnow
from escrow_engine.services.milestone_service import MilestoneCoordinator
from escrow_engine.services.notification_service import NotificationService
from escrow_engine.services.registry import EscrowRegistry
from escrow_engine.services.settlement_service import SettlementExecutor
from escrow_engine.services.swap_service import AtomicSwapExecutor
from escrow_engine.services.sweeper import TimeoutSweeper

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.config import Settings
    from escrow_engine.domain.enums import DisputePriority, EvidenceType, ResolutionAction
    from escrow_engine.domain.models import AnyEscrow, CommandResult, SettlementResult
    from escrow_engine.domain.ports import LedgerTransfer, NotificationDispatcher
    from escrow_engine.infrastructure.database.orm_models import (
        AdminActionRow,
        CancellationRequestRow,
        EscrowActionRow,
        EscrowDepositRow,
        EscrowDisputeRow,
        EscrowEvidenceRow,
    )
    from escrow_engine.services.registry import EscrowDraft
    from escrow_engine.services.sweeper import SweepReport

logger = get_logger(__name__)


@dataclass
class EscrowDetails:
    """getEscrowDetails projection."""

    escrow: AnyEscrow
    actions: list[EscrowActionRow] = field(default_factory=list)
    deposits: list[EscrowDepositRow] = field(default_factory=list)
    disputes: list[EscrowDisputeRow] = field(default_factory=list)
    admin_actions: list[AdminActionRow] = field(default_factory=list)
    settlements: list[SettlementResult] = field(default_factory=list)
    allowed_events: list[str] = field(default_factory=list)
    pending_cancellation: CancellationRequestRow | None = None


@dataclass
class DisputeDetails:
    """getDisputeDetails projection."""

    dispute: EscrowDisputeRow
    evidence: list[EscrowEvidenceRow] = field(default_factory=list)
    admin_actions: list[AdminActionRow] = field(default_factory=list)


class EscrowService:
    """Facade over the escrow engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerTransfer,
        dispatcher: NotificationDispatcher,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        notifications = NotificationService(dispatcher)
        self.registry = EscrowRegistry(session_factory, ledger, notifications, settings)
        self.settlement = SettlementExecutor(session_factory, ledger, settings, clock=clock)
        ctx = EngineContext(
            session_factory=session_factory,
            registry=self.registry,
            settlement=self.settlement,
            notifications=notifications,
            settings=settings,
            clock=clock,
        )
        self.swaps = AtomicSwapExecutor(ctx)
        self.deposits = DepositCoordinator(ctx, self.swaps)
        self.confirmations = ConfirmationCoordinator(ctx)
        self.milestones = MilestoneCoordinator(ctx)
        self.disputes = DisputeCoordinator(ctx)
        self.admin = AdminResolutionService(ctx, self.milestones)
        self.sweeper = TimeoutSweeper(ctx, self.disputes)
        self.cancellations = CancellationCoordinator(ctx)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_escrow(self, draft: EscrowDraft) -> AnyEscrow:
        return await self.registry.create(draft)

    async def record_deposit(
        self,
        escrow_id: uuid.UUID,
        depositor_wallet: str,
        amount: Decimal,
        tx_reference: str,
        token: str | None = None,
    ) -> CommandResult:
        return await self.deposits.record_deposit(
            escrow_id, depositor_wallet, amount, tx_reference, token
        )

    async def confirm_completion(self, escrow_id: uuid.UUID, actor: str) -> CommandResult:
        return await self.confirmations.confirm_completion(escrow_id, actor)

    async def submit_milestone_work(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        notes: str | None = None,
        evidence_urls: list[str] | None = None,
    ) -> CommandResult:
        return await self.milestones.submit_work(
            escrow_id, milestone_id, actor, notes, evidence_urls
        )

    async def approve_milestone(
        self,
        escrow_id: uuid.UUID,
        milestone_id: uuid.UUID,
        actor: str,
        notes: str | None = None,
    ) -> CommandResult:
        return await self.milestones.approve_milestone(escrow_id, milestone_id, actor, notes)

    async def execute_swap(self, escrow_id: uuid.UUID) -> CommandResult:
        """Re-drive a swap whose settlement failed earlier."""
        return await self.swaps.execute(escrow_id)

    async def raise_dispute(
        self,
        escrow_id: uuid.UUID,
        actor: str,
        reason: str,
        description: str,
        milestone_id: uuid.UUID | None = None,
        priority: DisputePriority | None = None,
    ) -> CommandResult:
        kwargs = {"priority": priority} if priority is not None else {}
        return await self.disputes.raise_dispute(
            escrow_id, actor, reason, description, milestone_id, **kwargs
        )

    async def submit_evidence(
        self,
        dispute_id: uuid.UUID,
        actor: str,
        evidence_type: EvidenceType,
        content: str | None = None,
        file_url: str | None = None,
    ) -> EscrowEvidenceRow:
        return await self.disputes.submit_evidence(
            dispute_id, actor, evidence_type, content, file_url
        )

    async def resolve_dispute(
        self,
        dispute_id: uuid.UUID,
        admin_wallet: str,
        action: ResolutionAction,
        notes: str,
        amount_to_buyer: Decimal | None = None,
        amount_to_seller: Decimal | None = None,
    ) -> CommandResult:
        return await self.admin.resolve_dispute(
            dispute_id, admin_wallet, action, notes, amount_to_buyer, amount_to_seller
        )

    async def sweep_expired(self, now: datetime | None = None) -> SweepReport:
        return await self.sweeper.sweep_expired(now)

    def ensure_admin(self, wallet: str, action: str) -> None:
        self.admin.ensure_admin(wallet, action)

    async def extend_expiry(
        self, escrow_id: uuid.UUID, admin_wallet: str, additional_hours: int
    ) -> CommandResult:
        self.admin.ensure_admin(admin_wallet, "extend an escrow deadline")
        return await self.sweeper.extend_expiry(escrow_id, admin_wallet, additional_hours)

    async def request_cancellation(
        self, escrow_id: uuid.UUID, actor: str, reason: str
    ) -> CancellationRequestRow:
        return await self.cancellations.request_cancellation(escrow_id, actor, reason)

    async def approve_cancellation(self, request_id: uuid.UUID, actor: str) -> CommandResult:
        return await self.cancellations.approve_cancellation(request_id, actor)

    async def reject_cancellation(
        self, request_id: uuid.UUID, actor: str
    ) -> CancellationRequestRow:
        return await self.cancellations.reject_cancellation(request_id, actor)

    async def cancel_unfunded(
        self, escrow_id: uuid.UUID, actor: str, reason: str | None = None
    ) -> CommandResult:
        return await self.cancellations.cancel_unfunded(escrow_id, actor, reason)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: uuid.UUID) -> AnyEscrow:
        return await self.registry.load(escrow_id)

    async def list_escrows(self, wallet: str) -> list[AnyEscrow]:
        return await self.registry.list_for_wallet(wallet)

    def allowed_events(self, escrow: AnyEscrow) -> list[str]:
        if escrow.is_terminal:
            return []
        return machine_for(escrow.escrow_type, escrow.status.value).get_allowed_events()

    async def get_escrow_details(self, escrow_id: uuid.UUID) -> EscrowDetails:
        escrow = await self.registry.load(escrow_id)
        async with self._session_factory() as session:
            actions = await ActionRepository(session).list_for_escrow(escrow_id)
            deposits = await DepositRepository(session).list_for_escrow(escrow_id)
            disputes = await DisputeRepository(session).list_for_escrow(escrow_id)
            admin_actions = await AdminActionRepository(session).list_for_escrow(escrow_id)
        return EscrowDetails(
            escrow=escrow,
            actions=actions,
            deposits=deposits,
            disputes=disputes,
            admin_actions=admin_actions,
            settlements=await self.settlement.list_for_escrow(escrow_id),
            allowed_events=self.allowed_events(escrow),
            pending_cancellation=await self.cancellations.get_pending(escrow_id),
        )

    async def get_dispute_details(self, dispute_id: uuid.UUID) -> DisputeDetails:
        async with self._session_factory() as session:
            dispute = await DisputeRepository(session).get_by_id(dispute_id)
            if dispute is None:
                raise DisputeNotFoundError(str(dispute_id))
            evidence = await EvidenceRepository(session).list_for_dispute(dispute_id)
            admin_actions = await AdminActionRepository(session).list_for_dispute(dispute_id)
        return DisputeDetails(dispute=dispute, evidence=evidence, admin_actions=admin_actions)

    async def list_open_disputes(self, limit: int = 100) -> list[EscrowDisputeRow]:
        return await self.admin.list_open_disputes(limit)

    def fee_configuration(self, sample_amount: Decimal | None = None) -> dict:
        """Operator summary of the fee settings, with an optional worked example."""
        errors, warnings = validate_fee_configuration(
            self._settings.platform_fee_percentage, self._settings.treasury_wallet
        )
        summary = {
            "platform_fee_percentage": str(self._settings.platform_fee_percentage),
            "cancellation_fee_percentage": str(self._settings.cancellation_fee_percentage),
            "treasury_wallet": self._settings.treasury_wallet or None,
            "valid": not errors,
            "errors": errors,
            "warnings": warnings,
        }
        if sample_amount is not None and not errors:
            fees = calculate_platform_fee(sample_amount, self._settings.platform_fee_percentage)
            summary["example"] = {
                "gross_amount": str(fees.gross_amount),
                "platform_fee": str(fees.platform_fee),
                "net_amount": str(fees.net_amount),
            }
        return summary


# ---------------------------------------------------------------------------
# Application singleton (initialized in the FastAPI lifespan)
# ---------------------------------------------------------------------------

_service: EscrowService | None = None


def init_escrow_service(
    dispatcher: NotificationDispatcher,
    settings: Settings,
    ledger: LedgerTransfer | None = None,
) -> EscrowService:
    """Build the process-wide service over the shared session factory."""
    global _service
    from escrow_engine.infrastructure.database.engine import get_session_factory
    from escrow_engine.services.ledger_service import SimulatedLedger

    _service = EscrowService(
        session_factory=get_session_factory(),
        ledger=ledger or SimulatedLedger(),
        dispatcher=dispatcher,
        settings=settings,
    )
    logger.info(
        "escrow_service.initialized",
        ledger=type(ledger).__name__ if ledger else "SimulatedLedger",
        dispatcher=type(dispatcher).__name__,
    )
    return _service


def get_escrow_service() -> EscrowService:
    """Return the service singleton. Must call init_escrow_service() first."""
    if _service is None:
        raise RuntimeError("Escrow service not initialized. Call init_escrow_service() first.")
    return _service


def close_escrow_service() -> None:
    global _service
    _service = None
