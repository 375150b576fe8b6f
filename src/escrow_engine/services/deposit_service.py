"""Deposit Coordinator — turns an observed deposit into exactly one flag update.

Observations come from pollers and webhooks and may repeat. A repeat of the
same tx_reference, or a deposit for a role that is already funded, is a no-op
success. The second required deposit moves the contract to fully funded in the
same transaction that sets the flag:

    mutual_confirmation: -> fully_funded -> active  (two actions)
    milestone:           buyer_deposited -> active  (two actions)
    atomic_swap:         -> fully_funded, then the Atomic Swap Executor runs

Deposits observed after expires_at are recorded and flagged without any status
change; the Timeout Sweeper refunds them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    EscrowStatus,
    EscrowType,
    NotificationType,
    PartyRole,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    DepositAmountMismatchError,
    EscrowValidationError,
    InvalidTransitionError,
    SettlementBlockedError,
)
from escrow_engine.domain.models import AtomicSwapEscrow, CommandResult
from escrow_engine.infrastructure.database.orm_models import EscrowDepositRow
from escrow_engine.infrastructure.database.repositories import (
    DepositRepository,
    EscrowRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
    WriteConflict,
)
from escrow_engine.services.settlement_service import FUNDING

if TYPE_CHECKING:
    import uuid
    from decimal import Decimal

    from escrow_engine.domain.models import AnyEscrow
    from escrow_engine.services.lifecycle import EngineContext
    from escrow_engine.services.swap_service import AtomicSwapExecutor

logger = get_logger(__name__)


class DepositCoordinator(LifecycleComponent):
    """recordDeposit."""

    def __init__(self, ctx: EngineContext, swap_executor: AtomicSwapExecutor) -> None:
        super().__init__(ctx)
        self._swap_executor = swap_executor

    async def record_deposit(
        self,
        escrow_id: uuid.UUID,
        depositor_wallet: str,
        amount: Decimal,
        tx_reference: str,
        token: str | None = None,
    ) -> CommandResult:
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            role = self._require_party(escrow, depositor_wallet, "deposit into this escrow")
            self._validate_amount(escrow, role, amount, token)

            if await self._is_duplicate(escrow, tx_reference):
                return await self._duplicate(escrow, tx_reference)
            if escrow.is_deposited(role):
                return await self._duplicate(escrow, tx_reference)
            if escrow.is_terminal:
                raise InvalidTransitionError(
                    escrow.status.value, f"{role.value}_deposit", "escrow is terminal"
                )

            result = await self._apply(escrow, role, depositor_wallet, amount, tx_reference)
            if result is not None:
                return result

        raise ConcurrentModificationError("escrow", str(escrow_id))

    # ------------------------------------------------------------------

    def _validate_amount(
        self,
        escrow: AnyEscrow,
        role: PartyRole,
        amount: Decimal,
        token: str | None,
    ) -> None:
        if role == PartyRole.SELLER and not escrow.requires_seller_deposit:
            raise InvalidTransitionError(
                escrow.status.value,
                "seller_deposit",
                f"{escrow.escrow_type.value} escrows take no seller deposit",
            )
        expected, expected_token = escrow.expected_deposit(role)
        if token is not None and token != expected_token:
            raise DepositAmountMismatchError(
                role.value, f"{expected} {expected_token}", f"{amount} {token}"
            )
        if abs(amount - expected) > self._settings.deposit_amount_tolerance:
            raise DepositAmountMismatchError(role.value, str(expected), str(amount))

    async def _is_duplicate(self, escrow: AnyEscrow, tx_reference: str) -> bool:
        async with self._ctx.session_factory() as session:
            existing = await DepositRepository(session).get_by_tx_reference(tx_reference)
        if existing is None:
            return False
        if existing.escrow_id != escrow.id:
            raise EscrowValidationError(
                [f"tx_reference {tx_reference} was already recorded for another escrow"]
            )
        return True

    async def _duplicate(self, escrow: AnyEscrow, tx_reference: str) -> CommandResult:
        logger.info(
            "deposit.duplicate",
            escrow_id=str(escrow.id),
            tx_reference=tx_reference,
            status=escrow.status.value,
        )
        # A redelivered deposit re-drives a swap that has not finished yet.
        if (
            isinstance(escrow, AtomicSwapEscrow)
            and escrow.status == EscrowStatus.FULLY_FUNDED
            and not escrow.swap_executed
        ):
            return await self._swap_executor.execute(escrow.id)
        return CommandResult(escrow=escrow, extra={"duplicate": True})

    async def _apply(
        self,
        escrow: AnyEscrow,
        role: PartyRole,
        wallet: str,
        amount: Decimal,
        tx_reference: str,
    ) -> CommandResult | None:
        """Write one deposit. Returns None when the conditional write lost."""
        now = self._ctx.clock()
        late = escrow.is_expired(now)
        event = f"{role.value}_deposit"
        old_status = escrow.status.value
        values: dict = {f"{role.value}_deposited": True}
        actions: list[ActionRecord] = []
        new_status = old_status

        if not late:
            new_status = self._guard(escrow, event)
            if new_status == EscrowStatus.FULLY_FUNDED.value:
                late = not await self._take_funding(escrow)

        if late:
            new_status = old_status
            actions.append(
                ActionRecord(
                    ActionType.LATE_DEPOSIT,
                    wallet,
                    old_status,
                    old_status,
                    notes="Deposit observed after expiry; it will be refunded",
                    metadata={"role": role.value, "amount": str(amount), "tx": tx_reference},
                )
            )
        else:
            actions.append(
                ActionRecord(
                    ActionType.DEPOSITED,
                    wallet,
                    old_status,
                    new_status,
                    metadata={"role": role.value, "amount": str(amount), "tx": tx_reference},
                )
            )
            if self._activates(escrow, new_status):
                funded_status = new_status
                new_status = EscrowStatus.ACTIVE.value
                actions.append(
                    ActionRecord(ActionType.FUNDED, SYSTEM_ACTOR, funded_status, new_status)
                )
            if new_status in (EscrowStatus.ACTIVE.value, EscrowStatus.FULLY_FUNDED.value):
                values["funded_at"] = now
            values["status"] = new_status

        deposit = EscrowDepositRow(
            escrow_id=escrow.id,
            role=role.value,
            depositor_wallet=wallet,
            amount=amount,
            token=escrow.expected_deposit(role)[1],
            tx_reference=tx_reference,
            is_late=late,
            observed_at=now,
        )
        try:
            async with self._ctx.session_factory() as session, session.begin():
                won = await EscrowRepository(session).compare_and_set(
                    escrow.id, escrow.version, values, expected_status=old_status
                )
                if not won:
                    raise WriteConflict(f"escrow {escrow.id} v{escrow.version}")
                await DepositRepository(session).record(deposit)
                await self._append(session, escrow.id, actions)
        except WriteConflict:
            logger.info("deposit.write_conflict", escrow_id=str(escrow.id), role=role.value)
            return None
        except IntegrityError:
            # Same tx_reference recorded concurrently.
            return await self._duplicate(await self._load(escrow.id), tx_reference)

        logger.info(
            "deposit.recorded",
            escrow_id=str(escrow.id),
            role=role.value,
            amount=str(amount),
            late=late,
            old_status=old_status,
            new_status=new_status,
        )
        await self._notifications.notify(
            escrow.counterparty_of(wallet),
            NotificationType.DEPOSIT_RECEIVED,
            escrow.id,
            f"The {role.value} deposited {amount} {deposit.token}",
            late=late,
        )

        if new_status == EscrowStatus.FULLY_FUNDED.value and not late:
            return await self._swap_executor.execute(escrow.id)
        return CommandResult(escrow=await self._load(escrow.id), extra={"late": late})

    @staticmethod
    def _activates(escrow: AnyEscrow, new_status: str) -> bool:
        """Funding completes and the contract goes straight to active."""
        if escrow.escrow_type == EscrowType.MILESTONE:
            return new_status == EscrowStatus.BUYER_DEPOSITED.value
        if escrow.escrow_type == EscrowType.MUTUAL_CONFIRMATION:
            return new_status == EscrowStatus.FULLY_FUNDED.value
        return False

    async def _take_funding(self, escrow: AnyEscrow) -> bool:
        """Mark the funding transition so an expiring contract cannot also be swept.

        Returns False when the sweeper got there first; the deposit is then late.
        """
        try:
            await self._settlement.settle(escrow.id, FUNDING, [])
        except SettlementBlockedError:
            logger.info("deposit.funding_blocked", escrow_id=str(escrow.id))
            return False
        return True
