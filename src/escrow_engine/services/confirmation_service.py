"""Confirmation Coordinator — the mutual-confirmation and-gate.

Each party sets its own flag exactly once while the escrow is active; a repeat
is a no-op success. Whoever observes both flags set triggers the completion
settlement:

    buyer_amount  -> seller   (payment, platform fee applies)
    seller_amount -> seller   (security deposit return, fee exempt)

The settlement claim on `completion` makes concurrent observers settle once.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from escrow_engine.domain.enums import (
    SYSTEM_ACTOR,
    ActionType,
    EscrowStatus,
    EscrowType,
    NotificationType,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    FrozenByDisputeError,
    InvalidTransitionError,
    SettlementBlockedError,
)
from escrow_engine.domain.models import CommandResult, SettlementLeg
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
)
from escrow_engine.services.settlement_service import COMPLETION

if TYPE_CHECKING:
    import uuid

    from escrow_engine.domain.models import MutualConfirmationEscrow

logger = get_logger(__name__)


def completion_legs(escrow: MutualConfirmationEscrow) -> list[SettlementLeg]:
    return [
        SettlementLeg(
            source=escrow.escrow_wallet,
            destination=escrow.seller_wallet,
            amount=escrow.buyer_amount,
            token=escrow.token,
            label="payment",
        ),
        SettlementLeg(
            source=escrow.escrow_wallet,
            destination=escrow.seller_wallet,
            amount=escrow.seller_amount,
            token=escrow.token,
            label="security_deposit_return",
            fee_exempt=True,
        ),
    ]


class ConfirmationCoordinator(LifecycleComponent):
    """confirmCompletion."""

    async def confirm_completion(self, escrow_id: uuid.UUID, actor: str) -> CommandResult:
        for _ in range(MAX_WRITE_ROUNDS):
            escrow = await self._load(escrow_id)
            self._require_type(escrow, EscrowType.MUTUAL_CONFIRMATION, "confirm")
            role = self._require_party(escrow, actor, "confirm this escrow")

            if escrow.status == EscrowStatus.COMPLETED:
                existing = await self._settlement.get(escrow.id, COMPLETION)
                return CommandResult(escrow=escrow, settlements=(existing,) if existing else ())
            self._ensure_not_frozen(escrow)
            if escrow.status != EscrowStatus.ACTIVE:
                raise InvalidTransitionError(
                    escrow.status.value, "confirm", "confirmations are accepted while active"
                )

            flag = f"{role.value}_confirmed"
            if getattr(escrow, flag):
                logger.info("confirmation.repeat", escrow_id=str(escrow.id), role=role.value)
                break

            won = await self._commit(
                escrow,
                {flag: True},
                [
                    ActionRecord(
                        ActionType.CONFIRMED,
                        actor,
                        escrow.status.value,
                        escrow.status.value,
                        metadata={"role": role.value},
                    )
                ],
                expected_status=EscrowStatus.ACTIVE.value,
            )
            if won:
                logger.info("confirmation.recorded", escrow_id=str(escrow.id), role=role.value)
                await self._notifications.notify(
                    escrow.counterparty_of(actor),
                    NotificationType.ACTION_REQUIRED,
                    escrow.id,
                    f"The {role.value} confirmed completion",
                )
                break
        else:
            raise ConcurrentModificationError("escrow", str(escrow_id))

        escrow = await self._load(escrow_id)
        if escrow.status == EscrowStatus.ACTIVE and escrow.both_confirmed:
            return await self._complete(escrow)
        return CommandResult(escrow=escrow)

    async def _complete(self, escrow: MutualConfirmationEscrow) -> CommandResult:
        try:
            result = await self._settlement.settle(escrow.id, COMPLETION, completion_legs(escrow))
        except SettlementBlockedError as err:
            current = await self._load(escrow.id)
            if current.is_disputed:
                raise FrozenByDisputeError(str(escrow.id)) from err
            raise InvalidTransitionError(
                current.status.value, "complete", "release was blocked"
            ) from err

        if not result.completed:
            return CommandResult(escrow=escrow, settlements=(result,))

        for _ in range(MAX_WRITE_ROUNDS):
            won = await self._commit(
                escrow,
                {"status": EscrowStatus.COMPLETED.value, "completed_at": self._ctx.clock()},
                [
                    ActionRecord(
                        ActionType.COMPLETED,
                        SYSTEM_ACTOR,
                        EscrowStatus.ACTIVE.value,
                        EscrowStatus.COMPLETED.value,
                        metadata={"references": list(result.references)},
                    )
                ],
                expected_status=EscrowStatus.ACTIVE.value,
            )
            if won:
                break
            escrow = await self._load(escrow.id)
            if escrow.status == EscrowStatus.COMPLETED:
                return CommandResult(escrow=escrow, settlements=(result,))
            if escrow.status != EscrowStatus.ACTIVE:
                raise ConcurrentModificationError("escrow", str(escrow.id))
        else:
            raise ConcurrentModificationError("escrow", str(escrow.id))

        logger.info("escrow.completed", escrow_id=str(escrow.id), references=result.references)
        await self._notifications.notify_many(
            [escrow.buyer_wallet, escrow.seller_wallet],
            NotificationType.ESCROW_COMPLETED,
            escrow.id,
            "Both parties confirmed; funds were released to the seller",
        )
        return CommandResult(escrow=await self._load(escrow.id), settlements=(result,))
