"""Atomic Swap Executor — one dual-leg settlement once both sides are deposited.

"Atomic" here means exactly-once initiation through the settlement claim on
`swap_execution`. Both legs (and their fee legs) live in that one claim:

    buyer's asset  -> seller
    seller's asset -> buyer

If a leg fails after another already settled, the later leg is retried with
tenacity up to swap_leg_retry_attempts before the claim is left `partial`, a
swap_partial_failure action is recorded and PartialSwapFailureError is raised
for operator escalation.
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
    InvalidTransitionError,
    PartialSwapFailureError,
    SettlementBlockedError,
    SettlementFailureError,
)
from escrow_engine.domain.models import CommandResult, SettlementLeg
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import (
    MAX_WRITE_ROUNDS,
    ActionRecord,
    LifecycleComponent,
)
from escrow_engine.services.settlement_service import SWAP_EXECUTION

if TYPE_CHECKING:
    import uuid

    from escrow_engine.domain.models import AtomicSwapEscrow

logger = get_logger(__name__)


def swap_legs(escrow: AtomicSwapEscrow) -> list[SettlementLeg]:
    return [
        SettlementLeg(
            source=escrow.escrow_wallet,
            destination=escrow.seller_wallet,
            amount=escrow.buyer_amount,
            token=escrow.token,
            label="swap_leg_buyer",
        ),
        SettlementLeg(
            source=escrow.escrow_wallet,
            destination=escrow.buyer_wallet,
            amount=escrow.seller_amount,
            token=escrow.seller_token,
            label="swap_leg_seller",
        ),
    ]


class AtomicSwapExecutor(LifecycleComponent):
    """Executes the swap for a fully funded atomic-swap escrow."""

    async def execute(self, escrow_id: uuid.UUID) -> CommandResult:
        escrow = await self._load(escrow_id)
        self._require_type(escrow, EscrowType.ATOMIC_SWAP, "execute_swap")

        if escrow.swap_executed:
            existing = await self._settlement.get(escrow.id, SWAP_EXECUTION)
            return CommandResult(escrow=escrow, settlements=(existing,) if existing else ())
        self._guard(escrow, "execute_swap")

        try:
            result = await self._settlement.settle(
                escrow.id,
                SWAP_EXECUTION,
                swap_legs(escrow),
                retry_after_first_leg=True,
            )
        except SettlementBlockedError as err:
            raise InvalidTransitionError(
                escrow.status.value, "execute_swap", "the swap expired and is being refunded"
            ) from err
        except SettlementFailureError as err:
            if err.settled_legs == 0:
                raise
            settled = await self._settlement.get(escrow.id, SWAP_EXECUTION)
            references = [ref for ref in settled.references if ref] if settled else []
            await self._record(
                escrow.id,
                ActionRecord(
                    ActionType.SWAP_PARTIAL_FAILURE,
                    SYSTEM_ACTOR,
                    escrow.status.value,
                    escrow.status.value,
                    notes=err.reason,
                    metadata={"settled_references": references},
                ),
            )
            logger.error(
                "swap.partial_failure",
                escrow_id=str(escrow.id),
                settled_references=references,
                error=err.reason,
            )
            raise PartialSwapFailureError(str(escrow.id), references, err.reason) from err

        if not result.completed:
            return CommandResult(escrow=escrow, settlements=(result,))

        for _ in range(MAX_WRITE_ROUNDS):
            won = await self._commit(
                escrow,
                {
                    "status": EscrowStatus.COMPLETED.value,
                    "swap_executed": True,
                    "completed_at": self._ctx.clock(),
                },
                [
                    ActionRecord(
                        ActionType.SWAPPED,
                        SYSTEM_ACTOR,
                        EscrowStatus.FULLY_FUNDED.value,
                        EscrowStatus.COMPLETED.value,
                        metadata={"references": list(result.references)},
                    )
                ],
                expected_status=EscrowStatus.FULLY_FUNDED.value,
            )
            if won:
                break
            escrow = await self._load(escrow_id)
            if escrow.swap_executed:
                return CommandResult(escrow=escrow, settlements=(result,))
            if escrow.status != EscrowStatus.FULLY_FUNDED:
                raise ConcurrentModificationError("escrow", str(escrow_id))
        else:
            raise ConcurrentModificationError("escrow", str(escrow_id))

        logger.info("swap.executed", escrow_id=str(escrow.id), references=result.references)
        await self._notifications.notify_many(
            [escrow.buyer_wallet, escrow.seller_wallet],
            NotificationType.SWAP_EXECUTED,
            escrow.id,
            "Both legs of the swap have settled",
        )
        return CommandResult(escrow=await self._load(escrow_id), settlements=(result,))
