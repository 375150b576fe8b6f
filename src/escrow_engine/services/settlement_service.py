"""Settlement Executor — the single path all fund movement flows through.

settle(escrow_id, purpose, legs):
    1. Expand legs with platform fees (net leg + fee leg to the treasury).
    2. Claim (escrow_id, purpose) by inserting an in_flight row in its own
       transaction. The unique key makes exactly one caller the owner.
    3. A caller that loses the insert reads the existing claim:
         completed              -> returns that claim (reused=True), no transfer
         in_flight              -> the same, unless its lease has lapsed
         failed / partial /     -> takes it over by compare-and-set and resumes
         lapsed in_flight          with the STORED legs, skipping legs that
                                   already hold a reference
         blocked                -> SettlementBlockedError
    4. Transfers each leg, persisting its reference as soon as it returns.
    5. Marks the claim completed, or failed/partial with the error, recording a
       settlement_failed action before raising SettlementFailureError. A
       cancelled task records the failure too, then re-raises the cancellation.

Ownership is fenced by the claim's `attempts` counter: every takeover bumps
it, and an owner whose claim was taken over can no longer write to it. The
lease (claimed_at, refreshed after each leg) only lapses for an owner that
died mid-claim, so it must comfortably exceed one transfer's duration.

block(escrow_id, purpose) lets a dispute, the sweeper or a cancellation take a
purpose so it can never move funds. Whichever of block() and settle() claims
the key first wins; the loser observes the other's claim.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from escrow_engine.domain.enums import SYSTEM_ACTOR, ActionType, SettlementStatus
from escrow_engine.domain.exceptions import (
    EscrowConfigurationError,
    InvalidStateError,
    SettlementBlockedError,
    SettlementFailureError,
)
from escrow_engine.domain.fees import apply_fees
from escrow_engine.domain.models import SettlementLeg, SettlementResult, as_utc
from escrow_engine.infrastructure.database.orm_models import SettlementClaimRow
from escrow_engine.infrastructure.database.repositories import (
    ActionRepository,
    SettlementClaimRepository,
)
from escrow_engine.logging_config import get_logger
from escrow_engine.services.lifecycle import utcnow

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable
    from datetime import datetime
    from decimal import Decimal

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from escrow_engine.config import Settings
    from escrow_engine.domain.ports import LedgerTransfer

logger = get_logger(__name__)

# Rounds of "insert lost, read, take over lost" before giving up on a claim.
_MAX_CLAIM_ROUNDS = 5

# --- Purposes ---
COMPLETION = "completion"
FUNDING = "funding"
SWAP_EXECUTION = "swap_execution"
MUTUAL_CANCELLATION = "mutual_cancellation"


def milestone_release(milestone_id: uuid.UUID) -> str:
    return f"milestone:{milestone_id}:release"


def timeout_refund(role: str) -> str:
    return f"timeout_refund:{role}"


def cancellation_refund(role: str) -> str:
    return f"cancellation_refund:{role}"


def dispute_resolution(dispute_id: uuid.UUID) -> str:
    return f"dispute:{dispute_id}:resolution"


def claim_to_result(row: SettlementClaimRow, reused: bool = False) -> SettlementResult:
    legs = tuple(SettlementLeg.from_dict(leg) for leg in row.legs or [])
    references = list(row.references or [])
    references += [None] * (len(legs) - len(references))
    return SettlementResult(
        claim_id=row.id,
        escrow_id=row.escrow_id,
        purpose=row.purpose,
        status=row.status,
        legs=legs,
        references=tuple(references),
        reused=reused,
    )


class SettlementExecutor:
    """Idempotent, claim-guarded settlement of escrow funds."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerTransfer,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._settings = settings
        self._clock = clock

    # ------------------------------------------------------------------
    # Leg preparation
    # ------------------------------------------------------------------

    def prepare_legs(
        self,
        legs: list[SettlementLeg],
        fee_percentage: Decimal | None = None,
    ) -> list[SettlementLeg]:
        """Apply the platform fee (or an explicit fee_percentage) to payable legs."""
        fee = self._settings.platform_fee_percentage if fee_percentage is None else fee_percentage
        charges_fee = fee > 0 and any(not leg.fee_exempt and leg.amount > 0 for leg in legs)
        if charges_fee and not self._settings.treasury_wallet:
            raise EscrowConfigurationError(
                "A platform fee is configured but TREASURY_WALLET is not set"
            )
        return apply_fees(legs, fee, self._settings.treasury_wallet)

    # ------------------------------------------------------------------
    # settle
    # ------------------------------------------------------------------

    async def settle(
        self,
        escrow_id: uuid.UUID,
        purpose: str,
        legs: list[SettlementLeg],
        *,
        fee_percentage: Decimal | None = None,
        retry_after_first_leg: bool = False,
        require_same_legs: bool = False,
        actor: str = SYSTEM_ACTOR,
    ) -> SettlementResult:
        """Move funds for (escrow_id, purpose) exactly once.

        Args:
            legs: Gross legs; fees are applied here, never by the caller.
            fee_percentage: Overrides the platform fee (mutual cancellation).
            retry_after_first_leg: Once one leg of this claim has settled, retry
                each later leg up to swap_leg_retry_attempts times.
            require_same_legs: Refuse to reuse or resume a claim whose stored
                legs differ from `legs` (after fees), instead of silently
                finishing the stored ones.

        Returns:
            The claim's result. `completed` is False when another caller holds
            the claim in flight; the caller must not advance state on it.

        Raises:
            SettlementBlockedError: The purpose was blocked.
            InvalidStateError: require_same_legs and the stored legs differ.
            SettlementFailureError: A transfer failed; the claim is failed or
                partial and a retry resumes it.
        """
        prepared = self.prepare_legs(legs, fee_percentage)
        result, fence = await self._acquire(escrow_id, purpose, prepared, require_same_legs)
        if fence is None:
            logger.info(
                "settlement.reused",
                escrow_id=str(escrow_id),
                purpose=purpose,
                status=result.status,
            )
            return result
        return await self._execute(result, fence, retry_after_first_leg, actor)

    def _lease_lapsed(self, claim: SettlementClaimRow) -> bool:
        lease = timedelta(seconds=self._settings.settlement_claim_lease_seconds)
        return as_utc(claim.claimed_at) + lease <= self._clock()

    async def _acquire(
        self,
        escrow_id: uuid.UUID,
        purpose: str,
        legs: list[SettlementLeg],
        require_same_legs: bool,
    ) -> tuple[SettlementResult, int | None]:
        """Return (claim, fence). fence is the owner's attempts value, None if not owned."""
        for _ in range(_MAX_CLAIM_ROUNDS):
            row = SettlementClaimRow(
                escrow_id=escrow_id,
                purpose=purpose,
                status=SettlementStatus.IN_FLIGHT.value,
                legs=[leg.to_dict() for leg in legs],
                references=[None] * len(legs),
                attempts=1,
                claimed_at=self._clock(),
            )
            try:
                async with self._session_factory() as session, session.begin():
                    await SettlementClaimRepository(session).insert(row)
            except IntegrityError:
                pass
            else:
                logger.info(
                    "settlement.claimed",
                    escrow_id=str(escrow_id),
                    purpose=purpose,
                    legs=len(legs),
                )
                return claim_to_result(row), 1

            async with self._session_factory() as session, session.begin():
                repo = SettlementClaimRepository(session)
                existing = await repo.get(escrow_id, purpose)
                if existing is None:
                    continue
                status = SettlementStatus(existing.status)
                if status == SettlementStatus.BLOCKED:
                    raise SettlementBlockedError(str(escrow_id), purpose)
                # A failed claim that moved nothing may take the new legs instead.
                replace_legs = False
                if require_same_legs and claim_to_result(existing).legs != tuple(legs):
                    if status != SettlementStatus.FAILED or any(existing.references or []):
                        raise InvalidStateError(
                            f"settlement {status.value}",
                            "settle",
                            f"{purpose} already holds a different set of legs",
                        )
                    replace_legs = True
                if status == SettlementStatus.COMPLETED or (
                    status == SettlementStatus.IN_FLIGHT and not self._lease_lapsed(existing)
                ):
                    return claim_to_result(existing, reused=True), None

                fence = existing.attempts + 1
                values = {
                    "status": SettlementStatus.IN_FLIGHT.value,
                    "attempts": fence,
                    "claimed_at": self._clock(),
                }
                if replace_legs:
                    values["legs"] = [leg.to_dict() for leg in legs]
                    values["references"] = [None] * len(legs)
                taken = await repo.transition(
                    existing.id,
                    [status.value],
                    values,
                    expected_attempts=existing.attempts,
                )
                if taken:
                    logger.info(
                        "settlement.resumed",
                        escrow_id=str(escrow_id),
                        purpose=purpose,
                        attempt=fence,
                        previous_status=status.value,
                        replaced_legs=replace_legs,
                    )
                    if replace_legs:
                        result = SettlementResult(
                            claim_id=existing.id,
                            escrow_id=escrow_id,
                            purpose=purpose,
                            status=SettlementStatus.IN_FLIGHT.value,
                            legs=tuple(legs),
                            references=(None,) * len(legs),
                        )
                        return result, fence
                    result = claim_to_result(existing)
                    return _with_status(result, SettlementStatus.IN_FLIGHT), fence

        raise SettlementFailureError(
            str(escrow_id), purpose, "could not acquire the settlement claim"
        )

    async def _execute(
        self,
        claim: SettlementResult,
        fence: int,
        retry_after_first_leg: bool,
        actor: str,
    ) -> SettlementResult:
        references = list(claim.references)

        for index, leg in enumerate(claim.legs):
            if references[index] is not None:
                continue

            attempts = 1
            if retry_after_first_leg and any(ref is not None for ref in references):
                attempts = self._settings.swap_leg_retry_attempts

            try:
                reference = await self._transfer(leg, attempts)
            except BaseException as exc:
                failure = await self._record_failure(claim, fence, references, exc, actor)
                if isinstance(exc, Exception):
                    raise failure from exc
                raise

            references[index] = reference
            if not await self._store_references(claim.claim_id, fence, references):
                raise self._lease_lost(claim)
            logger.info(
                "settlement.leg_settled",
                escrow_id=str(claim.escrow_id),
                purpose=claim.purpose,
                label=leg.label,
                amount=str(leg.amount),
                reference=reference,
            )

        async with self._session_factory() as session, session.begin():
            completed = await SettlementClaimRepository(session).transition(
                claim.claim_id,
                [SettlementStatus.IN_FLIGHT.value],
                {
                    "status": SettlementStatus.COMPLETED.value,
                    "references": references,
                    "last_error": None,
                    "completed_at": self._clock(),
                },
                expected_attempts=fence,
            )
        if not completed:
            raise self._lease_lost(claim)
        logger.info(
            "settlement.completed",
            escrow_id=str(claim.escrow_id),
            purpose=claim.purpose,
            references=references,
        )
        return SettlementResult(
            claim_id=claim.claim_id,
            escrow_id=claim.escrow_id,
            purpose=claim.purpose,
            status=SettlementStatus.COMPLETED.value,
            legs=claim.legs,
            references=tuple(references),
        )

    async def _transfer(self, leg: SettlementLeg, attempts: int) -> str:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=self._settings.swap_leg_retry_wait_seconds, max=10),
            reraise=True,
        )
        return await retrying(
            self._ledger.transfer, leg.source, leg.destination, leg.amount, leg.token
        )

    async def _store_references(
        self, claim_id: uuid.UUID, fence: int, references: list[str | None]
    ) -> bool:
        async with self._session_factory() as session, session.begin():
            return await SettlementClaimRepository(session).transition(
                claim_id,
                [SettlementStatus.IN_FLIGHT.value],
                {"references": list(references), "claimed_at": self._clock()},
                expected_attempts=fence,
            )

    @staticmethod
    def _lease_lost(claim: SettlementResult) -> SettlementFailureError:
        logger.error(
            "settlement.lease_lost", escrow_id=str(claim.escrow_id), purpose=claim.purpose
        )
        return SettlementFailureError(
            str(claim.escrow_id), claim.purpose, "the claim was taken over by another caller"
        )

    async def _record_failure(
        self,
        claim: SettlementResult,
        fence: int,
        references: list[str | None],
        exc: BaseException,
        actor: str,
    ) -> SettlementFailureError:
        settled = sum(1 for ref in references if ref is not None)
        status = SettlementStatus.PARTIAL if settled else SettlementStatus.FAILED
        error = str(exc) or type(exc).__name__

        async with self._session_factory() as session, session.begin():
            await SettlementClaimRepository(session).transition(
                claim.claim_id,
                [SettlementStatus.IN_FLIGHT.value],
                {"status": status.value, "references": references, "last_error": error},
                expected_attempts=fence,
            )
            await ActionRepository(session).record(
                escrow_id=claim.escrow_id,
                action_type=ActionType.SETTLEMENT_FAILED,
                actor=actor,
                notes=error,
                metadata={
                    "purpose": claim.purpose,
                    "claim_status": status.value,
                    "settled_legs": settled,
                    "references": [ref for ref in references if ref is not None],
                },
            )

        logger.warning(
            "settlement.leg_failed",
            escrow_id=str(claim.escrow_id),
            purpose=claim.purpose,
            claim_status=status.value,
            settled_legs=settled,
            error=error,
        )
        return SettlementFailureError(
            str(claim.escrow_id), claim.purpose, error, settled_legs=settled
        )

    # ------------------------------------------------------------------
    # Blocking
    # ------------------------------------------------------------------

    async def block(self, escrow_id: uuid.UUID, purpose: str) -> bool:
        """Make `purpose` unsettleable.

        Returns True if this call created the block, False if it already existed.

        Raises:
            InvalidStateError: The purpose is already settling or settled.
        """
        for _ in range(_MAX_CLAIM_ROUNDS):
            row = SettlementClaimRow(
                escrow_id=escrow_id,
                purpose=purpose,
                status=SettlementStatus.BLOCKED.value,
                legs=[],
                references=[],
                attempts=0,
            )
            try:
                async with self._session_factory() as session, session.begin():
                    await SettlementClaimRepository(session).insert(row)
            except IntegrityError:
                pass
            else:
                logger.info("settlement.blocked", escrow_id=str(escrow_id), purpose=purpose)
                return True

            async with self._session_factory() as session, session.begin():
                repo = SettlementClaimRepository(session)
                existing = await repo.get(escrow_id, purpose)
                if existing is None:
                    continue
                if existing.status == SettlementStatus.BLOCKED.value:
                    return False
                if existing.status == SettlementStatus.FAILED.value and not any(
                    existing.references or []
                ):
                    if await repo.transition(
                        existing.id,
                        [SettlementStatus.FAILED.value],
                        {"status": SettlementStatus.BLOCKED.value},
                    ):
                        logger.info(
                            "settlement.blocked",
                            escrow_id=str(escrow_id),
                            purpose=purpose,
                            previous_status="failed",
                        )
                        return True
                    continue
                raise InvalidStateError(
                    current_state=f"settlement {existing.status}",
                    attempted="block",
                    reason=f"{purpose} is already {existing.status}",
                )

        raise InvalidStateError(
            current_state="settlement contended", attempted="block", reason=purpose
        )

    async def release_block(self, escrow_id: uuid.UUID, purpose: str) -> None:
        """Remove a block taken by a command that did not go through."""
        async with self._session_factory() as session, session.begin():
            await session.execute(
                delete(SettlementClaimRow).where(
                    SettlementClaimRow.escrow_id == escrow_id,
                    SettlementClaimRow.purpose == purpose,
                    SettlementClaimRow.status == SettlementStatus.BLOCKED.value,
                )
            )
        logger.info("settlement.block_released", escrow_id=str(escrow_id), purpose=purpose)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, escrow_id: uuid.UUID, purpose: str) -> SettlementResult | None:
        async with self._session_factory() as session:
            row = await SettlementClaimRepository(session).get(escrow_id, purpose)
            return claim_to_result(row) if row is not None else None

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[SettlementResult]:
        async with self._session_factory() as session:
            rows = await SettlementClaimRepository(session).list_for_escrow(escrow_id)
            return [claim_to_result(r) for r in rows]


def _with_status(result: SettlementResult, status: SettlementStatus) -> SettlementResult:
    return SettlementResult(
        claim_id=result.claim_id,
        escrow_id=result.escrow_id,
        purpose=result.purpose,
        status=status.value,
        legs=result.legs,
        references=result.references,
        reused=result.reused,
    )
