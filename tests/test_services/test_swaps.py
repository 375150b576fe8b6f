"""Tests for the atomic swap executor, including partial leg failures."""

from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_engine.domain.enums import ActionType, EscrowStatus, SettlementStatus
from escrow_engine.domain.exceptions import (
    InvalidTransitionError,
    PartialSwapFailureError,
    SettlementFailureError,
)
from escrow_engine.services.settlement_service import SWAP_EXECUTION

BUYER = "0xbuyer"
SELLER = "0xseller"


async def _fully_fund(service, escrow):
    await service.record_deposit(escrow.id, BUYER, escrow.buyer_amount, "tx-buyer")
    return await service.record_deposit(escrow.id, SELLER, escrow.seller_amount, "tx-seller")


class TestExecuteSwap:
    @pytest.mark.asyncio
    async def test_later_leg_is_retried_within_budget(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.swap())
        ledger.fail_next(times=2, destination=BUYER)

        result = await _fully_fund(service, escrow)

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(BUYER, "ETH") == Decimal("0.0485")
        assert ledger.attempts == 6

    @pytest.mark.asyncio
    async def test_exhausted_retries_leave_a_partial_swap(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.swap())
        ledger.fail_next(times=3, destination=BUYER)

        with pytest.raises(PartialSwapFailureError) as exc_info:
            await _fully_fund(service, escrow)

        assert len(exc_info.value.settled_references) == 2
        current = await service.get_escrow(escrow.id)
        assert current.status == EscrowStatus.FULLY_FUNDED
        assert not current.swap_executed
        claim = await service.settlement.get(escrow.id, SWAP_EXECUTION)
        assert claim.status == SettlementStatus.PARTIAL.value
        details = await service.get_escrow_details(escrow.id)
        kinds = [a.action_type for a in details.actions]
        assert ActionType.SETTLEMENT_FAILED.value in kinds
        assert ActionType.SWAP_PARTIAL_FAILURE.value in kinds

    @pytest.mark.asyncio
    async def test_partial_swap_resumes_without_repeating_settled_legs(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.swap())
        ledger.fail_next(times=3, destination=BUYER)
        with pytest.raises(PartialSwapFailureError):
            await _fully_fund(service, escrow)

        result = await service.execute_swap(escrow.id)

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert result.escrow.swap_executed
        assert ledger.total_to(SELLER, "USDC") == Decimal("97")
        assert ledger.total_to(BUYER, "ETH") == Decimal("0.0485")
        assert len(ledger.transfers) == 4

    @pytest.mark.asyncio
    async def test_first_leg_failure_is_retryable(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.swap())
        ledger.fail_next(times=1, destination=SELLER)

        with pytest.raises(SettlementFailureError) as exc_info:
            await _fully_fund(service, escrow)
        assert exc_info.value.settled_legs == 0
        claim = await service.settlement.get(escrow.id, SWAP_EXECUTION)
        assert claim.status == SettlementStatus.FAILED.value

        result = await service.execute_swap(escrow.id)

        assert result.escrow.status == EscrowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_redelivered_deposit_redrives_a_stalled_swap(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.swap())
        ledger.fail_next(times=1, destination=SELLER)
        with pytest.raises(SettlementFailureError):
            await _fully_fund(service, escrow)

        result = await service.record_deposit(escrow.id, SELLER, Decimal("0.05"), "tx-seller")

        assert result.escrow.status == EscrowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_executed_swap_is_not_repeated(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.swap())
        done = await _fully_fund(service, escrow)

        again = await service.execute_swap(escrow.id)

        assert again.settlement_references == done.settlement_references
        assert len(ledger.transfers) == 4

    @pytest.mark.asyncio
    async def test_swap_needs_both_deposits(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.swap())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")

        with pytest.raises(InvalidTransitionError):
            await service.execute_swap(escrow.id)

    @pytest.mark.asyncio
    async def test_other_types_are_rejected(self, service, active_mutual) -> None:
        with pytest.raises(InvalidTransitionError):
            await service.execute_swap(active_mutual.id)
