"""Tests for recordDeposit: funding transitions, duplicates, late deposits."""

from __future__ import annotations

from decimal import Decimal

import pytest

from escrow_engine.domain.enums import (
    ActionType,
    EscrowStatus,
    NotificationType,
    SettlementStatus,
)
from escrow_engine.domain.exceptions import (
    DepositAmountMismatchError,
    EscrowValidationError,
    InvalidTransitionError,
    UnauthorizedPartyError,
)
from escrow_engine.services.settlement_service import FUNDING

BUYER = "0xbuyer"
SELLER = "0xseller"
TREASURY = "0xtreasury"


class TestMutualConfirmationFunding:
    @pytest.mark.asyncio
    async def test_first_deposit_moves_to_buyer_deposited(
        self, service, drafts, dispatcher
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        result = await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        assert result.escrow.status == EscrowStatus.BUYER_DEPOSITED
        assert result.escrow.buyer_deposited and not result.escrow.seller_deposited
        assert result.extra == {"late": False}
        assert NotificationType.DEPOSIT_RECEIVED.value in dispatcher.types_for(SELLER)

    @pytest.mark.asyncio
    async def test_seller_may_deposit_first(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        result = await service.record_deposit(escrow.id, SELLER, Decimal("10"), "tx-1")

        assert result.escrow.status == EscrowStatus.SELLER_DEPOSITED

    @pytest.mark.asyncio
    async def test_second_deposit_activates(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        result = await service.record_deposit(escrow.id, SELLER, Decimal("10"), "tx-2")

        assert result.escrow.status == EscrowStatus.ACTIVE
        assert result.escrow.funded_at is not None
        details = await service.get_escrow_details(escrow.id)
        assert [a.action_type for a in details.actions] == [
            ActionType.CREATED.value,
            ActionType.DEPOSITED.value,
            ActionType.DEPOSITED.value,
            ActionType.FUNDED.value,
        ]
        funding = await service.settlement.get(escrow.id, FUNDING)
        assert funding.status == SettlementStatus.COMPLETED.value
        assert funding.legs == ()

    @pytest.mark.asyncio
    async def test_amount_within_tolerance_is_accepted(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        result = await service.record_deposit(escrow.id, BUYER, Decimal("100.0000005"), "tx-1")

        assert result.escrow.buyer_deposited


class TestDuplicates:
    @pytest.mark.asyncio
    async def test_same_tx_reference_is_a_noop(self, service, drafts, dispatcher) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")
        notified = len(dispatcher.sent)

        result = await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        assert result.extra == {"duplicate": True}
        assert result.escrow.version == 2
        assert len(dispatcher.sent) == notified
        details = await service.get_escrow_details(escrow.id)
        assert len(details.deposits) == 1

    @pytest.mark.asyncio
    async def test_second_deposit_for_a_funded_role_is_a_noop(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        result = await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-other")

        assert result.extra == {"duplicate": True}
        assert result.escrow.status == EscrowStatus.BUYER_DEPOSITED

    @pytest.mark.asyncio
    async def test_tx_reference_of_another_escrow_is_rejected(self, service, drafts) -> None:
        first = await service.create_escrow(drafts.mutual())
        second = await service.create_escrow(drafts.mutual())
        await service.record_deposit(first.id, BUYER, Decimal("100"), "tx-1")

        with pytest.raises(EscrowValidationError):
            await service.record_deposit(second.id, BUYER, Decimal("100"), "tx-1")


class TestRejectedDeposits:
    @pytest.mark.asyncio
    async def test_amount_mismatch(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        with pytest.raises(DepositAmountMismatchError) as exc_info:
            await service.record_deposit(escrow.id, SELLER, Decimal("9"), "tx-1")
        assert exc_info.value.role == "seller"

        assert (await service.get_escrow(escrow.id)).status == EscrowStatus.CREATED

    @pytest.mark.asyncio
    async def test_token_mismatch(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.swap())

        with pytest.raises(DepositAmountMismatchError):
            await service.record_deposit(escrow.id, SELLER, Decimal("0.05"), "tx-1", token="USDC")

    @pytest.mark.asyncio
    async def test_stranger_cannot_deposit(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        with pytest.raises(UnauthorizedPartyError):
            await service.record_deposit(escrow.id, "0xstranger", Decimal("100"), "tx-1")

    @pytest.mark.asyncio
    async def test_milestone_escrow_takes_no_seller_deposit(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.milestone())

        with pytest.raises(InvalidTransitionError):
            await service.record_deposit(escrow.id, SELLER, Decimal("1000"), "tx-1")

    @pytest.mark.asyncio
    async def test_terminal_escrow_rejects_new_deposits(self, service, drafts, clock) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        clock.advance(hours=73)
        await service.sweep_expired()

        with pytest.raises(InvalidTransitionError):
            await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")


class TestMilestoneFunding:
    @pytest.mark.asyncio
    async def test_buyer_deposit_activates_directly(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.milestone())

        result = await service.record_deposit(escrow.id, BUYER, Decimal("1000"), "tx-1")

        assert result.escrow.status == EscrowStatus.ACTIVE
        details = await service.get_escrow_details(escrow.id)
        assert [a.new_status for a in details.actions[1:]] == [
            EscrowStatus.BUYER_DEPOSITED.value,
            EscrowStatus.ACTIVE.value,
        ]


class TestLateDeposits:
    @pytest.mark.asyncio
    async def test_deposit_after_expiry_is_flagged(self, service, drafts, clock) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        clock.advance(hours=73)

        result = await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        assert result.extra == {"late": True}
        assert result.escrow.status == EscrowStatus.CREATED
        assert result.escrow.buyer_deposited
        details = await service.get_escrow_details(escrow.id)
        assert details.deposits[0].is_late
        assert details.actions[-1].action_type == ActionType.LATE_DEPOSIT.value

    @pytest.mark.asyncio
    async def test_blocked_funding_turns_the_deposit_late(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")
        await service.settlement.block(escrow.id, FUNDING)

        result = await service.record_deposit(escrow.id, SELLER, Decimal("10"), "tx-2")

        assert result.extra == {"late": True}
        assert result.escrow.status == EscrowStatus.BUYER_DEPOSITED
        assert result.escrow.seller_deposited


class TestAtomicSwapFunding:
    @pytest.mark.asyncio
    async def test_second_deposit_executes_the_swap(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.swap())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-1")

        result = await service.record_deposit(escrow.id, SELLER, Decimal("0.05"), "tx-2")

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert result.escrow.swap_executed
        assert ledger.total_to(SELLER, "USDC") == Decimal("97")
        assert ledger.total_to(BUYER, "ETH") == Decimal("0.0485")
        assert ledger.total_to(TREASURY) == Decimal("3.0015")
        assert len(result.settlement_references) == 4
