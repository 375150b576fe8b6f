"""Racing commands against each other: whatever interleaving wins, funds move once."""

from __future__ import annotations

import asyncio
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import EscrowStatus, MilestoneStatus
from escrow_engine.domain.exceptions import EscrowError
from escrow_engine.domain.models import SettlementLeg

BUYER = "0xbuyer"
SELLER = "0xseller"
TREASURY = "0xtreasury"

REASON = "Project was cancelled on our side"
DESCRIPTION = "Delivery is late and the brief keeps being ignored."


def _to(ledger, wallet: str) -> list:
    return [t for t in ledger.transfers if t.destination == wallet]


def _failures(outcomes: list) -> list[BaseException]:
    failures = [o for o in outcomes if isinstance(o, BaseException)]
    for failure in failures:
        assert isinstance(failure, EscrowError), repr(failure)
    return failures


class TestConcurrentSettlement:
    @pytest.mark.asyncio
    async def test_same_purpose_settles_once(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        legs = [
            SettlementLeg("escrow", SELLER, Decimal("100"), "USDC", "payment"),
            SettlementLeg("escrow", SELLER, Decimal("10"), "USDC", "deposit", fee_exempt=True),
        ]

        outcomes = await asyncio.gather(
            *(service.settlement.settle(escrow.id, "completion", legs) for _ in range(5)),
            return_exceptions=True,
        )

        _failures(outcomes)
        results = [o for o in outcomes if not isinstance(o, BaseException)]
        assert len({r.claim_id for r in results}) == 1
        assert any(r.completed for r in results)
        assert ledger.total_to(SELLER) == Decimal("107")
        assert ledger.total_to(TREASURY) == Decimal("3")
        assert len(ledger.transfers) == 3


class TestConcurrentConfirmations:
    @pytest.mark.asyncio
    async def test_both_parties_confirming_at_once_release_once(
        self, service, active_mutual, ledger
    ) -> None:
        outcomes = await asyncio.gather(
            service.confirm_completion(active_mutual.id, BUYER),
            service.confirm_completion(active_mutual.id, SELLER),
            return_exceptions=True,
        )

        _failures(outcomes)
        escrow = await service.get_escrow(active_mutual.id)
        assert escrow.buyer_confirmed and escrow.seller_confirmed
        assert escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(SELLER) == Decimal("107")
        assert len(_to(ledger, TREASURY)) == 1

    @pytest.mark.asyncio
    async def test_dispute_and_final_confirmation_have_one_winner(
        self, service, active_mutual, ledger
    ) -> None:
        await service.confirm_completion(active_mutual.id, BUYER)

        outcomes = await asyncio.gather(
            service.confirm_completion(active_mutual.id, SELLER),
            service.raise_dispute(active_mutual.id, BUYER, "quality", DESCRIPTION),
            return_exceptions=True,
        )

        assert len(_failures(outcomes)) == 1
        escrow = await service.get_escrow(active_mutual.id)
        if escrow.status == EscrowStatus.COMPLETED:
            assert ledger.total_to(SELLER) == Decimal("107")
        else:
            assert escrow.status == EscrowStatus.DISPUTED
            assert ledger.transfers == []


class TestConcurrentDeposits:
    @pytest.mark.asyncio
    async def test_final_swap_deposits_execute_the_swap_once(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.swap())

        outcomes = await asyncio.gather(
            service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer"),
            service.record_deposit(escrow.id, SELLER, Decimal("0.05"), "tx-seller"),
            return_exceptions=True,
        )

        _failures(outcomes)
        if (await service.get_escrow(escrow.id)).status != EscrowStatus.COMPLETED:
            await service.execute_swap(escrow.id)
        assert (await service.get_escrow(escrow.id)).status == EscrowStatus.COMPLETED
        assert len(_to(ledger, SELLER)) == 1
        assert len(_to(ledger, BUYER)) == 1
        assert ledger.total_to(BUYER, "ETH") == Decimal("0.0485")

    @pytest.mark.asyncio
    async def test_redelivered_transaction_is_counted_once(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        outcomes = await asyncio.gather(
            *(
                service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")
                for _ in range(3)
            ),
            return_exceptions=True,
        )

        _failures(outcomes)
        details = await service.get_escrow_details(escrow.id)
        assert len(details.deposits) == 1
        assert details.escrow.buyer_deposited
        assert details.escrow.status == EscrowStatus.BUYER_DEPOSITED


class TestConcurrentMilestones:
    @pytest.mark.asyncio
    async def test_repeated_approval_pays_the_milestone_once(
        self, service, active_milestone, ledger
    ) -> None:
        first = active_milestone.milestones[0]
        await service.submit_milestone_work(active_milestone.id, first.id, SELLER)

        outcomes = await asyncio.gather(
            *(service.approve_milestone(active_milestone.id, first.id, BUYER) for _ in range(3)),
            return_exceptions=True,
        )

        _failures(outcomes)
        escrow = await service.get_escrow(active_milestone.id)
        assert escrow.milestone(first.id).status == MilestoneStatus.APPROVED
        assert ledger.total_to(SELLER) == Decimal("291")
        assert len(_to(ledger, SELLER)) == 1

    @pytest.mark.asyncio
    async def test_different_milestones_are_paid_independently(
        self, service, active_milestone, ledger
    ) -> None:
        for milestone in active_milestone.milestones:
            await service.submit_milestone_work(active_milestone.id, milestone.id, SELLER)

        outcomes = await asyncio.gather(
            *(
                service.approve_milestone(active_milestone.id, milestone.id, BUYER)
                for milestone in active_milestone.milestones
            ),
            return_exceptions=True,
        )

        assert _failures(outcomes) == []
        escrow = await service.get_escrow(active_milestone.id)
        assert all(m.status == MilestoneStatus.APPROVED for m in escrow.milestones)
        assert escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(SELLER) == Decimal("970")
        assert ledger.total_to(TREASURY) == Decimal("30")

    @pytest.mark.asyncio
    async def test_dispute_and_release_have_one_winner(
        self, service, active_milestone, ledger
    ) -> None:
        first = active_milestone.milestones[0]
        await service.submit_milestone_work(active_milestone.id, first.id, SELLER)

        outcomes = await asyncio.gather(
            service.approve_milestone(active_milestone.id, first.id, BUYER),
            service.raise_dispute(
                active_milestone.id, BUYER, "quality", DESCRIPTION, milestone_id=first.id
            ),
            return_exceptions=True,
        )

        assert len(_failures(outcomes)) == 1
        milestone = (await service.get_escrow(active_milestone.id)).milestone(first.id)
        if milestone.status == MilestoneStatus.APPROVED:
            assert ledger.total_to(SELLER) == Decimal("291")
        else:
            assert milestone.status == MilestoneStatus.DISPUTED
            assert ledger.transfers == []


class TestConcurrentCancellation:
    @pytest.mark.asyncio
    async def test_double_approval_refunds_once(self, service, active_mutual, ledger) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)

        outcomes = await asyncio.gather(
            service.approve_cancellation(request.id, SELLER),
            service.approve_cancellation(request.id, SELLER),
            return_exceptions=True,
        )

        _failures(outcomes)
        if (await service.get_escrow(active_mutual.id)).status != EscrowStatus.CANCELLED:
            await service.approve_cancellation(request.id, SELLER)
        assert (await service.get_escrow(active_mutual.id)).status == EscrowStatus.CANCELLED
        assert len(_to(ledger, BUYER)) == 1
        assert len(_to(ledger, SELLER)) == 1

    @pytest.mark.asyncio
    async def test_unfunded_and_mutual_cancellation_refund_once(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")
        request = await service.request_cancellation(escrow.id, SELLER, REASON)

        outcomes = await asyncio.gather(
            service.cancel_unfunded(escrow.id, BUYER),
            service.approve_cancellation(request.id, BUYER),
            return_exceptions=True,
        )

        assert len(_failures(outcomes)) < 2
        assert (await service.get_escrow(escrow.id)).status == EscrowStatus.CANCELLED
        assert len(_to(ledger, BUYER)) == 1
