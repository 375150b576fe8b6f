"""End-to-end walkthroughs of each escrow type through the service facade."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    ResolutionAction,
)
from escrow_engine.services.registry import MilestoneDraft

BUYER = "0xbuyer"
SELLER = "0xseller"
ADMIN = "0xadmin"
TREASURY = "0xtreasury"

DESCRIPTION = "The second deliverable is missing half of the pages."
NOTES = "Partial delivery confirmed; splitting sixty/forty."


class TestScenarios:
    @pytest.mark.asyncio
    async def test_mutual_confirmation_happy_path(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(
            drafts.mutual(buyer_amount=Decimal("10"), seller_amount=Decimal("2"))
        )
        await service.record_deposit(escrow.id, BUYER, Decimal("10"), "tx-a1")
        funded = await service.record_deposit(escrow.id, SELLER, Decimal("2"), "tx-a2")
        assert funded.escrow.status == EscrowStatus.ACTIVE

        half = await service.confirm_completion(escrow.id, BUYER)
        assert half.escrow.status == EscrowStatus.ACTIVE

        done = await service.confirm_completion(escrow.id, SELLER)

        assert done.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(SELLER) == Decimal("11.7")
        assert ledger.total_to(TREASURY) == Decimal("0.3")

    @pytest.mark.asyncio
    async def test_milestone_settlement_survives_a_later_dispute(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(
            drafts.milestone(
                buyer_amount=Decimal("100"),
                milestones=(
                    MilestoneDraft("Draft", Decimal("40")),
                    MilestoneDraft("Final", Decimal("60")),
                ),
            )
        )
        first, second = escrow.milestones
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-b1")

        submitted = await service.submit_milestone_work(escrow.id, first.id, SELLER)
        assert submitted.escrow.milestone(first.id).status == MilestoneStatus.WORK_SUBMITTED
        approved = await service.approve_milestone(escrow.id, first.id, BUYER)
        assert approved.escrow.status == EscrowStatus.ACTIVE
        assert ledger.total_to(SELLER) == Decimal("38.8")

        await service.submit_milestone_work(escrow.id, second.id, SELLER)
        disputed = await service.raise_dispute(
            escrow.id, BUYER, "quality", DESCRIPTION, milestone_id=second.id
        )

        assert disputed.escrow.milestone(second.id).status == MilestoneStatus.DISPUTED
        settled = disputed.escrow.milestone(first.id)
        assert settled.status == MilestoneStatus.APPROVED
        assert settled.settlement_reference is not None
        assert ledger.total_to(SELLER) == Decimal("38.8")

    @pytest.mark.asyncio
    async def test_one_sided_swap_is_refunded_at_expiry(
        self, service, drafts, ledger, clock
    ) -> None:
        escrow = await service.create_escrow(
            drafts.swap(buyer_amount=Decimal("5"), seller_amount=Decimal("200"))
        )
        await service.record_deposit(escrow.id, BUYER, Decimal("5"), "tx-c1")
        clock.advance(hours=24, minutes=1)

        report = await service.sweep_expired()

        assert report.cancelled == [str(escrow.id)]
        assert (await service.get_escrow(escrow.id)).status == EscrowStatus.CANCELLED
        assert ledger.total_to(BUYER, "USDC") == Decimal("5")
        assert ledger.total_to(SELLER) == Decimal("0")

    @pytest.mark.asyncio
    async def test_dispute_resolved_by_partial_split(
        self, service, drafts, fund, ledger
    ) -> None:
        escrow = await service.create_escrow(
            drafts.mutual(buyer_amount=Decimal("10"), seller_amount=Decimal("2"))
        )
        await fund(escrow)
        raised = await service.raise_dispute(escrow.id, BUYER, "quality", DESCRIPTION)
        assert raised.escrow.status == EscrowStatus.DISPUTED
        dispute_id = uuid.UUID(raised.extra["dispute_id"])

        result = await service.resolve_dispute(
            dispute_id,
            ADMIN,
            ResolutionAction.PARTIAL_SPLIT,
            NOTES,
            amount_to_buyer=Decimal("6"),
            amount_to_seller=Decimal("4"),
        )

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(BUYER) == Decimal("5.82")
        assert ledger.total_to(SELLER) == Decimal("5.88")
        details = await service.get_dispute_details(dispute_id)
        assert details.dispute.status == DisputeStatus.RESOLVED.value
        [action] = details.admin_actions
        assert action.buyer_settlement_reference is not None
        assert action.seller_settlement_reference is not None
