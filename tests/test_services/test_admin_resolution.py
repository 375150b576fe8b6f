"""Tests for admin dispute resolution."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import (
    DisputeStatus,
    EscrowStatus,
    MilestoneStatus,
    NotificationType,
    ResolutionAction,
)
from escrow_engine.domain.exceptions import (
    InsufficientJustificationError,
    InvalidStateError,
    SettlementFailureError,
    SplitExceedsEscrowError,
    UnauthorizedPartyError,
)

BUYER = "0xbuyer"
SELLER = "0xseller"
ADMIN = "0xadmin"
TREASURY = "0xtreasury"

REASON = "quality"
DESCRIPTION = "The delivered work does not match the brief at all."
NOTES = "Both parties' evidence reviewed; deciding on the brief."


async def _dispute(service, escrow_id, milestone_id=None) -> uuid.UUID:
    result = await service.raise_dispute(
        escrow_id, BUYER, REASON, DESCRIPTION, milestone_id=milestone_id
    )
    return uuid.UUID(result.extra["dispute_id"])


class TestResolveMutualConfirmation:
    @pytest.mark.asyncio
    async def test_release_to_seller(self, service, active_mutual, ledger, dispatcher) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
        )

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(SELLER) == Decimal("107")
        assert ledger.total_to(TREASURY) == Decimal("3")
        details = await service.get_dispute_details(dispute_id)
        assert details.dispute.status == DisputeStatus.RESOLVED.value
        assert details.dispute.resolved_by == ADMIN
        [action] = details.admin_actions
        assert action.decision == ResolutionAction.RELEASE_TO_SELLER.value
        assert action.amount_to_seller == Decimal("100")
        assert action.seller_settlement_reference is not None
        assert action.buyer_settlement_reference is None
        assert NotificationType.DISPUTE_RESOLVED.value in dispatcher.types_for(BUYER)

    @pytest.mark.asyncio
    async def test_refund_to_buyer_is_fee_exempt(self, service, active_mutual, ledger) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        await service.resolve_dispute(dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES)

        assert ledger.total_to(BUYER) == Decimal("100")
        # The seller's security deposit is returned either way.
        assert ledger.total_to(SELLER) == Decimal("10")
        assert ledger.total_to(TREASURY) == Decimal("0")

    @pytest.mark.asyncio
    async def test_partial_split(self, service, active_mutual, ledger) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        result = await service.resolve_dispute(
            dispute_id,
            ADMIN,
            ResolutionAction.PARTIAL_SPLIT,
            NOTES,
            amount_to_buyer=Decimal("60"),
            amount_to_seller=Decimal("40"),
        )

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(BUYER) == Decimal("58.2")
        assert ledger.total_to(SELLER) == Decimal("48.8")
        assert ledger.total_to(TREASURY) == Decimal("3")

    @pytest.mark.asyncio
    async def test_split_cannot_exceed_the_escrow(self, service, active_mutual, ledger) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        with pytest.raises(SplitExceedsEscrowError):
            await service.resolve_dispute(
                dispute_id,
                ADMIN,
                ResolutionAction.PARTIAL_SPLIT,
                NOTES,
                amount_to_buyer=Decimal("60"),
                amount_to_seller=Decimal("41"),
            )
        assert ledger.transfers == []

    @pytest.mark.asyncio
    async def test_notes_must_justify_the_decision(self, service, active_mutual) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        with pytest.raises(InsufficientJustificationError):
            await service.resolve_dispute(
                dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, "ok"
            )

    @pytest.mark.asyncio
    async def test_only_admins_resolve(self, service, active_mutual) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        with pytest.raises(UnauthorizedPartyError):
            await service.resolve_dispute(
                dispute_id, SELLER, ResolutionAction.RELEASE_TO_SELLER, NOTES
            )

    @pytest.mark.asyncio
    async def test_other_keeps_the_dispute_under_review(
        self, service, active_mutual, ledger
    ) -> None:
        dispute_id = await _dispute(service, active_mutual.id)

        result = await service.resolve_dispute(dispute_id, ADMIN, ResolutionAction.OTHER, NOTES)

        assert result.escrow.status == EscrowStatus.DISPUTED
        assert ledger.transfers == []
        details = await service.get_dispute_details(dispute_id)
        assert details.dispute.status == DisputeStatus.UNDER_REVIEW.value
        assert len(details.admin_actions) == 1

        await service.resolve_dispute(dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES)

        details = await service.get_dispute_details(dispute_id)
        assert details.dispute.status == DisputeStatus.RESOLVED.value
        assert len(details.admin_actions) == 2

    @pytest.mark.asyncio
    async def test_resolving_twice_moves_funds_once(self, service, active_mutual, ledger) -> None:
        dispute_id = await _dispute(service, active_mutual.id)
        await service.resolve_dispute(dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES)
        transfers = len(ledger.transfers)

        again = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
        )

        assert again.escrow.status == EscrowStatus.COMPLETED
        assert len(ledger.transfers) == transfers
        assert (await service.list_open_disputes()) == []


class TestResolutionRetries:
    @pytest.mark.asyncio
    async def test_retry_after_a_partial_release_must_repeat_the_decision(
        self, service, active_mutual, ledger
    ) -> None:
        dispute_id = await _dispute(service, active_mutual.id)
        ledger.fail_next(destination=TREASURY)
        with pytest.raises(SettlementFailureError):
            await service.resolve_dispute(
                dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
            )
        transfers = len(ledger.transfers)

        with pytest.raises(InvalidStateError):
            await service.resolve_dispute(
                dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES
            )
        assert len(ledger.transfers) == transfers
        assert (await service.get_escrow(active_mutual.id)).status == EscrowStatus.DISPUTED

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
        )

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(SELLER) == Decimal("107")
        assert ledger.total_to(TREASURY) == Decimal("3")
        assert ledger.total_to(BUYER) == Decimal("0")
        [action] = (await service.get_dispute_details(dispute_id)).admin_actions
        assert action.decision == ResolutionAction.RELEASE_TO_SELLER.value

    @pytest.mark.asyncio
    async def test_decision_may_change_when_nothing_moved(
        self, service, active_mutual, ledger
    ) -> None:
        dispute_id = await _dispute(service, active_mutual.id)
        ledger.fail_next()
        with pytest.raises(SettlementFailureError):
            await service.resolve_dispute(
                dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
            )
        assert ledger.transfers == []

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES
        )

        assert result.escrow.status == EscrowStatus.COMPLETED
        assert ledger.total_to(BUYER) == Decimal("100")
        assert ledger.total_to(SELLER) == Decimal("10")
        [action] = (await service.get_dispute_details(dispute_id)).admin_actions
        assert action.decision == ResolutionAction.REFUND_TO_BUYER.value
        assert action.amount_to_buyer == Decimal("100")

    @pytest.mark.asyncio
    async def test_other_decision_loses_to_a_concurrent_resolution(
        self, service, active_mutual
    ) -> None:
        dispute_id = await _dispute(service, active_mutual.id)
        stale_dispute = await service.admin._load_dispute(dispute_id)
        stale_escrow = await service.get_escrow(active_mutual.id)
        await service.resolve_dispute(dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES)

        with pytest.raises(InvalidStateError):
            await service.admin._record_other(stale_escrow, stale_dispute, ADMIN, NOTES)

        details = await service.get_dispute_details(dispute_id)
        assert details.dispute.status == DisputeStatus.RESOLVED.value
        assert details.dispute.resolution_action == ResolutionAction.REFUND_TO_BUYER.value
        assert len(details.admin_actions) == 1


class TestResolveMilestones:
    @pytest.mark.asyncio
    async def test_milestone_refund_is_bounded_by_the_milestone(
        self, service, active_milestone, ledger
    ) -> None:
        first, second = active_milestone.milestones
        dispute_id = await _dispute(service, active_milestone.id, first.id)

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES
        )

        assert ledger.total_to(BUYER) == Decimal("300")
        assert result.escrow.status == EscrowStatus.ACTIVE
        assert result.escrow.milestone(first.id).status == MilestoneStatus.RESOLVED
        assert result.escrow.milestone(second.id).status == MilestoneStatus.PENDING

    @pytest.mark.asyncio
    async def test_milestone_release_counts_as_approval(self, service, active_milestone) -> None:
        first, second = active_milestone.milestones
        await service.submit_milestone_work(active_milestone.id, second.id, SELLER)
        await service.approve_milestone(active_milestone.id, second.id, BUYER)
        dispute_id = await _dispute(service, active_milestone.id, first.id)

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.RELEASE_TO_SELLER, NOTES
        )

        milestone = result.escrow.milestone(first.id)
        assert milestone.status == MilestoneStatus.APPROVED
        assert milestone.settlement_reference is not None
        assert result.escrow.status == EscrowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_milestone_split_cannot_exceed_the_milestone(
        self, service, active_milestone
    ) -> None:
        first = active_milestone.milestones[0]
        dispute_id = await _dispute(service, active_milestone.id, first.id)

        with pytest.raises(SplitExceedsEscrowError):
            await service.resolve_dispute(
                dispute_id,
                ADMIN,
                ResolutionAction.PARTIAL_SPLIT,
                NOTES,
                amount_to_buyer=Decimal("200"),
                amount_to_seller=Decimal("200"),
            )

    @pytest.mark.asyncio
    async def test_escrow_dispute_settles_the_unsettled_remainder(
        self, service, active_milestone, ledger
    ) -> None:
        first, second = active_milestone.milestones
        await service.submit_milestone_work(active_milestone.id, first.id, SELLER)
        await service.approve_milestone(active_milestone.id, first.id, BUYER)
        dispute_id = await _dispute(service, active_milestone.id)

        result = await service.resolve_dispute(
            dispute_id, ADMIN, ResolutionAction.REFUND_TO_BUYER, NOTES
        )

        assert ledger.total_to(BUYER) == Decimal("700")
        assert result.escrow.status == EscrowStatus.COMPLETED
        assert result.escrow.milestone(first.id).status == MilestoneStatus.APPROVED
        assert result.escrow.milestone(second.id).status == MilestoneStatus.RESOLVED
