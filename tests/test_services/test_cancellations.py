"""Tests for mutual cancellation and for the buyer cancelling before funding."""

from __future__ import annotations

import uuid
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import (
    ActionType,
    CancellationStatus,
    EscrowStatus,
    NotificationType,
)
from escrow_engine.domain.exceptions import (
    CancellationNotFoundError,
    EscrowValidationError,
    FrozenByDisputeError,
    InvalidStateError,
    InvalidTransitionError,
    SettlementFailureError,
    UnauthorizedPartyError,
)

BUYER = "0xbuyer"
SELLER = "0xseller"
TREASURY = "0xtreasury"
ADMIN = "0xadmin"

REASON = "Project was cancelled on our side"
DESCRIPTION = "Delivery is late and the brief keeps being ignored."


class TestRequestCancellation:
    @pytest.mark.asyncio
    async def test_request_notifies_the_counterparty(
        self, service, active_mutual, dispatcher
    ) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)

        assert request.status == CancellationStatus.PENDING.value
        assert request.requester_role == "buyer"
        assert dispatcher.types_for(SELLER)[-1] == NotificationType.CANCELLATION_REQUESTED.value
        details = await service.get_escrow_details(active_mutual.id)
        assert details.pending_cancellation.id == request.id

    @pytest.mark.asyncio
    async def test_reason_is_required(self, service, active_mutual) -> None:
        with pytest.raises(EscrowValidationError):
            await service.request_cancellation(active_mutual.id, BUYER, "nope")

    @pytest.mark.asyncio
    async def test_one_pending_request_per_escrow(self, service, active_mutual) -> None:
        await service.request_cancellation(active_mutual.id, BUYER, REASON)

        with pytest.raises(InvalidStateError):
            await service.request_cancellation(active_mutual.id, SELLER, REASON)

    @pytest.mark.asyncio
    async def test_disputed_escrow_cannot_be_cancelled(self, service, active_mutual) -> None:
        await service.raise_dispute(active_mutual.id, BUYER, "late", DESCRIPTION)

        with pytest.raises(FrozenByDisputeError):
            await service.request_cancellation(active_mutual.id, SELLER, REASON)

    @pytest.mark.asyncio
    async def test_outsiders_cannot_request(self, service, active_mutual) -> None:
        with pytest.raises(UnauthorizedPartyError):
            await service.request_cancellation(active_mutual.id, "0xstranger", REASON)


class TestApproveCancellation:
    @pytest.mark.asyncio
    async def test_approval_refunds_deposits_minus_cancellation_fee(
        self, service, active_mutual, ledger, dispatcher
    ) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)

        result = await service.approve_cancellation(request.id, SELLER)

        assert result.escrow.status == EscrowStatus.CANCELLED
        assert result.extra == {"request_id": str(request.id)}
        assert ledger.total_to(BUYER) == Decimal("99")
        assert ledger.total_to(SELLER) == Decimal("9.9")
        assert ledger.total_to(TREASURY) == Decimal("1.1")
        assert dispatcher.types_for(BUYER)[-1] == NotificationType.REFUND_PROCESSED.value
        details = await service.get_escrow_details(active_mutual.id)
        assert details.pending_cancellation is None

    @pytest.mark.asyncio
    async def test_unfunded_escrow_cancels_without_transfers(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.swap())
        request = await service.request_cancellation(escrow.id, SELLER, REASON)

        result = await service.approve_cancellation(request.id, BUYER)

        assert result.escrow.status == EscrowStatus.CANCELLED
        assert result.settlements == ()
        assert ledger.transfers == []

    @pytest.mark.asyncio
    async def test_milestone_cancellation_refunds_the_unsettled_remainder(
        self, service, active_milestone, ledger
    ) -> None:
        first = active_milestone.milestones[0]
        await service.submit_milestone_work(active_milestone.id, first.id, SELLER)
        await service.approve_milestone(active_milestone.id, first.id, BUYER)
        request = await service.request_cancellation(active_milestone.id, SELLER, REASON)

        await service.approve_cancellation(request.id, BUYER)

        assert ledger.total_to(BUYER) == Decimal("693")

    @pytest.mark.asyncio
    async def test_requester_cannot_approve(self, service, active_mutual) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)

        with pytest.raises(InvalidStateError):
            await service.approve_cancellation(request.id, BUYER)

    @pytest.mark.asyncio
    async def test_approving_twice_refunds_once(self, service, active_mutual, ledger) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)
        await service.approve_cancellation(request.id, SELLER)
        transfers = len(ledger.transfers)

        again = await service.approve_cancellation(request.id, SELLER)

        assert again.escrow.status == EscrowStatus.CANCELLED
        assert len(ledger.transfers) == transfers

    @pytest.mark.asyncio
    async def test_dispute_raised_first_wins(self, service, active_mutual, ledger) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)
        await service.raise_dispute(active_mutual.id, SELLER, "quality", DESCRIPTION)

        with pytest.raises(FrozenByDisputeError):
            await service.approve_cancellation(request.id, SELLER)

        assert ledger.transfers == []
        assert (await service.get_escrow(active_mutual.id)).status == EscrowStatus.DISPUTED

    @pytest.mark.asyncio
    async def test_cancelled_escrow_takes_no_further_commands(
        self, service, active_mutual
    ) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)
        await service.approve_cancellation(request.id, SELLER)

        with pytest.raises(InvalidTransitionError):
            await service.confirm_completion(active_mutual.id, BUYER)

    @pytest.mark.asyncio
    async def test_unknown_request(self, service) -> None:
        with pytest.raises(CancellationNotFoundError):
            await service.approve_cancellation(uuid.uuid4(), BUYER)


class TestRejectCancellation:
    @pytest.mark.asyncio
    async def test_rejection_closes_the_request(self, service, active_mutual) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)

        rejected = await service.reject_cancellation(request.id, SELLER)

        assert rejected.status == CancellationStatus.REJECTED.value
        with pytest.raises(InvalidStateError):
            await service.approve_cancellation(request.id, SELLER)
        assert (await service.get_escrow(active_mutual.id)).status == EscrowStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_new_request_after_rejection(self, service, active_mutual) -> None:
        request = await service.request_cancellation(active_mutual.id, BUYER, REASON)
        await service.reject_cancellation(request.id, BUYER)

        again = await service.request_cancellation(active_mutual.id, SELLER, REASON)

        assert again.id != request.id


class TestCancelUnfunded:
    @pytest.mark.asyncio
    async def test_buyer_cancels_before_any_deposit(
        self, service, drafts, ledger, dispatcher
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        result = await service.cancel_unfunded(escrow.id, BUYER, "Found another designer")

        assert result.escrow.status == EscrowStatus.CANCELLED
        assert result.settlements == ()
        assert ledger.transfers == []
        assert dispatcher.types_for(SELLER)[-1] == NotificationType.ESCROW_CANCELLED.value
        details = await service.get_escrow_details(escrow.id)
        cancelled = details.actions[-1]
        assert cancelled.action_type == ActionType.CANCELLED.value
        assert cancelled.actor_wallet == BUYER
        assert cancelled.metadata_json["unfunded"] is True

    @pytest.mark.asyncio
    async def test_partial_deposit_is_refunded_without_a_fee(
        self, service, drafts, ledger, dispatcher
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")

        result = await service.cancel_unfunded(escrow.id, BUYER)

        assert result.escrow.status == EscrowStatus.CANCELLED
        assert ledger.total_to(BUYER) == Decimal("100")
        assert ledger.total_to(TREASURY) == Decimal("0")
        assert dispatcher.types_for(BUYER)[-1] == NotificationType.REFUND_PROCESSED.value

    @pytest.mark.asyncio
    async def test_seller_deposit_is_returned_to_the_seller(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.swap())
        await service.record_deposit(escrow.id, SELLER, Decimal("0.05"), "tx-seller")

        await service.cancel_unfunded(escrow.id, BUYER)

        assert ledger.total_to(SELLER, "ETH") == Decimal("0.05")
        assert ledger.total_to(BUYER) == Decimal("0")

    @pytest.mark.asyncio
    async def test_funded_escrow_needs_mutual_cancellation(
        self, service, active_mutual, ledger
    ) -> None:
        transfers = len(ledger.transfers)

        with pytest.raises(InvalidTransitionError):
            await service.cancel_unfunded(active_mutual.id, BUYER)

        assert len(ledger.transfers) == transfers
        assert (await service.get_escrow(active_mutual.id)).status == EscrowStatus.ACTIVE

    @pytest.mark.asyncio
    @pytest.mark.parametrize("actor", [SELLER, "0xstranger"])
    async def test_only_the_buyer_may_cancel(self, service, drafts, actor) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        with pytest.raises(UnauthorizedPartyError):
            await service.cancel_unfunded(escrow.id, actor)

        assert (await service.get_escrow(escrow.id)).status == EscrowStatus.CREATED

    @pytest.mark.asyncio
    async def test_pending_request_is_closed(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        request = await service.request_cancellation(escrow.id, SELLER, REASON)

        await service.cancel_unfunded(escrow.id, BUYER)

        details = await service.get_escrow_details(escrow.id)
        assert details.pending_cancellation is None
        with pytest.raises(InvalidStateError):
            await service.approve_cancellation(request.id, BUYER)

    @pytest.mark.asyncio
    async def test_cancelling_twice_is_rejected(self, service, drafts, ledger) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")
        await service.cancel_unfunded(escrow.id, BUYER)

        with pytest.raises(InvalidTransitionError):
            await service.cancel_unfunded(escrow.id, BUYER)

        assert ledger.total_to(BUYER) == Decimal("100")

    @pytest.mark.asyncio
    async def test_failed_refund_holds_the_escrow_until_retried(
        self, service, drafts, ledger
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())
        await service.record_deposit(escrow.id, BUYER, Decimal("100"), "tx-buyer")
        ledger.fail_next(destination=BUYER)

        with pytest.raises(SettlementFailureError):
            await service.cancel_unfunded(escrow.id, BUYER)
        with pytest.raises(InvalidStateError):
            await service.extend_expiry(escrow.id, ADMIN, 24)

        result = await service.cancel_unfunded(escrow.id, BUYER)

        assert result.escrow.status == EscrowStatus.CANCELLED
        assert ledger.total_to(BUYER) == Decimal("100")
        assert ledger.total_to(TREASURY) == Decimal("0")
