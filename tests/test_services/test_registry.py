"""Tests for escrow creation, validation and loading."""

from __future__ import annotations

import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from escrow_engine.domain.enums import (
    ActionType,
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    NotificationType,
)
from escrow_engine.domain.exceptions import EscrowNotFoundError, EscrowValidationError
from escrow_engine.domain.models import (
    AtomicSwapEscrow,
    MilestoneEscrow,
    MutualConfirmationEscrow,
)
from escrow_engine.services.registry import MilestoneDraft, validate_draft

BUYER = "0xbuyer"
SELLER = "0xseller"


class TestValidateDraft:
    def test_valid_mutual_draft(self, drafts, settings) -> None:
        assert validate_draft(drafts.mutual(), settings) == []

    def test_same_wallet_for_both_parties(self, drafts, settings) -> None:
        errors = validate_draft(drafts.mutual(seller_wallet=BUYER), settings)
        assert "buyer and seller must be different wallets" in errors

    def test_collects_every_error(self, drafts, settings) -> None:
        errors = validate_draft(
            drafts.mutual(buyer_amount=Decimal("0"), seller_amount=None, token=""), settings
        )
        assert len(errors) == 3

    def test_timeout_above_maximum(self, drafts, settings) -> None:
        errors = validate_draft(drafts.swap(timeout_hours=settings.max_timeout_hours + 1), settings)
        assert any("timeout_hours" in e for e in errors)

    def test_swap_needs_second_token(self, drafts, settings) -> None:
        errors = validate_draft(drafts.swap(seller_token=None), settings)
        assert "seller_token is required for atomic swaps" in errors

    def test_milestone_percentages_must_sum_to_100(self, drafts, settings) -> None:
        draft = drafts.milestone(
            milestones=(MilestoneDraft("a", Decimal("30")), MilestoneDraft("b", Decimal("60")))
        )
        errors = validate_draft(draft, settings)
        assert any("sum to 100" in e for e in errors)

    def test_milestone_escrow_rejects_timeout(self, drafts, settings) -> None:
        errors = validate_draft(drafts.milestone(timeout_hours=24), settings)
        assert "milestone escrows have no overall expiry" in errors

    def test_milestone_orders_must_be_unique(self, drafts, settings) -> None:
        draft = drafts.milestone(
            milestones=(
                MilestoneDraft("a", Decimal("50"), order=1),
                MilestoneDraft("b", Decimal("50"), order=1),
            )
        )
        assert "milestone order values must be unique" in validate_draft(draft, settings)

    def test_milestones_rejected_on_other_types(self, drafts, settings) -> None:
        draft = drafts.mutual(milestones=(MilestoneDraft("a", Decimal("100")),))
        assert "milestones only apply to milestone escrows" in validate_draft(draft, settings)


class TestCreateEscrow:
    @pytest.mark.asyncio
    async def test_mutual_confirmation_is_created(self, service, drafts, clock) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        assert isinstance(escrow, MutualConfirmationEscrow)
        assert escrow.status == EscrowStatus.CREATED
        assert escrow.version == 1
        assert escrow.escrow_wallet.startswith("0x")
        assert not escrow.buyer_confirmed and not escrow.seller_confirmed
        expected = clock.now + timedelta(hours=72)
        assert abs(escrow.expires_at - expected) < timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_swap_uses_its_own_default_timeout(self, service, drafts, clock) -> None:
        escrow = await service.create_escrow(drafts.swap())

        assert isinstance(escrow, AtomicSwapEscrow)
        assert escrow.seller_token == "ETH"
        assert abs(escrow.expires_at - (clock.now + timedelta(hours=24))) < timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_milestone_amounts_follow_percentages(self, service, drafts) -> None:
        escrow = await service.create_escrow(drafts.milestone())

        assert isinstance(escrow, MilestoneEscrow)
        assert escrow.expires_at is None
        assert [m.order for m in escrow.milestones] == [1, 2]
        assert [m.amount for m in escrow.milestones] == [Decimal("300"), Decimal("700")]
        assert all(m.status == MilestoneStatus.PENDING for m in escrow.milestones)

    @pytest.mark.asyncio
    async def test_last_milestone_absorbs_rounding(self, service, drafts) -> None:
        third = Decimal("33.3333")
        escrow = await service.create_escrow(
            drafts.milestone(
                buyer_amount=Decimal("100"),
                milestones=(
                    MilestoneDraft("a", third),
                    MilestoneDraft("b", third),
                    MilestoneDraft("c", Decimal("100") - 2 * third),
                ),
            )
        )
        assert sum(m.amount for m in escrow.milestones) == Decimal("100")

    @pytest.mark.asyncio
    async def test_explicit_order_is_respected(self, service, drafts) -> None:
        escrow = await service.create_escrow(
            drafts.milestone(
                milestones=(
                    MilestoneDraft("second", Decimal("60"), order=2),
                    MilestoneDraft("first", Decimal("40"), order=1),
                )
            )
        )
        assert [m.description for m in escrow.milestones] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_invalid_draft_raises(self, service, drafts) -> None:
        with pytest.raises(EscrowValidationError) as exc_info:
            await service.create_escrow(drafts.mutual(seller_amount=Decimal("-1")))
        assert exc_info.value.code == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_records_created_action_and_notifies_seller(
        self, service, drafts, dispatcher
    ) -> None:
        escrow = await service.create_escrow(drafts.mutual())

        details = await service.get_escrow_details(escrow.id)
        assert [a.action_type for a in details.actions] == [ActionType.CREATED.value]
        assert dispatcher.types_for(SELLER) == [NotificationType.ACTION_REQUIRED.value]

    @pytest.mark.asyncio
    async def test_idempotency_key_replays_the_same_escrow(self, service, drafts) -> None:
        first = await service.create_escrow(drafts.mutual(idempotency_key="order-42"))
        second = await service.create_escrow(drafts.mutual(idempotency_key="order-42"))

        assert second.id == first.id
        assert len(await service.list_escrows(BUYER)) == 1


class TestLoad:
    @pytest.mark.asyncio
    async def test_unknown_escrow(self, service) -> None:
        with pytest.raises(EscrowNotFoundError):
            await service.get_escrow(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_for_either_party(self, service, drafts) -> None:
        await service.create_escrow(drafts.mutual())
        await service.create_escrow(drafts.swap(buyer_wallet="0xother"))

        assert len(await service.list_escrows(SELLER)) == 2
        assert len(await service.list_escrows(BUYER)) == 1

    @pytest.mark.asyncio
    async def test_allowed_events_follow_type(self, service, drafts) -> None:
        swap = await service.create_escrow(drafts.swap())
        mutual = await service.create_escrow(drafts.mutual())

        assert "cancel" in service.allowed_events(swap)
        assert "execute_swap" not in service.allowed_events(swap)
        assert "expire" in service.allowed_events(mutual)
        assert mutual.escrow_type == EscrowType.MUTUAL_CONFIRMATION
