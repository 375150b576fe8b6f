"""Tests for the escrow and milestone state machine guards.

These tests verify that:
    1. Each escrow type walks its own happy path.
    2. Illegal transitions are blocked.
    3. Milestones cycle independently of the escrow.
    4. validate_transition / validate_milestone_transition behave correctly.
"""

from __future__ import annotations

import pytest
from statemachine.exceptions import TransitionNotAllowed

from escrow_engine.domain.enums import EscrowType
from escrow_engine.domain.state_machine import (
    AtomicSwapStateMachine,
    MilestoneEscrowStateMachine,
    MilestoneStateMachine,
    MutualConfirmationStateMachine,
    machine_for,
    validate_milestone_transition,
    validate_transition,
)


class TestMutualConfirmation:
    def test_full_lifecycle(self) -> None:
        sm = MutualConfirmationStateMachine("created")

        sm.seller_deposit()
        assert sm.status == "seller_deposited"

        sm.buyer_deposit()
        assert sm.status == "fully_funded"

        sm.activate()
        assert sm.status == "active"

        sm.complete()
        assert sm.status == "completed"

    def test_dispute_then_resolution(self) -> None:
        sm = MutualConfirmationStateMachine("active")
        sm.raise_dispute()
        assert sm.status == "disputed"

        sm.admin_resolve()
        assert sm.status == "completed"

    def test_expiry_with_a_late_deposit_refunds(self) -> None:
        sm = MutualConfirmationStateMachine("created")
        sm.expire_with_refund()
        assert sm.status == "refunded"

    def test_disputed_escrow_cannot_be_cancelled(self) -> None:
        sm = MutualConfirmationStateMachine("disputed")
        with pytest.raises(TransitionNotAllowed):
            sm.cancel()

    def test_active_escrow_does_not_expire(self) -> None:
        sm = MutualConfirmationStateMachine("active")
        with pytest.raises(TransitionNotAllowed):
            sm.expire()


class TestMilestoneEscrow:
    def test_buyer_funds_everything(self) -> None:
        sm = MilestoneEscrowStateMachine("created")
        sm.buyer_deposit()
        sm.activate()
        assert sm.status == "active"

    def test_no_seller_deposit(self) -> None:
        sm = MilestoneEscrowStateMachine("created")
        assert not hasattr(sm, "seller_deposit")

    def test_no_expiry(self) -> None:
        assert "expire" not in MilestoneEscrowStateMachine("created").get_allowed_events()


class TestAtomicSwap:
    def test_execute_swap(self) -> None:
        sm = AtomicSwapStateMachine("buyer_deposited")
        sm.seller_deposit()
        sm.execute_swap()
        assert sm.status == "completed"

    def test_stalled_swap_expires(self) -> None:
        sm = AtomicSwapStateMachine("fully_funded")
        sm.expire()
        assert sm.status == "cancelled"

    def test_no_dispute_path(self) -> None:
        assert not hasattr(AtomicSwapStateMachine("fully_funded"), "raise_dispute")


class TestMilestoneMachine:
    def test_submit_and_approve(self) -> None:
        sm = MilestoneStateMachine("pending")
        sm.submit_work()
        sm.approve()
        assert sm.status == "approved"

    def test_approval_needs_submitted_work(self) -> None:
        sm = MilestoneStateMachine("pending")
        with pytest.raises(TransitionNotAllowed):
            sm.approve()

    def test_admin_decisions(self) -> None:
        assert validate_milestone_transition("disputed", "admin_release") == "approved"
        assert validate_milestone_transition("work_submitted", "admin_settle") == "resolved"

    def test_settled_milestones_are_final(self) -> None:
        assert MilestoneStateMachine("approved").get_allowed_events() == []
        assert MilestoneStateMachine("resolved").get_allowed_events() == []


class TestIllegalTransitions:
    def test_created_to_completed(self) -> None:
        sm = MutualConfirmationStateMachine("created")
        with pytest.raises(TransitionNotAllowed):
            sm.complete()

    def test_terminal_states_are_final(self) -> None:
        for status in ("completed", "cancelled", "refunded"):
            assert MutualConfirmationStateMachine(status).get_allowed_events() == []


class TestAllowedEvents:
    def test_created_allowed(self) -> None:
        allowed = MutualConfirmationStateMachine("created").get_allowed_events()
        assert set(allowed) == {
            "buyer_deposit", "seller_deposit", "expire", "expire_with_refund", "cancel",
        }

    def test_active_allowed(self) -> None:
        allowed = MutualConfirmationStateMachine("active").get_allowed_events()
        assert set(allowed) == {"complete", "raise_dispute", "cancel"}


class TestValidateTransitionFunction:
    def test_valid_transition(self) -> None:
        assert validate_transition(EscrowType.MILESTONE, "buyer_deposited", "activate") == "active"

    def test_machine_by_type_name(self) -> None:
        assert isinstance(machine_for("atomic_swap", "created"), AtomicSwapStateMachine)

    def test_invalid_event_name(self) -> None:
        with pytest.raises(ValueError, match="Unknown event"):
            validate_transition(EscrowType.ATOMIC_SWAP, "created", "nonexistent_event")

    def test_invalid_status(self) -> None:
        with pytest.raises(ValueError, match="Unknown status"):
            MutualConfirmationStateMachine("work_submitted")
