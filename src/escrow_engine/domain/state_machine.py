"""Escrow Contract State Machine Guards.

Uses python-statemachine to enforce legal state transitions at the domain level.
Each escrow type has its own machine; milestones have a machine of their own so
that sibling milestones cycle independently. No matter what the API or a
background poller asks for, an illegal transition raises TransitionNotAllowed.

The machines are instantiated per command from the stored status and are only
used to validate the transition before a conditional write is attempted.

Mutual confirmation:
    CREATED          -> BUYER_DEPOSITED   (buyer_deposit)
    CREATED          -> SELLER_DEPOSITED  (seller_deposit)
    BUYER_DEPOSITED  -> FULLY_FUNDED      (seller_deposit)
    SELLER_DEPOSITED -> FULLY_FUNDED      (buyer_deposit)
    FULLY_FUNDED     -> ACTIVE            (activate)
    ACTIVE           -> COMPLETED         (complete)
    ACTIVE           -> DISPUTED          (raise_dispute)
    DISPUTED         -> COMPLETED         (admin_resolve)
    CREATED          -> CANCELLED         (expire)
    CREATED          -> REFUNDED          (expire_with_refund, late deposit only)
    *_DEPOSITED      -> REFUNDED          (expire_with_refund)

Milestone:
    CREATED -> BUYER_DEPOSITED -> ACTIVE -> COMPLETED, ACTIVE -> DISPUTED -> COMPLETED

Atomic swap:
    CREATED -> BUYER_DEPOSITED / SELLER_DEPOSITED -> FULLY_FUNDED -> COMPLETED (execute_swap)
    any unfunded or stalled state -> CANCELLED (expire)

All non-terminal, non-disputed states accept `cancel` (mutual cancellation).
"""

from __future__ import annotations

from statemachine import State, StateMachine

from escrow_engine.domain.enums import EscrowType


class _GuardMixin:
    """Shared helpers for the escrow guards."""

    def _validate_start(self, current_status: str) -> None:
        valid_values = {s.value for s in self.states}
        if current_status not in valid_values:
            valid = ", ".join(sorted(valid_values))
            raise ValueError(
                f"Unknown status '{current_status}' for {type(self).__name__}. "
                f"Valid states: {valid}"
            )

    @property
    def status(self) -> str:
        """Return the current state value as a string (matches the status enums)."""
        return str(self.current_state.value)

    def get_allowed_events(self) -> list[str]:
        """Return a list of event names that can fire from the current state."""
        return [getattr(event, "id", None) or event.name for event in self.allowed_events]


class MutualConfirmationStateMachine(_GuardMixin, StateMachine):
    """Both parties deposit, both confirm, the escrow releases."""

    # --- States ---
    created = State("Created", value="created", initial=True)
    buyer_deposited = State("Buyer deposited", value="buyer_deposited")
    seller_deposited = State("Seller deposited", value="seller_deposited")
    fully_funded = State("Fully funded", value="fully_funded")
    active = State("Active", value="active")
    disputed = State("Disputed", value="disputed")
    completed = State("Completed", value="completed", final=True)
    cancelled = State("Cancelled", value="cancelled", final=True)
    refunded = State("Refunded", value="refunded", final=True)

    # --- Funding ---
    buyer_deposit = created.to(buyer_deposited) | seller_deposited.to(fully_funded)
    seller_deposit = created.to(seller_deposited) | buyer_deposited.to(fully_funded)
    activate = fully_funded.to(active)

    # --- Completion ---
    complete = active.to(completed)

    # --- Disputes ---
    raise_dispute = active.to(disputed)
    admin_resolve = disputed.to(completed)

    # --- Expiry and cancellation ---
    # A late deposit can leave `created` with a flag set, so `created` may end refunded.
    expire = created.to(cancelled)
    expire_with_refund = (
        created.to(refunded)
        | buyer_deposited.to(refunded)
        | seller_deposited.to(refunded)
    )
    cancel = (
        created.to(cancelled)
        | buyer_deposited.to(cancelled)
        | seller_deposited.to(cancelled)
        | fully_funded.to(cancelled)
        | active.to(cancelled)
    )

    def __init__(self, current_status: str = "created") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class MilestoneEscrowStateMachine(_GuardMixin, StateMachine):
    """The buyer funds everything upfront; milestones release it in installments."""

    created = State("Created", value="created", initial=True)
    buyer_deposited = State("Buyer deposited", value="buyer_deposited")
    active = State("Active", value="active")
    disputed = State("Disputed", value="disputed")
    completed = State("Completed", value="completed", final=True)
    cancelled = State("Cancelled", value="cancelled", final=True)

    buyer_deposit = created.to(buyer_deposited)
    activate = buyer_deposited.to(active)
    complete = active.to(completed)

    raise_dispute = active.to(disputed)
    admin_resolve = disputed.to(completed)

    cancel = created.to(cancelled) | buyer_deposited.to(cancelled) | active.to(cancelled)

    def __init__(self, current_status: str = "created") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class AtomicSwapStateMachine(_GuardMixin, StateMachine):
    """Two assets exchanged unconditionally once both sides are deposited."""

    created = State("Created", value="created", initial=True)
    buyer_deposited = State("Buyer deposited", value="buyer_deposited")
    seller_deposited = State("Seller deposited", value="seller_deposited")
    fully_funded = State("Fully funded", value="fully_funded")
    completed = State("Completed", value="completed", final=True)
    cancelled = State("Cancelled", value="cancelled", final=True)

    buyer_deposit = created.to(buyer_deposited) | seller_deposited.to(fully_funded)
    seller_deposit = created.to(seller_deposited) | buyer_deposited.to(fully_funded)
    execute_swap = fully_funded.to(completed)

    expire = (
        created.to(cancelled)
        | buyer_deposited.to(cancelled)
        | seller_deposited.to(cancelled)
        | fully_funded.to(cancelled)
    )
    cancel = (
        created.to(cancelled)
        | buyer_deposited.to(cancelled)
        | seller_deposited.to(cancelled)
        | fully_funded.to(cancelled)
    )

    def __init__(self, current_status: str = "created") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


class MilestoneStateMachine(_GuardMixin, StateMachine):
    """Guard for a single milestone. Siblings never share a machine."""

    pending = State("Pending", value="pending", initial=True)
    work_submitted = State("Work submitted", value="work_submitted")
    disputed = State("Disputed", value="disputed")
    approved = State("Approved", value="approved", final=True)
    resolved = State("Resolved", value="resolved", final=True)

    submit_work = pending.to(work_submitted)
    approve = work_submitted.to(approved)
    raise_dispute = pending.to(disputed) | work_submitted.to(disputed)

    # Admin decisions reach milestones either through a milestone-scoped
    # dispute or through an escrow-scoped one covering every unsettled milestone.
    admin_release = (
        disputed.to(approved) | pending.to(approved) | work_submitted.to(approved)
    )
    admin_settle = (
        disputed.to(resolved) | pending.to(resolved) | work_submitted.to(resolved)
    )

    def __init__(self, current_status: str = "pending") -> None:
        self._validate_start(current_status)
        super().__init__(start_value=current_status)


ESCROW_MACHINES: dict[EscrowType, type[StateMachine]] = {
    EscrowType.MUTUAL_CONFIRMATION: MutualConfirmationStateMachine,
    EscrowType.MILESTONE: MilestoneEscrowStateMachine,
    EscrowType.ATOMIC_SWAP: AtomicSwapStateMachine,
}


def machine_for(escrow_type: EscrowType | str, current_status: str) -> StateMachine:
    """Instantiate the guard for an escrow type at the given status."""
    machine_cls = ESCROW_MACHINES[EscrowType(escrow_type)]
    return machine_cls(current_status=current_status)


def validate_transition(
    escrow_type: EscrowType | str,
    current_status: str,
    event_name: str,
) -> str:
    """Validate a state transition and return the new status.

    Creates a temporary state machine for the escrow type, fires the named
    event, and returns the resulting status string.

    Raises:
        TransitionNotAllowed: If the transition is illegal.
        ValueError: If the status or event name is invalid.
    """
    sm = machine_for(escrow_type, current_status)
    return _fire(sm, current_status, event_name)


def validate_milestone_transition(current_status: str, event_name: str) -> str:
    """Validate a milestone transition and return the new milestone status."""
    sm = MilestoneStateMachine(current_status=current_status)
    return _fire(sm, current_status, event_name)


def _fire(sm: StateMachine, current_status: str, event_name: str) -> str:
    event_method = getattr(sm, event_name, None)
    if event_method is None or not callable(event_method):
        raise ValueError(
            f"Unknown event '{event_name}'. "
            f"Allowed events from {current_status}: {sm.get_allowed_events()}"
        )
    event_method()
    return sm.status
