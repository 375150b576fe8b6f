"""Domain layer — pure business logic with zero framework dependencies."""

from escrow_engine.domain.enums import (
    ActionType,
    DisputeStatus,
    EscrowStatus,
    EscrowType,
    MilestoneStatus,
    PartyRole,
    ResolutionAction,
    SettlementStatus,
)
from escrow_engine.domain.exceptions import (
    ConcurrentModificationError,
    EscrowError,
    EscrowNotFoundError,
    FrozenByDisputeError,
    InsufficientJustificationError,
    InvalidStateError,
    InvalidTransitionError,
    PartialSwapFailureError,
    SettlementFailureError,
    SplitExceedsEscrowError,
)
from escrow_engine.domain.models import (
    AtomicSwapEscrow,
    CommandResult,
    EscrowContract,
    Milestone,
    MilestoneEscrow,
    MutualConfirmationEscrow,
    SettlementLeg,
    SettlementResult,
)
from escrow_engine.domain.ports import LedgerTransfer, NotificationDispatcher
from escrow_engine.domain.state_machine import (
    validate_milestone_transition,
    validate_transition,
)

__all__ = [
    "ActionType",
    "DisputeStatus",
    "EscrowStatus",
    "EscrowType",
    "MilestoneStatus",
    "PartyRole",
    "ResolutionAction",
    "SettlementStatus",
    "ConcurrentModificationError",
    "EscrowError",
    "EscrowNotFoundError",
    "FrozenByDisputeError",
    "InsufficientJustificationError",
    "InvalidStateError",
    "InvalidTransitionError",
    "PartialSwapFailureError",
    "SettlementFailureError",
    "SplitExceedsEscrowError",
    "AtomicSwapEscrow",
    "CommandResult",
    "EscrowContract",
    "Milestone",
    "MilestoneEscrow",
    "MutualConfirmationEscrow",
    "SettlementLeg",
    "SettlementResult",
    "LedgerTransfer",
    "NotificationDispatcher",
    "validate_milestone_transition",
    "validate_transition",
]
