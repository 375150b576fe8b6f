"""Domain enumerations for the escrow engine.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowType(enum.StrEnum):
    """The three contract variants. Stored in escrow_contracts.escrow_type."""

    MUTUAL_CONFIRMATION = "mutual_confirmation"
    MILESTONE = "milestone"
    ATOMIC_SWAP = "atomic_swap"


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow contract.

    Which transitions are legal depends on the escrow type.
    See domain/state_machine.py for the per-type transition tables.
    """

    CREATED = "created"
    BUYER_DEPOSITED = "buyer_deposited"
    SELLER_DEPOSITED = "seller_deposited"
    FULLY_FUNDED = "fully_funded"
    ACTIVE = "active"
    DISPUTED = "disputed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {EscrowStatus.COMPLETED, EscrowStatus.CANCELLED, EscrowStatus.REFUNDED}
)


class MilestoneStatus(enum.StrEnum):
    """Lifecycle of a single milestone.

    RESOLVED marks a milestone settled by an admin decision other than a
    full release to the seller (refund or split).
    """

    PENDING = "pending"
    WORK_SUBMITTED = "work_submitted"
    APPROVED = "approved"
    DISPUTED = "disputed"
    RESOLVED = "resolved"

    @property
    def is_settled(self) -> bool:
        return self in (MilestoneStatus.APPROVED, MilestoneStatus.RESOLVED)


class PartyRole(enum.StrEnum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


class DisputeStatus(enum.StrEnum):
    OPEN = "open"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    CLOSED = "closed"

    @property
    def is_open(self) -> bool:
        return self in (DisputeStatus.OPEN, DisputeStatus.UNDER_REVIEW)


class DisputePriority(enum.StrEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class EvidenceType(enum.StrEnum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    LINK = "link"
    SCREENSHOT = "screenshot"


class ResolutionAction(enum.StrEnum):
    """Admin decisions on a dispute. OTHER records a decision without moving funds."""

    RELEASE_TO_SELLER = "release_to_seller"
    REFUND_TO_BUYER = "refund_to_buyer"
    PARTIAL_SPLIT = "partial_split"
    OTHER = "other"


class ActionType(enum.StrEnum):
    """Types of audit records written to the escrow_actions table.

    Every state transition MUST produce exactly one action.
    This is the append-only forensic trail for disputes.
    """

    # Lifecycle
    CREATED = "created"
    DEPOSITED = "deposited"
    LATE_DEPOSIT = "late_deposit"
    FUNDED = "funded"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"

    # Milestones
    SUBMITTED = "submitted"
    APPROVED = "approved"

    # Swaps
    SWAPPED = "swapped"

    # Disputes
    DISPUTED = "disputed"
    ADMIN_ACTION = "admin_action"

    # Cancellation and expiry
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLATION_APPROVED = "cancellation_approved"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    EXPIRY_EXTENDED = "expiry_extended"
    ESCALATED = "escalated"

    # Failures
    SETTLEMENT_FAILED = "settlement_failed"
    SWAP_PARTIAL_FAILURE = "swap_partial_failure"


class SettlementStatus(enum.StrEnum):
    """State of a settlement claim keyed by (escrow_id, purpose).

    BLOCKED claims are taken by a dispute, the sweeper or a cancellation to
    prevent a release purpose from ever moving funds.
    """

    IN_FLIGHT = "in_flight"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    BLOCKED = "blocked"


class CancellationStatus(enum.StrEnum):
    PENDING = "pending"
    APPROVED = "approved"
    EXECUTED = "executed"
    REJECTED = "rejected"


class NotificationType(enum.StrEnum):
    DEPOSIT_RECEIVED = "deposit_received"
    WORK_SUBMITTED = "work_submitted"
    MILESTONE_APPROVED = "milestone_approved"
    DISPUTE_RAISED = "dispute_raised"
    DISPUTE_RESOLVED = "dispute_resolved"
    ESCROW_COMPLETED = "escrow_completed"
    REFUND_PROCESSED = "refund_processed"
    SWAP_EXECUTED = "swap_executed"
    ACTION_REQUIRED = "action_required"
    CANCELLATION_REQUESTED = "cancellation_requested"
    ESCROW_CANCELLED = "escrow_cancelled"
    EXPIRY_WARNING = "expiry_warning"
    EXPIRY_EXTENDED = "expiry_extended"


SYSTEM_ACTOR = "system"
