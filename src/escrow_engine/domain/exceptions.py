"""Domain exceptions for the escrow engine.

These exceptions are framework-agnostic and represent business rule violations.
They are caught and translated to HTTP responses by the API layer's middleware.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- State Machine Errors ---


class InvalidTransitionError(EscrowError):
    """Raised when a command's precondition does not hold for the current state.

    Not retried: the caller must change what it asks for.
    """

    def __init__(self, current_state: str, attempted: str, reason: str = "") -> None:
        message = f"Invalid transition: {current_state} -> {attempted}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message=message, code="INVALID_TRANSITION")
        self.current_state = current_state
        self.attempted = attempted


class InvalidStateError(InvalidTransitionError):
    """Raised when a dispute or evidence scope is terminal or already disputed."""

    def __init__(self, current_state: str, attempted: str, reason: str = "") -> None:
        super().__init__(current_state, attempted, reason)
        self.code = "INVALID_STATE"


class ConcurrentModificationError(EscrowError):
    """Raised when a conditional write lost against a concurrent writer.

    Safe to retry: the caller reloads and re-issues the command.
    """

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            message=f"{entity} {entity_id} was modified concurrently; reload and retry",
            code="CONCURRENT_MODIFICATION",
        )
        self.entity = entity
        self.entity_id = entity_id


class FrozenByDisputeError(EscrowError):
    """Raised when a party or automatic action targets a disputed scope."""

    def __init__(self, escrow_id: str, milestone_id: str | None = None) -> None:
        scope = f"milestone {milestone_id}" if milestone_id else f"escrow {escrow_id}"
        super().__init__(
            message=f"{scope} is frozen by an open dispute",
            code="FROZEN_BY_DISPUTE",
        )
        self.escrow_id = escrow_id
        self.milestone_id = milestone_id


# --- Lookup Errors ---


class EscrowNotFoundError(EscrowError):
    """Raised when an escrow ID does not exist."""

    def __init__(self, escrow_id: str) -> None:
        super().__init__(message=f"Escrow not found: {escrow_id}", code="ESCROW_NOT_FOUND")
        self.escrow_id = escrow_id


class MilestoneNotFoundError(EscrowError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            message=f"Milestone not found: {milestone_id}",
            code="MILESTONE_NOT_FOUND",
        )


class DisputeNotFoundError(EscrowError):
    def __init__(self, dispute_id: str) -> None:
        super().__init__(message=f"Dispute not found: {dispute_id}", code="DISPUTE_NOT_FOUND")


class CancellationNotFoundError(EscrowError):
    def __init__(self, request_id: str) -> None:
        super().__init__(
            message=f"Cancellation request not found: {request_id}",
            code="CANCELLATION_NOT_FOUND",
        )


# --- Validation Errors ---


class EscrowValidationError(EscrowError):
    """Raised when command input is malformed (creation params, evidence, ...)."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__(message="; ".join(errors), code="VALIDATION_ERROR")
        self.errors = errors


class DepositAmountMismatchError(EscrowError):
    """Raised when an observed deposit does not match the expected amount for its role."""

    def __init__(self, role: str, expected: str, observed: str) -> None:
        super().__init__(
            message=f"{role} deposit mismatch: expected {expected}, observed {observed}",
            code="DEPOSIT_AMOUNT_MISMATCH",
        )
        self.role = role
        self.expected = expected
        self.observed = observed


class UnauthorizedPartyError(EscrowError):
    """Raised when the actor is not allowed to issue the command."""

    def __init__(self, actor: str, action: str) -> None:
        super().__init__(
            message=f"{actor} is not allowed to {action}",
            code="UNAUTHORIZED_PARTY",
        )
        self.actor = actor


class InsufficientJustificationError(EscrowError):
    """Raised when admin resolution notes are shorter than the required minimum."""

    def __init__(self, minimum: int, actual: int) -> None:
        super().__init__(
            message=f"Resolution notes must be at least {minimum} characters (got {actual})",
            code="INSUFFICIENT_JUSTIFICATION",
        )


class SplitExceedsEscrowError(EscrowError):
    """Raised when a partial split is negative or exceeds the disputed amount."""

    def __init__(self, amount_to_buyer: str, amount_to_seller: str, available: str) -> None:
        super().__init__(
            message=(
                f"Split {amount_to_buyer} + {amount_to_seller} is invalid "
                f"for an available amount of {available}"
            ),
            code="SPLIT_EXCEEDS_ESCROW",
        )


class EscrowConfigurationError(EscrowError):
    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="CONFIGURATION_ERROR")


# --- Settlement Errors ---


class SettlementFailureError(EscrowError):
    """Raised when the ledger transfer primitive fails.

    The settlement stays pending; retrying with the same escrow and purpose is
    safe and resumes with the legs stored on the claim.
    """

    def __init__(
        self,
        escrow_id: str,
        purpose: str,
        reason: str,
        settled_legs: int = 0,
    ) -> None:
        super().__init__(
            message=f"Settlement {purpose} for escrow {escrow_id} pending, retry: {reason}",
            code="SETTLEMENT_FAILURE",
        )
        self.escrow_id = escrow_id
        self.purpose = purpose
        self.reason = reason
        self.settled_legs = settled_legs
        self.retryable = True


class SettlementBlockedError(EscrowError):
    """Raised when a settlement purpose was blocked by a dispute, sweep or cancellation."""

    def __init__(self, escrow_id: str, purpose: str) -> None:
        super().__init__(
            message=f"Settlement {purpose} for escrow {escrow_id} is blocked",
            code="SETTLEMENT_BLOCKED",
        )
        self.escrow_id = escrow_id
        self.purpose = purpose


class PartialSwapFailureError(EscrowError):
    """Raised when one swap leg settled and the other exhausted its retry budget.

    Fatal: needs operator intervention. The settled reference is on the claim.
    """

    def __init__(self, escrow_id: str, settled_references: list[str], reason: str) -> None:
        super().__init__(
            message=(
                f"Atomic swap for escrow {escrow_id} partially settled "
                f"({len(settled_references)} leg(s)); operator intervention required: {reason}"
            ),
            code="PARTIAL_SWAP_FAILURE",
        )
        self.escrow_id = escrow_id
        self.settled_references = settled_references
        self.reason = reason
