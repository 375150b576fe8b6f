"""Collaborator protocols.

The ledger transfer primitive and the notification dispatcher live outside the
engine. These Protocols (structural subtyping) describe the shape the engine
relies on, so the simulated ledger, the Redis dispatcher and test doubles need
no common base class.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from decimal import Decimal


@runtime_checkable
class LedgerTransfer(Protocol):
    """Moves funds on the settlement network.

    Retriable but not idempotent: calling transfer twice moves funds twice,
    which is why every caller goes through the settlement executor.
    """

    async def create_escrow_wallet(self) -> str:
        """Return the address of a fresh wallet that will hold one escrow's funds."""
        ...

    async def transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        token: str,
    ) -> str:
        """Transfer amount of token and return the settlement reference.

        Raises any exception on failure; the executor records and surfaces it.
        """
        ...


@runtime_checkable
class NotificationDispatcher(Protocol):
    """Accepts delivery events for out-of-scope notification channels."""

    async def enqueue(self, recipient: str, notification_type: str, payload: dict) -> None:
        ...
