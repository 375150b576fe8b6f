"""Ledger Service — simulated settlement network.

The real ledger transfer primitive and key custody live outside the engine.
SimulatedLedger satisfies the LedgerTransfer protocol for development, the
simulation script and local runs: it hands out fake wallet addresses and
settlement references and keeps an in-memory record of every transfer so a
run can be inspected afterwards.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from escrow_engine.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TransferRecord:
    reference: str
    source: str
    destination: str
    amount: Decimal
    token: str


@dataclass
class SimulatedLedger:
    """In-memory LedgerTransfer that always succeeds."""

    transfers: list[TransferRecord] = field(default_factory=list)

    async def create_escrow_wallet(self) -> str:
        address = "0x" + uuid.uuid4().hex[:40]
        logger.info("ledger.escrow_wallet_created", address=address, simulated=True)
        return address

    async def transfer(
        self,
        source: str,
        destination: str,
        amount: Decimal,
        token: str,
    ) -> str:
        """Record a transfer and return a fake settlement reference."""
        reference = "0x" + uuid.uuid4().hex + uuid.uuid4().hex[:2]
        self.transfers.append(
            TransferRecord(
                reference=reference,
                source=source,
                destination=destination,
                amount=amount,
                token=token,
            )
        )
        logger.info(
            "ledger.transfer_simulated",
            reference=reference,
            amount=str(amount),
            token=token,
            from_wallet=source,
            to_wallet=destination,
        )
        return reference

    def total_to(self, destination: str, token: str | None = None) -> Decimal:
        return sum(
            (
                t.amount
                for t in self.transfers
                if t.destination == destination and (token is None or t.token == token)
            ),
            Decimal("0"),
        )
