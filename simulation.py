#!/usr/bin/env python3
"""Escrow Engine — End-to-End Simulation.

Runs four scenarios between a buyer bot, a seller bot and an admin:

    Scenario A: Mutual confirmation
        - buyer_amount=10, seller security deposit=2
        - Both deposit -> active; buyer confirms; seller confirms -> completed
        - Seller receives 10 (minus fee) and the 2 deposit back

    Scenario B: Milestones
        - buyer_amount=100, milestones 40% / 60%
        - M1 submitted and approved -> 40 (minus fee) released, escrow stays active
        - M2 submitted, then disputed by the buyer -> M2 disputed, M1 stays paid

    Scenario C: Atomic swap expiry
        - Legs 5 USDC / 200 DAI, 24h window
        - Only the buyer deposits -> sweeper refunds the 5 and cancels

    Scenario D: Dispute and partial split
        - 10-unit mutual confirmation escrow disputed before confirmation
        - Admin resolves partial_split (6, 4) -> completed, dispute resolved

Usage:
    # Option A: With Docker (PostgreSQL):
    docker compose up -d
    uv run python simulation.py

    # Option B: Without Docker (SQLite file in a temp directory):
    uv run python simulation.py --sqlite

    # Run a specific scenario:
    uv run python simulation.py --sqlite --scenario C
"""

from __future__ import annotations

import argparse
import asyncio
import tempfile
import uuid
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING

# ---------------------------------------------------------------------------
# Configure structured logging BEFORE importing app modules
# ---------------------------------------------------------------------------
from escrow_engine.logging_config import get_logger, setup_logging

setup_logging(log_level="INFO", json_logs=False)
logger = get_logger("simulation")

from escrow_engine.config import Settings  # noqa: E402
from escrow_engine.domain.enums import EscrowType, ResolutionAction  # noqa: E402
from escrow_engine.infrastructure.redis_client import LoggingNotificationDispatcher  # noqa: E402
from escrow_engine.services.escrow_service import EscrowService  # noqa: E402
from escrow_engine.services.ledger_service import SimulatedLedger  # noqa: E402
from escrow_engine.services.lifecycle import utcnow  # noqa: E402
from escrow_engine.services.registry import EscrowDraft, MilestoneDraft  # noqa: E402

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from escrow_engine.domain.models import CommandResult

BUYER = "0x" + "B" * 40
SELLER = "0x" + "5" * 40
ADMIN = "0x" + "A" * 40
TREASURY = "0x" + "7" * 40

# Module-level state
_engine: AsyncEngine | None = None
_tmpdir: tempfile.TemporaryDirectory | None = None
_use_sqlite = False


# ---------------------------------------------------------------------------
# Database lifecycle helpers
# ---------------------------------------------------------------------------
async def build_service() -> tuple[EscrowService, SimulatedLedger]:
    """Initialize the database and wire an EscrowService over it."""
    global _engine, _tmpdir

    settings = Settings(
        treasury_wallet=TREASURY,
        admin_wallets=ADMIN,
        swap_leg_retry_wait_seconds=0,
        sweeper_enabled=False,
    )

    if _use_sqlite:
        from sqlalchemy.ext.asyncio import create_async_engine

        from escrow_engine.infrastructure.database.engine import (
            create_session_factory,
            create_tables,
        )

        _tmpdir = tempfile.TemporaryDirectory(prefix="escrow-sim-")
        url = f"sqlite+aiosqlite:///{Path(_tmpdir.name) / 'simulation.db'}"
        _engine = create_async_engine(url, echo=False)
        await create_tables(_engine)
        factory = create_session_factory(_engine)
        logger.info("database.sqlite_initialized", url=url)
    else:
        from escrow_engine.infrastructure.database.engine import get_session_factory, init_db

        await init_db()
        factory = get_session_factory()

    ledger = SimulatedLedger()
    service = EscrowService(
        session_factory=factory,
        ledger=ledger,
        dispatcher=LoggingNotificationDispatcher(),
        settings=settings,
    )
    return service, ledger


async def shutdown_database() -> None:
    """Close database connections."""
    global _engine, _tmpdir

    if _engine is not None:
        await _engine.dispose()
        _engine = None
    else:
        from escrow_engine.infrastructure.database.engine import close_db

        await close_db()
    if _tmpdir is not None:
        _tmpdir.cleanup()
        _tmpdir = None


# ---------------------------------------------------------------------------
# Party bots
# ---------------------------------------------------------------------------
@dataclass
class PartyBot:
    """A buyer or seller that deposits into and acts on escrows."""

    name: str
    wallet: str
    service: EscrowService
    _tx_counter: int = 0

    async def deposit(self, escrow_id: uuid.UUID, amount: Decimal, token: str) -> CommandResult:
        self._tx_counter += 1
        tx_reference = f"{self.name.lower()}-deposit-{escrow_id.hex[:8]}-{self._tx_counter}"
        result = await self.service.record_deposit(
            escrow_id, self.wallet, amount, tx_reference, token
        )
        print(f"  {self.name}: deposited {amount} {token} -> {result.escrow.status}")
        return result

    async def confirm(self, escrow_id: uuid.UUID) -> CommandResult:
        result = await self.service.confirm_completion(escrow_id, self.wallet)
        print(f"  {self.name}: confirmed completion -> {result.escrow.status}")
        return result


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------
def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    """Print a section header."""
    print(f"\n--- {text} ---\n")


def print_settlements(result: CommandResult) -> None:
    for settlement in result.settlements:
        print(f"  Settlement [{settlement.purpose}] {settlement.status}")
        for leg, ref in zip(settlement.legs, settlement.references, strict=True):
            short = f"{ref[:18]}..." if ref else "pending"
            target = leg.destination[:10]
            print(f"    {leg.amount} {leg.token} -> {target}... ({leg.label}) {short}")


async def print_audit_trail(service: EscrowService, escrow_id: uuid.UUID) -> None:
    """Print the full audit trail for an escrow."""
    details = await service.get_escrow_details(escrow_id)
    print("\n  Audit Trail:")
    for i, action in enumerate(details.actions, 1):
        old = action.old_status or "-"
        new = action.new_status or "-"
        print(f"    {i}. [{action.action_type}] {old} -> {new} (by {action.actor_wallet[:10]})")
    print()


# ===========================================================================
# Scenario A: Mutual confirmation
# ===========================================================================
async def scenario_a_mutual_confirmation(service: EscrowService, ledger: SimulatedLedger) -> None:
    banner("SCENARIO A: Mutual Confirmation — both parties confirm")
    buyer = PartyBot("BUYER", BUYER, service)
    seller = PartyBot("SELLER", SELLER, service)

    section("Step 1: Buyer creates escrow")
    escrow = await service.create_escrow(
        EscrowDraft(
            escrow_type=EscrowType.MUTUAL_CONFIRMATION,
            buyer_wallet=BUYER,
            seller_wallet=SELLER,
            token="USDC",
            buyer_amount=Decimal("10"),
            seller_amount=Decimal("2"),
            description="Logo design, two revisions",
        )
    )
    print(f"  Escrow {escrow.id} created, wallet {escrow.escrow_wallet}")

    section("Step 2: Both parties deposit")
    await buyer.deposit(escrow.id, Decimal("10"), "USDC")
    await seller.deposit(escrow.id, Decimal("2"), "USDC")

    section("Step 3: Both parties confirm")
    await buyer.confirm(escrow.id)
    result = await seller.confirm(escrow.id)
    print_settlements(result)
    print(f"\n  Seller received {ledger.total_to(SELLER, 'USDC')} USDC")

    await print_audit_trail(service, escrow.id)


# ===========================================================================
# Scenario B: Milestones
# ===========================================================================
async def scenario_b_milestones(service: EscrowService, ledger: SimulatedLedger) -> None:
    banner("SCENARIO B: Milestones — approve M1, dispute M2")
    buyer = PartyBot("BUYER", BUYER, service)

    section("Step 1: Buyer creates a 40/60 milestone escrow and deposits")
    escrow = await service.create_escrow(
        EscrowDraft(
            escrow_type=EscrowType.MILESTONE,
            buyer_wallet=BUYER,
            seller_wallet=SELLER,
            token="USDC",
            buyer_amount=Decimal("100"),
            milestones=(
                MilestoneDraft("Backend API", Decimal("40")),
                MilestoneDraft("Frontend and launch", Decimal("60")),
            ),
        )
    )
    await buyer.deposit(escrow.id, Decimal("100"), "USDC")
    m1, m2 = escrow.milestones

    section("Step 2: Seller submits M1, buyer approves")
    await service.submit_milestone_work(escrow.id, m1.id, SELLER, notes="API deployed")
    result = await service.approve_milestone(escrow.id, m1.id, BUYER)
    print_settlements(result)
    print(f"  Escrow is {result.escrow.status}, M1 is {result.escrow.milestones[0].status}")

    section("Step 3: Seller submits M2, buyer disputes it")
    await service.submit_milestone_work(escrow.id, m2.id, SELLER, notes="Frontend done")
    result = await service.raise_dispute(
        escrow.id,
        BUYER,
        reason="quality",
        description="The frontend does not match the agreed mockups at all.",
        milestone_id=m2.id,
    )
    current = result.escrow
    print(f"  M1 is {current.milestones[0].status}, M2 is {current.milestones[1].status}")
    print(f"  Seller keeps {ledger.total_to(SELLER, 'USDC')} USDC from M1")

    await print_audit_trail(service, escrow.id)


# ===========================================================================
# Scenario C: Atomic swap expiry
# ===========================================================================
async def scenario_c_swap_expiry(service: EscrowService, ledger: SimulatedLedger) -> None:
    banner("SCENARIO C: Atomic Swap — only one side deposits before expiry")
    buyer = PartyBot("BUYER", BUYER, service)

    section("Step 1: Create swap of 5 USDC for 200 DAI, 24h window")
    escrow = await service.create_escrow(
        EscrowDraft(
            escrow_type=EscrowType.ATOMIC_SWAP,
            buyer_wallet=BUYER,
            seller_wallet=SELLER,
            token="USDC",
            buyer_amount=Decimal("5"),
            seller_amount=Decimal("200"),
            seller_token="DAI",
            timeout_hours=24,
        )
    )
    print(f"  Expires at {escrow.expires_at}")

    section("Step 2: Only the buyer deposits")
    await buyer.deposit(escrow.id, Decimal("5"), "USDC")

    section("Step 3: Sweeper runs after the window closes")
    report = await service.sweep_expired(now=utcnow() + timedelta(hours=25))
    print(f"  Sweep: {report.to_dict()}")
    escrow = await service.get_escrow(escrow.id)
    print(f"  Escrow is {escrow.status}; buyer refunded {ledger.total_to(BUYER, 'USDC')} USDC")

    await print_audit_trail(service, escrow.id)


# ===========================================================================
# Scenario D: Dispute and partial split
# ===========================================================================
async def scenario_d_partial_split(service: EscrowService, ledger: SimulatedLedger) -> None:
    banner("SCENARIO D: Dispute before confirmation, admin splits 6 / 4")
    buyer = PartyBot("BUYER", BUYER, service)
    seller = PartyBot("SELLER", SELLER, service)

    section("Step 1: Funded mutual confirmation escrow")
    escrow = await service.create_escrow(
        EscrowDraft(
            escrow_type=EscrowType.MUTUAL_CONFIRMATION,
            buyer_wallet=BUYER,
            seller_wallet=SELLER,
            token="USDC",
            buyer_amount=Decimal("10"),
            seller_amount=Decimal("2"),
        )
    )
    await buyer.deposit(escrow.id, Decimal("10"), "USDC")
    await seller.deposit(escrow.id, Decimal("2"), "USDC")

    section("Step 2: Buyer raises a dispute")
    result = await service.raise_dispute(
        escrow.id,
        BUYER,
        reason="partially_delivered",
        description="Only half of the agreed translation pages were delivered.",
    )
    dispute_id = result.extra["dispute_id"]
    print(f"  Escrow is {result.escrow.status}, dispute {dispute_id}")

    section("Step 3: Admin resolves with a partial split")
    result = await service.resolve_dispute(
        uuid.UUID(dispute_id),
        ADMIN,
        ResolutionAction.PARTIAL_SPLIT,
        notes="Half of the pages were delivered and accepted by the buyer; splitting 6/4.",
        amount_to_buyer=Decimal("6"),
        amount_to_seller=Decimal("4"),
    )
    print_settlements(result)
    details = await service.get_dispute_details(uuid.UUID(dispute_id))
    print(f"  Escrow is {result.escrow.status}, dispute is {details.dispute.status}")
    for action in details.admin_actions:
        print(
            f"  AdminAction {action.decision}: buyer ref {action.buyer_settlement_reference}, "
            f"seller ref {action.seller_settlement_reference}"
        )

    await print_audit_trail(service, escrow.id)


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    "A": scenario_a_mutual_confirmation,
    "B": scenario_b_milestones,
    "C": scenario_c_swap_expiry,
    "D": scenario_d_partial_split,
}


async def run(selected: list[str]) -> None:
    service, ledger = await build_service()
    try:
        print("\n" + "#" * 70)
        print("  ESCROW ENGINE — SIMULATION")
        print(f"  Database: {'SQLite (temp file)' if _use_sqlite else 'PostgreSQL'}")
        print("#" * 70 + "\n")

        for name in selected:
            await SCENARIOS[name](service, ledger)

        print("\n" + "=" * 70)
        print(f"  ALL SCENARIOS COMPLETED ({len(ledger.transfers)} simulated transfers)")
        print("=" * 70 + "\n")
    finally:
        await shutdown_database()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Escrow Engine Simulation")
    parser.add_argument(
        "--scenario",
        choices=sorted(SCENARIOS),
        default=None,
        help="Run a specific scenario (A-D). Default: run all.",
    )
    parser.add_argument(
        "--sqlite",
        action="store_true",
        help="Use a temporary SQLite file instead of PostgreSQL (no Docker needed).",
    )
    args = parser.parse_args()

    _use_sqlite = args.sqlite
    asyncio.run(run([args.scenario] if args.scenario else sorted(SCENARIOS)))
