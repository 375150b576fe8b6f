"""Shared test fixtures for the escrow engine test suite.

Provides:
    - A throwaway SQLite database per test (aiosqlite, real transactions)
    - FakeLedger: the simulated ledger plus scripted transfer failures
    - RecordingDispatcher: captures every notification
    - A controllable clock and an EscrowService wired to all of the above
    - Factories for creating and funding escrows of each type
    - An httpx client over the REST routers
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import create_async_engine

from escrow_engine.api.deps import get_service
from escrow_engine.api.middleware import setup_middleware
from escrow_engine.api.routes.disputes import router as disputes_router
from escrow_engine.api.routes.escrow import router as escrow_router
from escrow_engine.config import Settings
from escrow_engine.domain.enums import EscrowType
from escrow_engine.infrastructure.database.engine import create_session_factory, create_tables
from escrow_engine.services.escrow_service import EscrowService
from escrow_engine.services.ledger_service import SimulatedLedger
from escrow_engine.services.registry import EscrowDraft, MilestoneDraft

BUYER = "0xbuyer"
SELLER = "0xseller"
ADMIN = "0xadmin"
TREASURY = "0xtreasury"

# ---------------------------------------------------------------------------
# Collaborator doubles
# ---------------------------------------------------------------------------


class LedgerUnavailable(ConnectionError):
    """Scripted transfer failure."""


@dataclass
class _FailureRule:
    remaining: int
    destination: str | None
    token: str | None
    error: type[BaseException] = LedgerUnavailable


@dataclass
class FakeLedger(SimulatedLedger):
    """SimulatedLedger whose transfers can be made to fail on demand."""

    rules: list[_FailureRule] = field(default_factory=list)
    attempts: int = 0

    def fail_next(
        self,
        times: int = 1,
        destination: str | None = None,
        token: str | None = None,
        error: type[BaseException] = LedgerUnavailable,
    ) -> None:
        """Fail the next `times` transfers matching destination/token with `error`."""
        self.rules.append(_FailureRule(times, destination, token, error))

    async def transfer(self, source, destination, amount, token) -> str:
        self.attempts += 1
        for rule in self.rules:
            if rule.remaining <= 0:
                continue
            if rule.destination not in (None, destination) or rule.token not in (None, token):
                continue
            rule.remaining -= 1
            raise rule.error(f"ledger unavailable for {destination}")
        return await super().transfer(source, destination, amount, token)


@dataclass
class RecordingDispatcher:
    sent: list[tuple[str, str, dict]] = field(default_factory=list)

    async def enqueue(self, recipient: str, notification_type: str, payload: dict) -> None:
        self.sent.append((recipient, notification_type, payload))

    def types_for(self, recipient: str) -> list[str]:
        return [kind for to, kind, _ in self.sent if to == recipient]


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime.now(UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        app_env="development",
        database_url="sqlite+aiosqlite://",
        treasury_wallet=TREASURY,
        admin_wallets=ADMIN,
        platform_fee_percentage=Decimal("3"),
        cancellation_fee_percentage=Decimal("1"),
        swap_leg_retry_attempts=3,
        swap_leg_retry_wait_seconds=0,
        sweeper_enabled=False,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'escrow.db'}")
    await create_tables(engine)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def service(session_factory, ledger, dispatcher, settings, clock) -> EscrowService:
    return EscrowService(session_factory, ledger, dispatcher, settings, clock=clock)


# ---------------------------------------------------------------------------
# Draft and escrow factories
# ---------------------------------------------------------------------------


def mutual_draft(**overrides) -> EscrowDraft:
    values = {
        "escrow_type": EscrowType.MUTUAL_CONFIRMATION,
        "buyer_wallet": BUYER,
        "seller_wallet": SELLER,
        "token": "USDC",
        "buyer_amount": Decimal("100"),
        "seller_amount": Decimal("10"),
        "description": "Logo design",
    }
    values.update(overrides)
    return EscrowDraft(**values)


def milestone_draft(**overrides) -> EscrowDraft:
    values = {
        "escrow_type": EscrowType.MILESTONE,
        "buyer_wallet": BUYER,
        "seller_wallet": SELLER,
        "token": "USDC",
        "buyer_amount": Decimal("1000"),
        "milestones": (
            MilestoneDraft("Wireframes", Decimal("30")),
            MilestoneDraft("Implementation", Decimal("70")),
        ),
    }
    values.update(overrides)
    return EscrowDraft(**values)


def swap_draft(**overrides) -> EscrowDraft:
    values = {
        "escrow_type": EscrowType.ATOMIC_SWAP,
        "buyer_wallet": BUYER,
        "seller_wallet": SELLER,
        "token": "USDC",
        "buyer_amount": Decimal("100"),
        "seller_amount": Decimal("0.05"),
        "seller_token": "ETH",
    }
    values.update(overrides)
    return EscrowDraft(**values)


@pytest.fixture
def drafts():
    """Draft builders by escrow type: drafts.mutual(buyer_amount=...)."""

    class _Drafts:
        mutual = staticmethod(mutual_draft)
        milestone = staticmethod(milestone_draft)
        swap = staticmethod(swap_draft)

    return _Drafts


@pytest.fixture
def fund(service):
    """Deposit every required leg of an escrow; returns the last CommandResult."""

    async def _fund(escrow, buyer_tx: str | None = None, seller_tx: str | None = None):
        buyer_tx = buyer_tx or f"tx-buyer-{escrow.id}"
        seller_tx = seller_tx or f"tx-seller-{escrow.id}"
        result = await service.record_deposit(
            escrow.id, escrow.buyer_wallet, escrow.buyer_amount, buyer_tx
        )
        if escrow.requires_seller_deposit:
            result = await service.record_deposit(
                escrow.id, escrow.seller_wallet, escrow.seller_amount, seller_tx
            )
        return result

    return _fund


@pytest_asyncio.fixture
async def active_mutual(service, fund):
    escrow = await service.create_escrow(mutual_draft())
    await fund(escrow)
    return await service.get_escrow(escrow.id)


@pytest_asyncio.fixture
async def active_milestone(service, fund):
    escrow = await service.create_escrow(milestone_draft())
    await fund(escrow)
    return await service.get_escrow(escrow.id)


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def app(service) -> FastAPI:
    """REST routers and middleware over the test service, without the lifespan."""
    app = FastAPI()
    setup_middleware(app)
    app.include_router(escrow_router)
    app.include_router(disputes_router)
    app.dependency_overrides[get_service] = lambda: service
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
