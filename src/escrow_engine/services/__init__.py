"""Application services — use case orchestration."""

from escrow_engine.services.escrow_service import (
    DisputeDetails,
    EscrowDetails,
    EscrowService,
    get_escrow_service,
    init_escrow_service,
)
from escrow_engine.services.ledger_service import SimulatedLedger
from escrow_engine.services.registry import EscrowDraft, MilestoneDraft

__all__ = [
    "DisputeDetails",
    "EscrowDetails",
    "EscrowDraft",
    "EscrowService",
    "MilestoneDraft",
    "SimulatedLedger",
    "get_escrow_service",
    "init_escrow_service",
]
