"""Database infrastructure — engine, ORM models, and repositories."""

from escrow_engine.infrastructure.database.engine import (
    close_db,
    create_session_factory,
    create_tables,
    get_async_session,
    get_session_factory,
    init_db,
)
from escrow_engine.infrastructure.database.orm_models import (
    AdminActionRow,
    Base,
    CancellationRequestRow,
    EscrowActionRow,
    EscrowContractRow,
    EscrowDepositRow,
    EscrowDisputeRow,
    EscrowEvidenceRow,
    EscrowMilestoneRow,
    SettlementClaimRow,
)
from escrow_engine.infrastructure.database.repositories import (
    ActionRepository,
    AdminActionRepository,
    CancellationRepository,
    DepositRepository,
    DisputeRepository,
    EscrowRepository,
    EvidenceRepository,
    MilestoneRepository,
    SettlementClaimRepository,
)

__all__ = [
    "Base",
    "AdminActionRow",
    "CancellationRequestRow",
    "EscrowActionRow",
    "EscrowContractRow",
    "EscrowDepositRow",
    "EscrowDisputeRow",
    "EscrowEvidenceRow",
    "EscrowMilestoneRow",
    "SettlementClaimRow",
    "ActionRepository",
    "AdminActionRepository",
    "CancellationRepository",
    "DepositRepository",
    "DisputeRepository",
    "EscrowRepository",
    "EvidenceRepository",
    "MilestoneRepository",
    "SettlementClaimRepository",
    "close_db",
    "create_session_factory",
    "create_tables",
    "get_async_session",
    "get_session_factory",
    "init_db",
]
