"""Pydantic API schemas."""

from escrow_engine.schemas.dispute import (
    AdminActionResponse,
    DisputeDetailsResponse,
    DisputeResponse,
    EscrowDetailsResponse,
    EvidenceResponse,
    RaiseDisputeRequest,
    ResolveDisputeRequest,
    SubmitEvidenceRequest,
)
from escrow_engine.schemas.escrow import (
    ApproveMilestoneRequest,
    CancellationResponse,
    CommandResponse,
    CreateEscrowRequest,
    EscrowResponse,
    EscrowStatusResponse,
    FeeConfigurationResponse,
    HealthResponse,
    PartyActionRequest,
    RecordDepositRequest,
    RequestCancellationRequest,
    SubmitMilestoneWorkRequest,
    SweepReportResponse,
)

__all__ = [
    "AdminActionResponse",
    "ApproveMilestoneRequest",
    "CancellationResponse",
    "CommandResponse",
    "CreateEscrowRequest",
    "DisputeDetailsResponse",
    "DisputeResponse",
    "EscrowDetailsResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "EvidenceResponse",
    "FeeConfigurationResponse",
    "HealthResponse",
    "PartyActionRequest",
    "RaiseDisputeRequest",
    "RecordDepositRequest",
    "RequestCancellationRequest",
    "ResolveDisputeRequest",
    "SubmitEvidenceRequest",
    "SubmitMilestoneWorkRequest",
    "SweepReportResponse",
]
