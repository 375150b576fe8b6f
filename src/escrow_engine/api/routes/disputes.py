"""Dispute and admin resolution REST API routes.

Routes:
    GET    /api/v1/disputes                 — Admin queue of open disputes
    GET    /api/v1/disputes/{id}            — Dispute with evidence and admin actions
    POST   /api/v1/disputes/{id}/evidence   — Submit evidence
    POST   /api/v1/disputes/{id}/resolve    — Admin resolution (release/refund/split/other)
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query

from escrow_engine.api.deps import get_service
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.dispute import (
    DisputeDetailsResponse,
    DisputeResponse,
    EvidenceResponse,
    ResolveDisputeRequest,
    SubmitEvidenceRequest,
)
from escrow_engine.schemas.escrow import CommandResponse
from escrow_engine.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/disputes", tags=["Disputes"])
logger = get_logger(__name__)


@router.get(
    "",
    response_model=list[DisputeResponse],
    summary="Open disputes by priority",
)
async def list_open_disputes(
    limit: int = Query(default=100, ge=1, le=500),
    svc: EscrowService = Depends(get_service),
) -> list[DisputeResponse]:
    disputes = await svc.list_open_disputes(limit)
    return [DisputeResponse.model_validate(d) for d in disputes]


@router.get(
    "/{dispute_id}",
    response_model=DisputeDetailsResponse,
    summary="Get dispute details",
)
async def get_dispute(
    dispute_id: uuid.UUID,
    svc: EscrowService = Depends(get_service),
) -> DisputeDetailsResponse:
    details = await svc.get_dispute_details(dispute_id)
    return DisputeDetailsResponse.model_validate(details)


@router.post(
    "/{dispute_id}/evidence",
    response_model=EvidenceResponse,
    status_code=201,
    summary="Submit evidence for an open dispute",
)
async def submit_evidence(
    dispute_id: uuid.UUID,
    request: SubmitEvidenceRequest,
    svc: EscrowService = Depends(get_service),
) -> EvidenceResponse:
    row = await svc.submit_evidence(
        dispute_id,
        request.submitted_by,
        request.evidence_type,
        content=request.content,
        file_url=request.file_url,
    )
    return EvidenceResponse.model_validate(row)


@router.post(
    "/{dispute_id}/resolve",
    response_model=CommandResponse,
    summary="Resolve a dispute",
)
async def resolve_dispute(
    dispute_id: uuid.UUID,
    request: ResolveDisputeRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    """Settle the disputed funds per the admin decision and record the AdminAction."""
    result = await svc.resolve_dispute(
        dispute_id,
        request.admin_wallet,
        request.action,
        request.notes,
        amount_to_buyer=request.amount_to_buyer,
        amount_to_seller=request.amount_to_seller,
    )
    logger.info(
        "api.dispute_resolved",
        dispute_id=str(dispute_id),
        action=request.action.value,
        status=result.escrow.status.value,
    )
    return CommandResponse.from_result(result)
