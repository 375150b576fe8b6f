"""Escrow contract REST API routes.

These endpoints provide the HTTP interface for creating contracts,
recording deposits, confirming, working through milestones, cancelling
and checking status. The MCP tools in mcp_server/tools.py call the same
service layer, ensuring consistency.

Routes:
    POST   /api/v1/escrow                                      — Create an escrow
    GET    /api/v1/escrow?wallet=                              — Escrows of a wallet
    GET    /api/v1/escrow/fees                                 — Fee configuration summary
    POST   /api/v1/escrow/sweep                                — Run one expiry sweep (admin)
    GET    /api/v1/escrow/{id}                                 — Escrow projection
    GET    /api/v1/escrow/{id}/details                         — Projection + history
    GET    /api/v1/escrow/{id}/status                          — Lightweight status check
    POST   /api/v1/escrow/{id}/deposits                        — Record an observed deposit
    POST   /api/v1/escrow/{id}/confirm                         — Confirm completion
    POST   /api/v1/escrow/{id}/milestones/{mid}/submit         — Seller submits work
    POST   /api/v1/escrow/{id}/milestones/{mid}/approve        — Buyer approves a milestone
    POST   /api/v1/escrow/{id}/swap                            — Re-drive a stalled swap
    POST   /api/v1/escrow/{id}/disputes                        — Raise a dispute
    POST   /api/v1/escrow/{id}/cancellation                    — Request mutual cancellation
    POST   /api/v1/escrow/{id}/cancel-unfunded                 — Buyer cancels before funding
    POST   /api/v1/escrow/{id}/extend-expiry                   — Extend the deadline (admin)
    POST   /api/v1/escrow/cancellations/{rid}/approve          — Approve a cancellation
    POST   /api/v1/escrow/cancellations/{rid}/reject           — Reject a cancellation
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends, Query

from escrow_engine.api.deps import get_service
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.dispute import EscrowDetailsResponse, RaiseDisputeRequest
from escrow_engine.schemas.escrow import (
    ApproveMilestoneRequest,
    CancellationResponse,
    CancelUnfundedRequest,
    CommandResponse,
    CreateEscrowRequest,
    EscrowResponse,
    EscrowStatusResponse,
    ExtendExpiryRequest,
    FeeConfigurationResponse,
    PartyActionRequest,
    RecordDepositRequest,
    RequestCancellationRequest,
    SubmitMilestoneWorkRequest,
    SweepReportResponse,
)
from escrow_engine.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create / list
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowResponse,
    status_code=201,
    summary="Create a new escrow contract",
)
async def create_escrow(
    request: CreateEscrowRequest,
    svc: EscrowService = Depends(get_service),
) -> EscrowResponse:
    """Create a new escrow contract in CREATED state."""
    escrow = await svc.create_escrow(request.to_draft())
    return EscrowResponse.model_validate(escrow)


@router.get(
    "",
    response_model=list[EscrowResponse],
    summary="List escrows where the wallet is buyer or seller",
)
async def list_escrows(
    wallet: str = Query(..., min_length=1, max_length=128),
    svc: EscrowService = Depends(get_service),
) -> list[EscrowResponse]:
    escrows = await svc.list_escrows(wallet)
    return [EscrowResponse.model_validate(e) for e in escrows]


# ---------------------------------------------------------------------------
# Operator endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/fees",
    response_model=FeeConfigurationResponse,
    summary="Fee configuration summary",
)
async def fee_configuration(
    sample_amount: Decimal | None = Query(default=None, gt=0),
    svc: EscrowService = Depends(get_service),
) -> FeeConfigurationResponse:
    return FeeConfigurationResponse(**svc.fee_configuration(sample_amount))


@router.post(
    "/sweep",
    response_model=SweepReportResponse,
    summary="Run one timeout sweep now",
)
async def sweep_expired(
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_service),
) -> SweepReportResponse:
    """Warn about deadlines, then cancel, refund or escalate expired contracts. Admin only."""
    svc.ensure_admin(request.actor_wallet, "run the timeout sweeper")
    report = await svc.sweep_expired()
    return SweepReportResponse(**report.to_dict())


# ---------------------------------------------------------------------------
# Cancellation decisions
# ---------------------------------------------------------------------------


@router.post(
    "/cancellations/{request_id}/approve",
    response_model=CommandResponse,
    summary="Approve a mutual cancellation",
)
async def approve_cancellation(
    request_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    """The other party approves; held deposits are refunded minus the cancellation fee."""
    result = await svc.approve_cancellation(request_id, request.actor_wallet)
    return CommandResponse.from_result(result)


@router.post(
    "/cancellations/{request_id}/reject",
    response_model=CancellationResponse,
    summary="Reject a mutual cancellation",
)
async def reject_cancellation(
    request_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_service),
) -> CancellationResponse:
    row = await svc.reject_cancellation(request_id, request.actor_wallet)
    return CancellationResponse.model_validate(row)


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}",
    response_model=EscrowResponse,
    summary="Get escrow",
)
async def get_escrow(
    escrow_id: uuid.UUID,
    svc: EscrowService = Depends(get_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.get_escrow(escrow_id))


@router.get(
    "/{escrow_id}/details",
    response_model=EscrowDetailsResponse,
    summary="Get escrow with its full history",
)
async def get_escrow_details(
    escrow_id: uuid.UUID,
    svc: EscrowService = Depends(get_service),
) -> EscrowDetailsResponse:
    """Actions, deposits, disputes, settlements and admin actions for one escrow."""
    details = await svc.get_escrow_details(escrow_id)
    return EscrowDetailsResponse.model_validate(details)


@router.get(
    "/{escrow_id}/status",
    response_model=EscrowStatusResponse,
    summary="Get lightweight status check",
)
async def get_status(
    escrow_id: uuid.UUID,
    svc: EscrowService = Depends(get_service),
) -> EscrowStatusResponse:
    """Return the current status and allowed next events."""
    escrow = await svc.get_escrow(escrow_id)
    return EscrowStatusResponse(
        escrow_id=escrow.id,
        escrow_type=escrow.escrow_type,
        status=escrow.status,
        version=escrow.version,
        allowed_events=svc.allowed_events(escrow),
    )


# ---------------------------------------------------------------------------
# Lifecycle commands
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/deposits",
    response_model=CommandResponse,
    summary="Record an observed deposit",
)
async def record_deposit(
    escrow_id: uuid.UUID,
    request: RecordDepositRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    """Idempotent per tx_reference. The second deposit funds the escrow."""
    result = await svc.record_deposit(
        escrow_id,
        depositor_wallet=request.depositor_wallet,
        amount=request.amount,
        tx_reference=request.tx_reference,
        token=request.token,
    )
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/confirm",
    response_model=CommandResponse,
    summary="Confirm completion (mutual confirmation escrows)",
)
async def confirm_completion(
    escrow_id: uuid.UUID,
    request: PartyActionRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    result = await svc.confirm_completion(escrow_id, request.actor_wallet)
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/submit",
    response_model=CommandResponse,
    summary="Submit milestone work",
)
async def submit_milestone_work(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: SubmitMilestoneWorkRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    result = await svc.submit_milestone_work(
        escrow_id,
        milestone_id,
        request.seller_wallet,
        notes=request.notes,
        evidence_urls=request.evidence_urls,
    )
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/milestones/{milestone_id}/approve",
    response_model=CommandResponse,
    summary="Approve a milestone and release its payment",
)
async def approve_milestone(
    escrow_id: uuid.UUID,
    milestone_id: uuid.UUID,
    request: ApproveMilestoneRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    result = await svc.approve_milestone(
        escrow_id, milestone_id, request.buyer_wallet, notes=request.notes
    )
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/swap",
    response_model=CommandResponse,
    summary="Retry a fully funded swap whose settlement failed",
)
async def execute_swap(
    escrow_id: uuid.UUID,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    return CommandResponse.from_result(await svc.execute_swap(escrow_id))


@router.post(
    "/{escrow_id}/disputes",
    response_model=CommandResponse,
    status_code=201,
    summary="Raise a dispute",
)
async def raise_dispute(
    escrow_id: uuid.UUID,
    request: RaiseDisputeRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    """Freeze the escrow (or one milestone) pending admin resolution."""
    result = await svc.raise_dispute(
        escrow_id,
        request.raised_by,
        reason=request.reason,
        description=request.description,
        milestone_id=request.milestone_id,
        priority=request.priority,
    )
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/cancellation",
    response_model=CancellationResponse,
    status_code=201,
    summary="Request mutual cancellation",
)
async def request_cancellation(
    escrow_id: uuid.UUID,
    request: RequestCancellationRequest,
    svc: EscrowService = Depends(get_service),
) -> CancellationResponse:
    row = await svc.request_cancellation(escrow_id, request.requested_by, request.reason)
    return CancellationResponse.model_validate(row)


@router.post(
    "/{escrow_id}/cancel-unfunded",
    response_model=CommandResponse,
    summary="Buyer cancels an escrow that is not fully funded",
)
async def cancel_unfunded(
    escrow_id: uuid.UUID,
    request: CancelUnfundedRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    """Deposits already made are refunded without a cancellation fee."""
    result = await svc.cancel_unfunded(escrow_id, request.buyer_wallet, request.reason)
    return CommandResponse.from_result(result)


@router.post(
    "/{escrow_id}/extend-expiry",
    response_model=CommandResponse,
    summary="Push an escrow deadline out (admin)",
)
async def extend_expiry(
    escrow_id: uuid.UUID,
    request: ExtendExpiryRequest,
    svc: EscrowService = Depends(get_service),
) -> CommandResponse:
    result = await svc.extend_expiry(escrow_id, request.admin_wallet, request.additional_hours)
    return CommandResponse.from_result(result)
