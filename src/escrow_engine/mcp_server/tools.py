"""MCP Tool definitions for the escrow engine.

These tools expose the escrow engine via the Model Context Protocol,
allowing AI agents to discover and call them programmatically.

Tools:
    - create_escrow: Create a mutual confirmation, milestone or atomic swap escrow
    - record_deposit: Record a deposit observed on the settlement network
    - confirm_completion: Confirm a mutual confirmation escrow
    - submit_milestone_work / approve_milestone: Milestone workflow
    - raise_dispute / submit_evidence / resolve_dispute: Dispute workflow
    - request_cancellation / approve_cancellation: Mutual cancellation
    - cancel_unfunded: Buyer cancels before the escrow is fully funded
    - extend_expiry: Admin pushes an escrow deadline out
    - check_status / get_escrow_details: Read projections

The MCP server is mounted into FastAPI at /mcp via app.mount().
Tools share the EscrowService singleton built in the app lifespan
(no FastAPI Depends available here).
"""

from __future__ import annotations

import uuid
from decimal import Decimal

from mcp.server.fastmcp import FastMCP

from escrow_engine.domain.enums import (
    DisputePriority,
    EscrowType,
    EvidenceType,
    ResolutionAction,
)
from escrow_engine.domain.exceptions import EscrowError
from escrow_engine.logging_config import get_logger
from escrow_engine.schemas.dispute import DisputeDetailsResponse, EscrowDetailsResponse
from escrow_engine.schemas.escrow import CancellationResponse, CommandResponse, EscrowResponse
from escrow_engine.services.escrow_service import get_escrow_service
from escrow_engine.services.registry import EscrowDraft, MilestoneDraft

logger = get_logger(__name__)

# Initialize the MCP server
# This will be mounted into the FastAPI app in main.py
mcp = FastMCP(
    "Escrow Engine",
    json_response=True,
)


def _error(tool: str, exc: Exception) -> dict:
    if isinstance(exc, EscrowError):
        logger.warning(f"mcp.{tool}.rejected", code=exc.code, error=exc.message)
        return {"error": exc.code, "message": exc.message}
    if isinstance(exc, ValueError | ArithmeticError):
        # Malformed UUID, decimal or enum argument.
        logger.warning(f"mcp.{tool}.invalid_argument", error=str(exc))
        return {"error": "VALIDATION_ERROR", "message": str(exc)}
    logger.exception(f"mcp.{tool}.error")
    return {"error": "INTERNAL_ERROR", "message": str(exc)}


def _command(result, message: str) -> dict:
    payload = CommandResponse.from_result(result).model_dump(mode="json")
    payload["message"] = message
    return payload


@mcp.tool()
async def create_escrow(
    escrow_type: str,
    buyer_wallet: str,
    seller_wallet: str,
    token: str,
    buyer_amount: str,
    seller_amount: str = "",
    seller_token: str = "",
    milestone_descriptions: list[str] | None = None,
    milestone_percentages: list[str] | None = None,
    timeout_hours: int = 0,
    description: str = "",
    idempotency_key: str = "",
) -> dict:
    """Create a new escrow contract between a buyer and a seller.

    Args:
        escrow_type: One of 'mutual_confirmation', 'milestone' or 'atomic_swap'.
        buyer_wallet: Wallet address of the buyer.
        seller_wallet: Wallet address of the seller.
        token: Token of the buyer's deposit (e.g. 'USDC').
        buyer_amount: Buyer payment, or the first swap leg, as a decimal string.
        seller_amount: Seller security deposit, or the second swap leg.
        seller_token: Token of the second swap leg (atomic swaps only).
        milestone_descriptions: One description per milestone (milestone escrows).
        milestone_percentages: Percentages aligned with the descriptions; must sum to 100.
        timeout_hours: Custom expiry in hours; 0 uses the default for the type.
        description: Free-text description of the deal.
        idempotency_key: Repeat calls with the same key return the same escrow.

    Returns:
        The created escrow, including the escrow_wallet to deposit into.
    """
    try:
        descriptions = milestone_descriptions or []
        percentages = milestone_percentages or []
        if len(descriptions) != len(percentages):
            return {
                "error": "VALIDATION_ERROR",
                "message": "milestone_descriptions and milestone_percentages must align",
            }
        draft = EscrowDraft(
            escrow_type=EscrowType(escrow_type),
            buyer_wallet=buyer_wallet,
            seller_wallet=seller_wallet,
            token=token,
            buyer_amount=Decimal(buyer_amount),
            seller_amount=Decimal(seller_amount) if seller_amount else None,
            seller_token=seller_token or None,
            milestones=tuple(
                MilestoneDraft(d, Decimal(p), order)
                for order, (d, p) in enumerate(zip(descriptions, percentages, strict=True), 1)
            ),
            timeout_hours=timeout_hours or None,
            description=description or None,
            idempotency_key=idempotency_key or None,
        )
        escrow = await get_escrow_service().create_escrow(draft)
        payload = EscrowResponse.model_validate(escrow).model_dump(mode="json")
        payload["message"] = (
            f"Escrow created. Next step: deposit into {escrow.escrow_wallet} "
            "and record the deposit."
        )
        return payload
    except Exception as exc:
        return _error("create_escrow", exc)


@mcp.tool()
async def record_deposit(
    escrow_id: str,
    depositor_wallet: str,
    amount: str,
    tx_reference: str,
    token: str = "",
) -> dict:
    """Record a deposit that arrived in the escrow wallet.

    Args:
        escrow_id: UUID of the escrow.
        depositor_wallet: Wallet that made the deposit (buyer or seller).
        amount: Deposited amount as a decimal string.
        tx_reference: Settlement reference of the deposit. Repeats are ignored.
        token: Deposited token; defaults to the token expected for the depositor.

    Returns:
        Updated escrow. Once every required deposit is in, the escrow is funded.
    """
    try:
        result = await get_escrow_service().record_deposit(
            uuid.UUID(escrow_id), depositor_wallet, Decimal(amount), tx_reference, token or None
        )
        return _command(result, f"Deposit recorded. Escrow is now {result.escrow.status}.")
    except Exception as exc:
        return _error("record_deposit", exc)


@mcp.tool()
async def confirm_completion(escrow_id: str, wallet: str) -> dict:
    """Confirm that a mutual confirmation escrow is complete.

    Funds are released once both buyer and seller have confirmed.

    Args:
        escrow_id: UUID of the escrow.
        wallet: Your wallet address (buyer or seller).
    """
    try:
        result = await get_escrow_service().confirm_completion(uuid.UUID(escrow_id), wallet)
        return _command(result, f"Confirmation recorded. Escrow is now {result.escrow.status}.")
    except Exception as exc:
        return _error("confirm_completion", exc)


@mcp.tool()
async def submit_milestone_work(
    escrow_id: str,
    milestone_id: str,
    seller_wallet: str,
    notes: str = "",
    evidence_urls: list[str] | None = None,
) -> dict:
    """Submit work for a milestone as the seller.

    Args:
        escrow_id: UUID of the milestone escrow.
        milestone_id: UUID of the milestone.
        seller_wallet: Your wallet address.
        notes: Optional notes for the buyer.
        evidence_urls: Optional links to the delivered work.
    """
    try:
        result = await get_escrow_service().submit_milestone_work(
            uuid.UUID(escrow_id),
            uuid.UUID(milestone_id),
            seller_wallet,
            notes or None,
            evidence_urls,
        )
        return _command(result, "Work submitted. Waiting for buyer approval.")
    except Exception as exc:
        return _error("submit_milestone_work", exc)


@mcp.tool()
async def approve_milestone(
    escrow_id: str,
    milestone_id: str,
    buyer_wallet: str,
    notes: str = "",
) -> dict:
    """Approve submitted milestone work as the buyer, releasing its payment.

    Args:
        escrow_id: UUID of the milestone escrow.
        milestone_id: UUID of the milestone.
        buyer_wallet: Your wallet address.
        notes: Optional approval notes.
    """
    try:
        result = await get_escrow_service().approve_milestone(
            uuid.UUID(escrow_id), uuid.UUID(milestone_id), buyer_wallet, notes or None
        )
        return _command(result, "Milestone approved and paid.")
    except Exception as exc:
        return _error("approve_milestone", exc)


@mcp.tool()
async def raise_dispute(
    escrow_id: str,
    raised_by: str,
    reason: str,
    description: str,
    milestone_id: str = "",
    priority: str = "normal",
) -> dict:
    """Raise a dispute, freezing the escrow (or one milestone) until an admin resolves it.

    Args:
        escrow_id: UUID of the escrow.
        raised_by: Your wallet address (buyer or seller).
        reason: Short reason code, e.g. 'not_delivered'.
        description: Detailed explanation of the problem.
        milestone_id: Scope the dispute to one milestone (milestone escrows only).
        priority: One of 'low', 'normal', 'high', 'urgent'.
    """
    try:
        result = await get_escrow_service().raise_dispute(
            uuid.UUID(escrow_id),
            raised_by,
            reason,
            description,
            uuid.UUID(milestone_id) if milestone_id else None,
            DisputePriority(priority),
        )
        return _command(result, "Dispute raised. Submit evidence while it is reviewed.")
    except Exception as exc:
        return _error("raise_dispute", exc)


@mcp.tool()
async def submit_evidence(
    dispute_id: str,
    submitted_by: str,
    content: str = "",
    file_url: str = "",
    evidence_type: str = "text",
) -> dict:
    """Attach evidence to an open dispute.

    Args:
        dispute_id: UUID of the dispute.
        submitted_by: Your wallet address.
        content: Text of the evidence.
        file_url: Link to a file, screenshot or document.
        evidence_type: One of 'text', 'image', 'document', 'link', 'screenshot'.
    """
    try:
        row = await get_escrow_service().submit_evidence(
            uuid.UUID(dispute_id),
            submitted_by,
            EvidenceType(evidence_type),
            content or None,
            file_url or None,
        )
        return {"evidence_id": str(row.id), "dispute_id": dispute_id, "message": "Evidence added."}
    except Exception as exc:
        return _error("submit_evidence", exc)


@mcp.tool()
async def resolve_dispute(
    dispute_id: str,
    admin_wallet: str,
    action: str,
    notes: str,
    amount_to_buyer: str = "",
    amount_to_seller: str = "",
) -> dict:
    """Resolve a dispute as an admin.

    Args:
        dispute_id: UUID of the dispute.
        admin_wallet: Your admin wallet address.
        action: One of 'release_to_seller', 'refund_to_buyer', 'partial_split', 'other'.
        notes: Justification for the decision.
        amount_to_buyer: Buyer share for 'partial_split'.
        amount_to_seller: Seller share for 'partial_split'.
    """
    try:
        result = await get_escrow_service().resolve_dispute(
            uuid.UUID(dispute_id),
            admin_wallet,
            ResolutionAction(action),
            notes,
            Decimal(amount_to_buyer) if amount_to_buyer else None,
            Decimal(amount_to_seller) if amount_to_seller else None,
        )
        return _command(result, f"Dispute handled. Escrow is now {result.escrow.status}.")
    except Exception as exc:
        return _error("resolve_dispute", exc)


@mcp.tool()
async def request_cancellation(escrow_id: str, requested_by: str, reason: str) -> dict:
    """Ask the counterparty to cancel the escrow by mutual agreement.

    Args:
        escrow_id: UUID of the escrow.
        requested_by: Your wallet address.
        reason: Why the escrow should be cancelled.
    """
    try:
        row = await get_escrow_service().request_cancellation(
            uuid.UUID(escrow_id), requested_by, reason
        )
        payload = CancellationResponse.model_validate(row).model_dump(mode="json")
        payload["message"] = "Cancellation requested. The other party must approve it."
        return payload
    except Exception as exc:
        return _error("request_cancellation", exc)


@mcp.tool()
async def approve_cancellation(request_id: str, wallet: str) -> dict:
    """Approve a pending cancellation request from the other party.

    Args:
        request_id: UUID of the cancellation request.
        wallet: Your wallet address.
    """
    try:
        result = await get_escrow_service().approve_cancellation(uuid.UUID(request_id), wallet)
        return _command(result, "Escrow cancelled and deposits refunded.")
    except Exception as exc:
        return _error("approve_cancellation", exc)


@mcp.tool()
async def cancel_unfunded(escrow_id: str, buyer_wallet: str, reason: str = "") -> dict:
    """Cancel an escrow that is not fully funded yet. Buyer only; deposits are refunded in full.

    Args:
        escrow_id: UUID of the escrow.
        buyer_wallet: Your wallet address (the buyer who created the escrow).
        reason: Optional note for the audit trail.
    """
    try:
        result = await get_escrow_service().cancel_unfunded(
            uuid.UUID(escrow_id), buyer_wallet, reason or None
        )
        return _command(result, "Escrow cancelled; any deposits were refunded without a fee.")
    except Exception as exc:
        return _error("cancel_unfunded", exc)


@mcp.tool()
async def extend_expiry(escrow_id: str, admin_wallet: str, additional_hours: int) -> dict:
    """Push the deadline of an escrow that has not expired yet. Admin only.

    Args:
        escrow_id: UUID of the escrow.
        admin_wallet: Your admin wallet address.
        additional_hours: Hours to add to the current deadline.
    """
    try:
        result = await get_escrow_service().extend_expiry(
            uuid.UUID(escrow_id), admin_wallet, additional_hours
        )
        return _command(result, f"Deadline moved to {result.escrow.expires_at}.")
    except Exception as exc:
        return _error("extend_expiry", exc)


@mcp.tool()
async def check_status(escrow_id: str) -> dict:
    """Check the current status of an escrow and the events allowed next.

    Args:
        escrow_id: UUID of the escrow.
    """
    try:
        svc = get_escrow_service()
        escrow = await svc.get_escrow(uuid.UUID(escrow_id))
        return {
            "escrow_id": str(escrow.id),
            "escrow_type": escrow.escrow_type.value,
            "status": escrow.status.value,
            "buyer_deposited": escrow.buyer_deposited,
            "seller_deposited": escrow.seller_deposited,
            "allowed_events": svc.allowed_events(escrow),
        }
    except Exception as exc:
        return _error("check_status", exc)


@mcp.tool()
async def get_escrow_details(escrow_id: str) -> dict:
    """Full escrow projection: actions, deposits, disputes and settlements.

    Args:
        escrow_id: UUID of the escrow.
    """
    try:
        details = await get_escrow_service().get_escrow_details(uuid.UUID(escrow_id))
        return EscrowDetailsResponse.model_validate(details).model_dump(mode="json")
    except Exception as exc:
        return _error("get_escrow_details", exc)


@mcp.tool()
async def get_dispute_details(dispute_id: str) -> dict:
    """Dispute with its evidence and admin actions.

    Args:
        dispute_id: UUID of the dispute.
    """
    try:
        details = await get_escrow_service().get_dispute_details(uuid.UUID(dispute_id))
        return DisputeDetailsResponse.model_validate(details).model_dump(mode="json")
    except Exception as exc:
        return _error("get_dispute_details", exc)
