"""FastAPI middleware for request tracing, error handling, and CORS.

Middleware stack (applied bottom-up):
    1. RequestIDMiddleware — injects X-Request-ID into every request/response
    2. ErrorHandlerMiddleware — catches domain exceptions -> structured JSON errors
    3. CORSMiddleware — handles browser-based MCP clients (if any)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from escrow_engine.domain.exceptions import (
    CancellationNotFoundError,
    ConcurrentModificationError,
    DepositAmountMismatchError,
    DisputeNotFoundError,
    EscrowConfigurationError,
    EscrowError,
    EscrowNotFoundError,
    EscrowValidationError,
    FrozenByDisputeError,
    InsufficientJustificationError,
    InvalidTransitionError,
    MilestoneNotFoundError,
    PartialSwapFailureError,
    SettlementBlockedError,
    SettlementFailureError,
    SplitExceedsEscrowError,
    UnauthorizedPartyError,
)

if TYPE_CHECKING:
    from fastapi import FastAPI, Request, Response

logger = structlog.get_logger(__name__)

# First match wins, so subclasses come before their bases.
ERROR_STATUS: tuple[tuple[type[EscrowError], int], ...] = (
    (EscrowNotFoundError, 404),
    (MilestoneNotFoundError, 404),
    (DisputeNotFoundError, 404),
    (CancellationNotFoundError, 404),
    (InvalidTransitionError, 409),
    (ConcurrentModificationError, 409),
    (FrozenByDisputeError, 409),
    (SettlementBlockedError, 409),
    (InsufficientJustificationError, 422),
    (SplitExceedsEscrowError, 422),
    (EscrowValidationError, 422),
    (DepositAmountMismatchError, 422),
    (UnauthorizedPartyError, 403),
    (SettlementFailureError, 503),
    (PartialSwapFailureError, 500),
    (EscrowConfigurationError, 500),
)


def status_for(exc: EscrowError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


def error_body(exc: EscrowError) -> dict:
    body = {"error": exc.code, "message": exc.message}
    if isinstance(exc, EscrowValidationError):
        body["details"] = exc.errors
    return body


# ---------------------------------------------------------------------------
# 1. Request ID Middleware
# ---------------------------------------------------------------------------
class RequestIDMiddleware(BaseHTTPMiddleware):
    """Inject a unique X-Request-ID into every request for log correlation."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        # Use client-provided ID or generate one
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        # Bind to structlog context for all log entries in this request
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


# ---------------------------------------------------------------------------
# 2. Error Handler Middleware
# ---------------------------------------------------------------------------
class ErrorHandlerMiddleware(BaseHTTPMiddleware):
    """Catch domain exceptions and return structured JSON error responses."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        try:
            return await call_next(request)
        except EscrowError as exc:
            status_code = status_for(exc)
            if status_code >= 500:
                logger.error("escrow.error", code=exc.code, error=exc.message)
            else:
                logger.warning("escrow.rejected", code=exc.code, error=exc.message)
            return JSONResponse(status_code=status_code, content=error_body(exc))
        except Exception as exc:
            logger.exception("unhandled.error", error=str(exc))
            return JSONResponse(
                status_code=500,
                content={
                    "error": "INTERNAL_ERROR",
                    "message": "An unexpected error occurred",
                },
            )


# ---------------------------------------------------------------------------
# Setup function
# ---------------------------------------------------------------------------
def setup_middleware(app: FastAPI) -> None:
    """Register all middleware on the FastAPI application.

    Order matters — middleware is applied bottom-up, so the last added
    middleware runs first.
    """
    # CORS (runs first)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # Tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Error handling (runs second)
    app.add_middleware(ErrorHandlerMiddleware)

    # Request ID (runs last = outermost)
    app.add_middleware(RequestIDMiddleware)
