"""FastAPI application entry point for the escrow engine.

Lifecycle:
    1. Startup: Initialize logging, database, Redis (or the logging fallback),
       build the EscrowService and start the timeout sweeper loop.
    2. Running: Serve REST API + MCP tools on a single Uvicorn process.
    3. Shutdown: Stop the sweeper, close database and Redis connections gracefully.

The MCP server is mounted at /mcp so AI agents can discover tools
alongside the REST API at /api/v1/*.

Run with:
    uv run uvicorn escrow_engine.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from escrow_engine.config import get_settings
from escrow_engine.domain.fees import validate_fee_configuration
from escrow_engine.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    errors, warnings = validate_fee_configuration(
        settings.platform_fee_percentage, settings.treasury_wallet
    )
    for warning in warnings:
        logger.warning("fees.warning", warning=warning)
    for error in errors:
        # Fee-paying settlements fail until this is fixed; refunds still work.
        logger.error("fees.misconfigured", error=error)

    # 2. Initialize database
    from escrow_engine.infrastructure.database.engine import close_db, init_db

    await init_db()

    # 3. Initialize Redis, falling back to logged notifications
    from escrow_engine.infrastructure.redis_client import (
        LoggingNotificationDispatcher,
        RedisNotificationDispatcher,
        close_redis,
        init_redis,
    )

    try:
        redis = await init_redis()
        dispatcher = RedisNotificationDispatcher(redis, settings.notification_queue_key)
    except Exception as exc:
        logger.warning("app.redis_unavailable", error=str(exc))
        dispatcher = LoggingNotificationDispatcher()

    # 4. Build the service shared by REST routes and MCP tools
    from escrow_engine.services.escrow_service import close_escrow_service, init_escrow_service

    service = init_escrow_service(dispatcher, settings)

    # 5. Timeout sweeper
    sweeper_task: asyncio.Task | None = None
    if settings.sweeper_enabled:
        sweeper_task = asyncio.create_task(service.sweeper.run_forever(), name="timeout-sweeper")

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    if sweeper_task is not None:
        sweeper_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweeper_task
    close_escrow_service()
    await close_db()
    await close_redis()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Escrow Engine",
        description=(
            "Escrow contracts between two parties: mutual confirmation, "
            "milestone and atomic swap, with disputes and admin resolution."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from escrow_engine.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from escrow_engine.api.routes.disputes import router as disputes_router
    from escrow_engine.api.routes.escrow import router as escrow_router
    from escrow_engine.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(escrow_router)
    app.include_router(disputes_router)

    # --- MCP Server (mounted as sub-application) ---
    from escrow_engine.mcp_server.tools import mcp

    mcp_app = mcp.sse_app()
    app.mount("/mcp", mcp_app)

    return app


# The app instance used by Uvicorn
app = create_app()
