"""Structured logging for the escrow engine using structlog.

JSON lines outside development, colored console output in development. Entries
carry the request_id bound by the API middleware plus the keyword context of
each dotted event (`settlement.claimed`, `deposit.recorded`, ...), so a single
command can be traced from the route through settlement and notification.

Amounts are Decimal and ids are UUID throughout the engine; both are rendered
as plain strings so `logger.info("x", amount=leg.amount)` stays exact in JSON.

Usage:
    from escrow_engine.logging_config import setup_logging, get_logger
    setup_logging(log_level="INFO", json_logs=True)
    logger = get_logger(__name__)
    logger.info("escrow.created", escrow_id=escrow.id, buyer_amount=escrow.buyer_amount)
"""

from __future__ import annotations

import logging
import sys
import uuid
from decimal import Decimal
from typing import Any

import structlog

SERVICE_NAME = "escrow-engine"

# Libraries that log every statement or request at INFO.
_QUIET_LOGGERS = (
    "uvicorn.access",
    "sqlalchemy.engine",
    "aiosqlite",
    "httpx",
    "httpcore",
    "mcp.server",
)


def render_domain_values(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Render Decimal amounts and UUID ids as plain strings."""
    for key, value in event_dict.items():
        if isinstance(value, (Decimal, uuid.UUID)):
            event_dict[key] = str(value)
    return event_dict


def _add_service(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def setup_logging(log_level: str = "INFO", json_logs: bool = False) -> None:
    """Route structlog and stdlib logging through one formatter on stdout.

    Args:
        log_level: Standard level name; unknown names fall back to INFO.
        json_logs: JSON lines when True, colored console otherwise.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        render_domain_values,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_logs:
        processors.append(_add_service)
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # Records from uvicorn, alembic and friends get the same treatment.
            foreign_pre_chain=processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Module logger; callers pass __name__."""
    return structlog.get_logger(name)
