"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the escrow
service and configuration. Tests swap the service through
app.dependency_overrides[get_service].
"""

from __future__ import annotations

from escrow_engine.config import Settings, get_settings
from escrow_engine.services.escrow_service import EscrowService, get_escrow_service


def get_service() -> EscrowService:
    """Provide the EscrowService built during application startup."""
    return get_escrow_service()


def get_app_settings() -> Settings:
    """Provide the application settings."""
    return get_settings()
