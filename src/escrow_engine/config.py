"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. All settings are validated
at startup — if a setting is malformed, the app fails fast with a clear
error message.

Usage:
    from escrow_engine.config import get_settings
    settings = get_settings()
    print(settings.platform_fee_percentage)
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the escrow engine."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000

    # --- Database (PostgreSQL) ---
    database_url: str = (
        "postgresql+asyncpg://escrow:escrow_dev"
        "@localhost:5432/escrow_engine"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis (notification queue) ---
    redis_url: str = "redis://localhost:6379/0"
    notification_queue_key: str = "escrow:notifications"

    # --- Fees ---
    platform_fee_percentage: Decimal = Field(default=Decimal("3"), ge=0, le=100)
    cancellation_fee_percentage: Decimal = Field(default=Decimal("1"), ge=0, le=100)
    treasury_wallet: str = ""

    # --- Admin ---
    # Comma-separated list. Empty accepts any caller as admin (development only).
    admin_wallets: str = ""

    # --- Timeouts ---
    timeout_hours_mutual_confirmation: int = 72
    timeout_hours_atomic_swap: int = 24
    max_timeout_hours: int = 8760  # 1 year
    expiry_warning_hours: int = Field(default=24, ge=0)

    # --- Settlement ---
    swap_leg_retry_attempts: int = Field(default=3, ge=1, le=10)
    swap_leg_retry_wait_seconds: float = 0.5
    # An in_flight claim untouched for this long is taken over by the next caller.
    settlement_claim_lease_seconds: int = Field(default=300, ge=1)

    # --- Deposits ---
    deposit_amount_tolerance: Decimal = Decimal("0.000001")

    # --- Sweeper ---
    sweeper_enabled: bool = True
    sweeper_interval_seconds: int = 60
    sweeper_batch_size: int = 100

    # --- Validation ---
    min_dispute_description_length: int = 20
    min_resolution_notes_length: int = 20
    min_cancellation_reason_length: int = 10

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def admin_wallet_list(self) -> list[str]:
        """Parse comma-separated admin wallets into a list."""
        if not self.admin_wallets:
            return []
        return [w.strip() for w in self.admin_wallets.split(",") if w.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
