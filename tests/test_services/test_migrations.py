"""Tests for the Alembic baseline migration."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

from escrow_engine.config import get_settings

ROOT = Path(__file__).resolve().parents[2]


@pytest.fixture
def alembic_config(tmp_path, monkeypatch):
    database = tmp_path / "migrated.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{database}")
    get_settings.cache_clear()
    yield Config(str(ROOT / "alembic.ini")), database
    get_settings.cache_clear()


def _tables(database: Path) -> set[str]:
    with sqlite3.connect(database) as conn:
        rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {name for (name,) in rows}


class TestBaselineMigration:
    def test_upgrade_creates_every_table(self, alembic_config) -> None:
        config, database = alembic_config

        command.upgrade(config, "head")

        assert {
            "escrow_contracts",
            "escrow_milestones",
            "escrow_deposits",
            "escrow_disputes",
            "escrow_evidence",
            "escrow_admin_actions",
            "escrow_actions",
            "settlement_claims",
            "cancellation_requests",
            "alembic_version",
        } <= _tables(database)

    def test_downgrade_drops_them(self, alembic_config) -> None:
        config, database = alembic_config
        command.upgrade(config, "head")

        command.downgrade(config, "base")

        assert "escrow_contracts" not in _tables(database)
