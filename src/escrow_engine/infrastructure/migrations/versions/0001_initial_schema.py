"""Initial escrow engine schema.

Revision ID: 0001
Revises:
Create Date: 2026-10-18

Baseline built from the ORM metadata: contracts, milestones, deposits,
disputes, evidence, admin actions, the audit log, settlement claims and
cancellation requests. Needs a live connection (no offline SQL for this one).
"""

from collections.abc import Sequence

from alembic import op

from escrow_engine.infrastructure.database.orm_models import Base

revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    Base.metadata.create_all(bind=op.get_bind())


def downgrade() -> None:
    Base.metadata.drop_all(bind=op.get_bind())
