"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility).

Mutable rows are only changed through compare_and_set methods: a single
UPDATE guarded by the version (and optionally status) the caller read. A False
return means another writer got there first; the caller reloads.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, select, update

from escrow_engine.domain.enums import DisputePriority, EscrowStatus
from escrow_engine.infrastructure.database.orm_models import (
    AdminActionRow,
    CancellationRequestRow,
    EscrowActionRow,
    EscrowContractRow,
    EscrowDepositRow,
    EscrowDisputeRow,
    EscrowEvidenceRow,
    EscrowMilestoneRow,
    SettlementClaimRow,
)

if TYPE_CHECKING:
    import uuid
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_engine.domain.enums import ActionType


def _now() -> datetime:
    return datetime.now(UTC)


class EscrowRepository:
    """Data access for escrow contracts."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, contract: EscrowContractRow) -> EscrowContractRow:
        """Insert a new escrow contract (and its milestones, if any)."""
        self._session.add(contract)
        await self._session.flush()
        return contract

    async def get_by_id(self, escrow_id: uuid.UUID) -> EscrowContractRow | None:
        result = await self._session.execute(
            select(EscrowContractRow)
            .where(EscrowContractRow.id == escrow_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_idempotency_key(self, key: str) -> EscrowContractRow | None:
        result = await self._session.execute(
            select(EscrowContractRow).where(EscrowContractRow.idempotency_key == key)
        )
        return result.scalar_one_or_none()

    async def list_by_wallet(self, wallet: str) -> list[EscrowContractRow]:
        """Fetch every contract where the wallet is buyer or seller, newest first."""
        result = await self._session.execute(
            select(EscrowContractRow)
            .where(
                (EscrowContractRow.buyer_wallet == wallet)
                | (EscrowContractRow.seller_wallet == wallet)
            )
            .order_by(EscrowContractRow.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_expired(
        self,
        now: datetime,
        escrow_types: Iterable[str],
        limit: int,
    ) -> list[EscrowContractRow]:
        """Non-terminal, non-disputed contracts whose expires_at has passed."""
        excluded = [
            EscrowStatus.COMPLETED.value,
            EscrowStatus.CANCELLED.value,
            EscrowStatus.REFUNDED.value,
            EscrowStatus.DISPUTED.value,
        ]
        result = await self._session.execute(
            select(EscrowContractRow)
            .where(
                EscrowContractRow.escrow_type.in_(list(escrow_types)),
                EscrowContractRow.status.not_in(excluded),
                EscrowContractRow.expires_at.is_not(None),
                EscrowContractRow.expires_at <= now,
            )
            .order_by(EscrowContractRow.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_expiring(
        self,
        now: datetime,
        horizon: datetime,
        escrow_types: Iterable[str],
        limit: int,
    ) -> list[EscrowContractRow]:
        """Open contracts expiring in (now, horizon] that have not been warned yet."""
        excluded = [
            EscrowStatus.COMPLETED.value,
            EscrowStatus.CANCELLED.value,
            EscrowStatus.REFUNDED.value,
            EscrowStatus.DISPUTED.value,
        ]
        result = await self._session.execute(
            select(EscrowContractRow)
            .where(
                EscrowContractRow.escrow_type.in_(list(escrow_types)),
                EscrowContractRow.status.not_in(excluded),
                EscrowContractRow.expiry_warned_at.is_(None),
                EscrowContractRow.expires_at > now,
                EscrowContractRow.expires_at <= horizon,
            )
            .order_by(EscrowContractRow.expires_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def mark_expiry_warned(
        self, escrow_id: uuid.UUID, expires_at: datetime, now: datetime
    ) -> bool:
        """Stamp the warning once per expiry. Leaves the version alone."""
        result = await self._session.execute(
            update(EscrowContractRow)
            .where(
                EscrowContractRow.id == escrow_id,
                EscrowContractRow.expires_at == expires_at,
                EscrowContractRow.expiry_warned_at.is_(None),
            )
            .values(expiry_warned_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def compare_and_set(
        self,
        escrow_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
        expected_status: str | None = None,
    ) -> bool:
        """Apply values iff the row still has expected_version (and status)."""
        stmt = (
            update(EscrowContractRow)
            .where(
                EscrowContractRow.id == escrow_id,
                EscrowContractRow.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if expected_status is not None:
            stmt = stmt.where(EscrowContractRow.status == expected_status)
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class MilestoneRepository:
    """Data access for milestones. Each milestone is versioned on its own."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_id(self, milestone_id: uuid.UUID) -> EscrowMilestoneRow | None:
        result = await self._session.execute(
            select(EscrowMilestoneRow).where(EscrowMilestoneRow.id == milestone_id)
        )
        return result.scalar_one_or_none()

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[EscrowMilestoneRow]:
        result = await self._session.execute(
            select(EscrowMilestoneRow)
            .where(EscrowMilestoneRow.escrow_id == escrow_id)
            .order_by(EscrowMilestoneRow.order.asc())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        milestone_id: uuid.UUID,
        escrow_id: uuid.UUID,
        expected_version: int,
        values: dict[str, Any],
        parent_status: str | None = None,
    ) -> bool:
        """Apply values iff the milestone is unchanged and the parent is in parent_status."""
        stmt = (
            update(EscrowMilestoneRow)
            .where(
                EscrowMilestoneRow.id == milestone_id,
                EscrowMilestoneRow.version == expected_version,
            )
            .values(**values, version=expected_version + 1, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if parent_status is not None:
            parent = (
                select(EscrowContractRow.status)
                .where(EscrowContractRow.id == escrow_id)
                .scalar_subquery()
            )
            stmt = stmt.where(parent == parent_status)
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class DepositRepository:
    """Data access for observed deposits."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, deposit: EscrowDepositRow) -> EscrowDepositRow:
        """Insert a deposit. Raises IntegrityError on a duplicate tx_reference."""
        self._session.add(deposit)
        await self._session.flush()
        return deposit

    async def get_by_tx_reference(self, tx_reference: str) -> EscrowDepositRow | None:
        result = await self._session.execute(
            select(EscrowDepositRow).where(EscrowDepositRow.tx_reference == tx_reference)
        )
        return result.scalar_one_or_none()

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[EscrowDepositRow]:
        result = await self._session.execute(
            select(EscrowDepositRow)
            .where(EscrowDepositRow.escrow_id == escrow_id)
            .order_by(EscrowDepositRow.observed_at.asc())
        )
        return list(result.scalars().all())


class DisputeRepository:
    """Data access for disputes."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, dispute: EscrowDisputeRow) -> EscrowDisputeRow:
        """Insert a dispute. Raises IntegrityError if the scope already has an open one."""
        self._session.add(dispute)
        await self._session.flush()
        return dispute

    async def get_by_id(self, dispute_id: uuid.UUID) -> EscrowDisputeRow | None:
        result = await self._session.execute(
            select(EscrowDisputeRow)
            .where(EscrowDisputeRow.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_open_for_scope(self, scope_key: str) -> EscrowDisputeRow | None:
        result = await self._session.execute(
            select(EscrowDisputeRow).where(EscrowDisputeRow.open_scope_key == scope_key)
        )
        return result.scalar_one_or_none()

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[EscrowDisputeRow]:
        result = await self._session.execute(
            select(EscrowDisputeRow)
            .where(EscrowDisputeRow.escrow_id == escrow_id)
            .order_by(EscrowDisputeRow.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_open(self, limit: int = 100) -> list[EscrowDisputeRow]:
        """Admin queue: open and under-review disputes, most urgent and oldest first."""
        priority_rank = case(
            {
                DisputePriority.URGENT.value: 0,
                DisputePriority.HIGH.value: 1,
                DisputePriority.NORMAL.value: 2,
                DisputePriority.LOW.value: 3,
            },
            value=EscrowDisputeRow.priority,
            else_=4,
        )
        result = await self._session.execute(
            select(EscrowDisputeRow)
            .where(EscrowDisputeRow.open_scope_key.is_not(None))
            .order_by(priority_rank, EscrowDisputeRow.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def compare_and_set(
        self,
        dispute_id: uuid.UUID,
        expected_statuses: Iterable[str],
        values: dict[str, Any],
    ) -> bool:
        result = await self._session.execute(
            update(EscrowDisputeRow)
            .where(
                EscrowDisputeRow.id == dispute_id,
                EscrowDisputeRow.status.in_(list(expected_statuses)),
            )
            .values(**values, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class EvidenceRepository:
    """Append-only evidence store."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(self, evidence: EscrowEvidenceRow) -> EscrowEvidenceRow:
        self._session.add(evidence)
        await self._session.flush()
        return evidence

    async def list_for_dispute(self, dispute_id: uuid.UUID) -> list[EscrowEvidenceRow]:
        result = await self._session.execute(
            select(EscrowEvidenceRow)
            .where(EscrowEvidenceRow.dispute_id == dispute_id)
            .order_by(EscrowEvidenceRow.created_at.asc())
        )
        return list(result.scalars().all())


class AdminActionRepository:
    """Append-only record of privileged decisions."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, action: AdminActionRow) -> AdminActionRow:
        self._session.add(action)
        await self._session.flush()
        return action

    async def list_for_dispute(self, dispute_id: uuid.UUID) -> list[AdminActionRow]:
        result = await self._session.execute(
            select(AdminActionRow)
            .where(AdminActionRow.dispute_id == dispute_id)
            .order_by(AdminActionRow.created_at.asc())
        )
        return list(result.scalars().all())

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[AdminActionRow]:
        result = await self._session.execute(
            select(AdminActionRow)
            .where(AdminActionRow.escrow_id == escrow_id)
            .order_by(AdminActionRow.created_at.asc())
        )
        return list(result.scalars().all())


class ActionRepository:
    """Data access for the append-only audit action log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(
        self,
        escrow_id: uuid.UUID,
        action_type: ActionType,
        actor: str,
        old_status: str | None = None,
        new_status: str | None = None,
        notes: str | None = None,
        metadata: dict | None = None,
        milestone_id: uuid.UUID | None = None,
    ) -> EscrowActionRow:
        """Append a new audit action. This is the ONLY write operation allowed."""
        action = EscrowActionRow(
            escrow_id=escrow_id,
            milestone_id=milestone_id,
            actor_wallet=actor,
            action_type=action_type.value,
            old_status=old_status,
            new_status=new_status,
            notes=notes,
            metadata_json=metadata,
        )
        self._session.add(action)
        await self._session.flush()
        return action

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[EscrowActionRow]:
        """Fetch all actions for an escrow in chronological order."""
        result = await self._session.execute(
            select(EscrowActionRow)
            .where(EscrowActionRow.escrow_id == escrow_id)
            .order_by(EscrowActionRow.created_at.asc())
        )
        return list(result.scalars().all())


class SettlementClaimRepository:
    """Data access for settlement claims (the idempotency guard)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, claim: SettlementClaimRow) -> SettlementClaimRow:
        """Insert a claim. Raises IntegrityError if (escrow_id, purpose) is taken."""
        self._session.add(claim)
        await self._session.flush()
        return claim

    async def get(self, escrow_id: uuid.UUID, purpose: str) -> SettlementClaimRow | None:
        result = await self._session.execute(
            select(SettlementClaimRow)
            .where(
                SettlementClaimRow.escrow_id == escrow_id,
                SettlementClaimRow.purpose == purpose,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_for_escrow(self, escrow_id: uuid.UUID) -> list[SettlementClaimRow]:
        result = await self._session.execute(
            select(SettlementClaimRow)
            .where(SettlementClaimRow.escrow_id == escrow_id)
            .order_by(SettlementClaimRow.created_at.asc())
        )
        return list(result.scalars().all())

    async def transition(
        self,
        claim_id: uuid.UUID,
        expected_statuses: Iterable[str],
        values: dict[str, Any],
        expected_attempts: int | None = None,
    ) -> bool:
        """Move a claim out of one of expected_statuses. False if another caller won.

        expected_attempts fences the write to one owner: a caller whose claim
        was taken over (attempts moved on) no longer matches.
        """
        stmt = (
            update(SettlementClaimRow)
            .where(
                SettlementClaimRow.id == claim_id,
                SettlementClaimRow.status.in_(list(expected_statuses)),
            )
            .values(**values, updated_at=_now())
            .execution_options(synchronize_session=False)
        )
        if expected_attempts is not None:
            stmt = stmt.where(SettlementClaimRow.attempts == expected_attempts)
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class CancellationRepository:
    """Data access for mutual cancellation requests."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(self, request: CancellationRequestRow) -> CancellationRequestRow:
        """Insert a request. Raises IntegrityError if one is already pending."""
        self._session.add(request)
        await self._session.flush()
        return request

    async def get_by_id(self, request_id: uuid.UUID) -> CancellationRequestRow | None:
        result = await self._session.execute(
            select(CancellationRequestRow)
            .where(CancellationRequestRow.id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_pending_for_escrow(
        self, escrow_id: uuid.UUID
    ) -> CancellationRequestRow | None:
        result = await self._session.execute(
            select(CancellationRequestRow).where(
                CancellationRequestRow.open_scope_key == str(escrow_id)
            )
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        request_id: uuid.UUID,
        expected_status: str,
        values: dict[str, Any],
    ) -> bool:
        result = await self._session.execute(
            update(CancellationRequestRow)
            .where(
                CancellationRequestRow.id == request_id,
                CancellationRequestRow.status == expected_status,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1
