"""Queries used by the outbox drainer and the operator CLI.

Each write is a single conditional UPDATE so that two drainers racing on
the same row resolve in the database: only one claim matches, and only the
claim holder can finalize the row.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from sqlalchemy import delete, func, or_, select, update

from event_relay.infra.events.outbox.models import MAX_ERROR_LENGTH, OutboxEntry, OutboxStatus

if TYPE_CHECKING:
    import uuid
    from collections.abc import Sequence

    from sqlalchemy.ext.asyncio import AsyncSession


def _claim_is_free(lease_expired_before: datetime):
    return or_(
        OutboxEntry.claimed_by.is_(None),
        OutboxEntry.claimed_at.is_(None),
        OutboxEntry.claimed_at < lease_expired_before,
    )


class OutboxRepository:
    """Data access for ``event_outbox`` rows."""

    async def add(self, session: AsyncSession, entry: OutboxEntry) -> OutboxEntry:
        """Stage a new row and flush so constraint errors surface immediately."""
        session.add(entry)
        await session.flush()
        return entry

    async def fetch_candidates(
        self,
        session: AsyncSession,
        *,
        batch_size: int = 100,
        max_retries: int | None = None,
        lease_expired_before: datetime,
        now: datetime | None = None,
    ) -> Sequence[uuid.UUID]:
        """Ids of rows eligible for a drain tick, oldest first.

        Eligible rows:
        - are not published (pending and failed both qualify)
        - are unclaimed, or their claim is older than ``lease_expired_before``
        - are unscheduled, or their ``scheduled_for`` is not after ``now``
        - are below ``max_retries`` when a cap is configured

        Rows locked by another transaction are skipped on PostgreSQL
        (``FOR UPDATE SKIP LOCKED``); SQLite ignores the clause.
        """
        now = now or datetime.now(UTC)
        stmt = (
            select(OutboxEntry.id)
            .where(
                OutboxEntry.status != OutboxStatus.PUBLISHED.value,
                _claim_is_free(lease_expired_before),
                or_(OutboxEntry.scheduled_for.is_(None), OutboxEntry.scheduled_for <= now),
            )
            .order_by(OutboxEntry.created_at.asc(), OutboxEntry.id.asc())
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        )
        if max_retries is not None:
            stmt = stmt.where(OutboxEntry.retry_count < max_retries)

        result = await session.execute(stmt)
        return result.scalars().all()

    async def claim(
        self,
        session: AsyncSession,
        entry_id: uuid.UUID,
        *,
        worker_id: str,
        now: datetime,
        lease_expired_before: datetime,
    ) -> bool:
        """Take the lease on one row.

        Returns:
            True if this worker now holds the row, False if another worker
            claimed or published it first.
        """
        stmt = (
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry_id,
                OutboxEntry.status != OutboxStatus.PUBLISHED.value,
                _claim_is_free(lease_expired_before),
            )
            .values(claimed_by=worker_id, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def get_claimed(
        self,
        session: AsyncSession,
        entry_ids: Sequence[uuid.UUID],
        *,
        worker_id: str,
    ) -> Sequence[OutboxEntry]:
        """Rows held by ``worker_id`` among ``entry_ids``, oldest first."""
        if not entry_ids:
            return []
        stmt = (
            select(OutboxEntry)
            .where(OutboxEntry.id.in_(entry_ids), OutboxEntry.claimed_by == worker_id)
            .order_by(OutboxEntry.created_at.asc(), OutboxEntry.id.asc())
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def renew_claim(
        self,
        session: AsyncSession,
        entry_id: uuid.UUID,
        *,
        worker_id: str,
        now: datetime,
    ) -> bool:
        """Refresh ``claimed_at`` on a row this worker still holds.

        Returns:
            False if the lease expired and another worker took the row, or
            the row was published meanwhile.
        """
        stmt = (
            update(OutboxEntry)
            .where(
                OutboxEntry.id == entry_id,
                OutboxEntry.claimed_by == worker_id,
                OutboxEntry.status != OutboxStatus.PUBLISHED.value,
            )
            .values(claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def mark_published(
        self,
        session: AsyncSession,
        entry_id: uuid.UUID,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> bool:
        """Record a successful publish; only the claim holder may do this."""
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id, OutboxEntry.claimed_by == worker_id)
            .values(
                status=OutboxStatus.PUBLISHED.value,
                published_at=now or datetime.now(UTC),
                last_error=None,
                claimed_by=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def mark_failed(
        self,
        session: AsyncSession,
        entry_id: uuid.UUID,
        error_message: str,
        *,
        worker_id: str,
    ) -> bool:
        """Record a failed publish attempt and release the claim.

        The row stays eligible for the next tick; ``retry_count`` only grows.
        """
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id == entry_id, OutboxEntry.claimed_by == worker_id)
            .values(
                status=OutboxStatus.FAILED.value,
                retry_count=OutboxEntry.retry_count + 1,
                last_error=error_message[:MAX_ERROR_LENGTH],
                claimed_by=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def release(
        self,
        session: AsyncSession,
        entry_ids: Sequence[uuid.UUID],
        *,
        worker_id: str,
    ) -> int:
        """Drop claims without recording an attempt (tick aborted before finalize)."""
        if not entry_ids:
            return 0
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.id.in_(entry_ids), OutboxEntry.claimed_by == worker_id)
            .values(claimed_by=None, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def cleanup_published(
        self,
        session: AsyncSession,
        *,
        older_than_days: int = 7,
        now: datetime | None = None,
    ) -> int:
        """Delete published rows past retention.

        Returns:
            Number of rows deleted.
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(days=older_than_days)
        stmt = (
            delete(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatus.PUBLISHED.value,
                OutboxEntry.published_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        return result.rowcount

    async def count_by_status(self, session: AsyncSession) -> dict[str, int]:
        """Row counts per status; every status is present, possibly 0."""
        stmt = select(OutboxEntry.status, func.count()).group_by(OutboxEntry.status)
        result = await session.execute(stmt)
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in result.all():
            counts[status] = count
        return counts

    async def count_pending(self, session: AsyncSession) -> int:
        """Rows not yet published (pending plus failed)."""
        stmt = (
            select(func.count())
            .select_from(OutboxEntry)
            .where(OutboxEntry.status != OutboxStatus.PUBLISHED.value)
        )
        result = await session.execute(stmt)
        return result.scalar_one()

    async def count_parked(self, session: AsyncSession, *, max_retries: int) -> int:
        """Failed rows that reached the retry cap and are skipped by the drainer."""
        stmt = (
            select(func.count())
            .select_from(OutboxEntry)
            .where(
                OutboxEntry.status == OutboxStatus.FAILED.value,
                OutboxEntry.retry_count >= max_retries,
            )
        )
        result = await session.execute(stmt)
        return result.scalar_one()

    async def list_failed(self, session: AsyncSession, *, limit: int = 50) -> Sequence[OutboxEntry]:
        """Failed rows, oldest first."""
        stmt = (
            select(OutboxEntry)
            .where(OutboxEntry.status == OutboxStatus.FAILED.value)
            .order_by(OutboxEntry.created_at.asc())
            .limit(limit)
        )
        result = await session.execute(stmt)
        return result.scalars().all()

    async def get_by_event_id(self, session: AsyncSession, event_id: str) -> OutboxEntry | None:
        stmt = select(OutboxEntry).where(OutboxEntry.event_id == event_id)
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    async def reset_retries(
        self,
        session: AsyncSession,
        *,
        event_ids: Sequence[str] | None = None,
    ) -> int:
        """Zero ``retry_count`` on failed rows so capped rows are drained again.

        Status stays ``failed``; the next successful publish moves the row to
        ``published``.

        Args:
            event_ids: Restrict to these envelope ids; all failed rows when None.

        Returns:
            Number of rows reset.
        """
        stmt = (
            update(OutboxEntry)
            .where(OutboxEntry.status == OutboxStatus.FAILED.value)
            .values(retry_count=0)
            .execution_options(synchronize_session=False)
        )
        if event_ids is not None:
            if not event_ids:
                return 0
            stmt = stmt.where(OutboxEntry.event_id.in_(list(event_ids)))
        result = await session.execute(stmt)
        return result.rowcount


__all__ = ["OutboxRepository"]
