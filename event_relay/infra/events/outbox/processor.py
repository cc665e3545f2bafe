"""Outbox drainer: publishes recorded events to the bus.

One tick:
1. In a short transaction, select up to ``batch_size`` unpublished rows
   that are due (oldest first) and claim each with a conditional UPDATE.
   Commit.
2. For each claimed row, restart its lease; a row whose lease was taken
   over by another worker is skipped. Then, outside any transaction,
   publish it through the bus with a bounded timeout.
3. Record each outcome in its own small transaction: ``published``, or
   ``failed`` with ``retry_count + 1`` and the error text.

Claims are leases: a row claimed by a worker that died is claimable again
once ``claim_ttl`` has passed, so delivery is at-least-once and never
blocked by a crash. Consumers deduplicate on ``eventID``. ``claim_ttl``
must exceed ``publish_timeout`` so a renewed lease outlives the publish it
covers. A tick that is cancelled or fails releases the rows it had not
finalized.

A process runs at most one tick at a time (``asyncio.Lock``). A tick
requested while another is running is skipped and the running tick makes
one more pass before it returns.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any, Protocol

from uuid_utils import uuid7

from event_relay.core.events.base import EventEnvelope
from event_relay.core.settings import get_outbox_settings
from event_relay.infra.events.outbox.repository import OutboxRepository

if TYPE_CHECKING:
    import uuid
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from event_relay.core.settings import OutboxSettings

logger = logging.getLogger(__name__)

# Global drainer instance
_drainer: OutboxDrainer | None = None


class EventBus(Protocol):
    """What the drainer needs from a message bus."""

    async def publish(self, routing_key: str, envelope: EventEnvelope) -> None: ...


@dataclass
class DrainResult:
    """Outcome of one ``drain()`` call."""

    claimed: int = 0
    published: int = 0
    failed: int = 0
    skipped: bool = False

    @property
    def total(self) -> int:
        return self.published + self.failed

    def merge(self, other: DrainResult) -> DrainResult:
        return DrainResult(
            claimed=self.claimed + other.claimed,
            published=self.published + other.published,
            failed=self.failed + other.failed,
            skipped=self.skipped and other.skipped,
        )


@dataclass(frozen=True)
class _ClaimedRow:
    id: uuid.UUID
    event_id: str
    event_type: str
    routing_key: str
    payload: str
    retry_count: int


def default_worker_id() -> str:
    """``host:pid:random`` identifier written into claims."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid7().hex[-8:]}"


class OutboxDrainer:
    """Periodic publisher of outbox rows.

    Attributes:
        settings: Batch size, interval, retry cap and lease TTL.
        worker_id: Identity written into ``claimed_by``.
    """

    def __init__(
        self,
        bus: EventBus,
        session_factory: Callable[[], AsyncSession],
        settings: OutboxSettings | None = None,
        *,
        worker_id: str | None = None,
        repository: OutboxRepository | None = None,
    ) -> None:
        self._bus = bus
        self._session_factory = session_factory
        self.settings = settings or get_outbox_settings()
        self.worker_id = worker_id or default_worker_id()
        self._repo = repository or OutboxRepository()

        self._lock = asyncio.Lock()
        self._rerun = False
        self._running = False
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self._triggered: set[asyncio.Task[Any]] = set()
        self._last_cleanup: float | None = None

    # ──────────────────────────────────────────────────────
    # Draining
    # ──────────────────────────────────────────────────────

    @property
    def is_draining(self) -> bool:
        return self._lock.locked()

    @property
    def is_running(self) -> bool:
        return self._running

    async def drain(self) -> DrainResult:
        """Run one tick, or skip if a tick is already in flight.

        Returns:
            Counts for this tick; ``skipped=True`` when the run-lock was busy.
        """
        if self._lock.locked():
            self._rerun = True
            logger.debug("Outbox drain already in progress, skipping", extra={"worker_id": self.worker_id})
            return DrainResult(skipped=True)

        async with self._lock:
            self._rerun = False
            result = await self._drain_once()
            while self._rerun:
                self._rerun = False
                result = result.merge(await self._drain_once())

        if result.total:
            logger.info(
                "Outbox batch processed",
                extra={
                    "published": result.published,
                    "failed": result.failed,
                    "claimed": result.claimed,
                    "worker_id": self.worker_id,
                },
            )
        return result

    async def drain_all(self, *, max_passes: int = 100) -> DrainResult:
        """Drain full batches back to back until the backlog is gone."""
        result = DrainResult()
        for _ in range(max_passes):
            tick = await self.drain()
            if tick.skipped:
                return result if result.claimed else tick
            result = result.merge(tick)
            if tick.failed or tick.claimed < self.settings.batch_size:
                break
        return result

    async def _drain_once(self) -> DrainResult:
        rows = await self._claim_batch()
        result = DrainResult(claimed=len(rows))
        unfinished = [row.id for row in rows]

        try:
            for row in rows:
                if not await self._renew_claim(row):
                    unfinished.remove(row.id)
                    continue
                error = await self._publish_row(row)
                if error is None:
                    if await self._finalize(row, error=None):
                        result.published += 1
                else:
                    await self._finalize(row, error=error)
                    result.failed += 1
                unfinished.remove(row.id)
        except BaseException:
            await self._release(unfinished)
            raise

        return result

    async def _claim_batch(self) -> list[_ClaimedRow]:
        now = datetime.now(UTC)
        stale = now - timedelta(seconds=self.settings.claim_ttl)

        async with self._session_factory() as session, session.begin():
            candidates = await self._repo.fetch_candidates(
                session,
                batch_size=self.settings.batch_size,
                max_retries=self.settings.max_retries,
                lease_expired_before=stale,
                now=now,
            )
            won: list[uuid.UUID] = []
            for entry_id in candidates:
                if await self._repo.claim(
                    session,
                    entry_id,
                    worker_id=self.worker_id,
                    now=now,
                    lease_expired_before=stale,
                ):
                    won.append(entry_id)

            entries = await self._repo.get_claimed(session, won, worker_id=self.worker_id)
            rows = [
                _ClaimedRow(
                    id=entry.id,
                    event_id=entry.event_id,
                    event_type=entry.event_type,
                    routing_key=entry.routing_key,
                    payload=entry.payload,
                    retry_count=entry.retry_count,
                )
                for entry in entries
            ]

        if candidates and len(rows) < len(candidates):
            logger.debug(
                "Some outbox rows were claimed by another worker",
                extra={"candidates": len(candidates), "claimed": len(rows)},
            )
        return rows

    async def _renew_claim(self, row: _ClaimedRow) -> bool:
        """Restart the lease on ``row`` right before publishing it."""
        async with self._session_factory() as session, session.begin():
            renewed = await self._repo.renew_claim(
                session,
                row.id,
                worker_id=self.worker_id,
                now=datetime.now(UTC),
            )
        if not renewed:
            logger.warning(
                "Outbox claim lost before publish, skipping row",
                extra={"event_id": row.event_id, "worker_id": self.worker_id},
            )
        return renewed

    async def _release(self, entry_ids: list[uuid.UUID]) -> None:
        if not entry_ids:
            return
        try:
            async with self._session_factory() as session, session.begin():
                released = await self._repo.release(session, entry_ids, worker_id=self.worker_id)
        except Exception:
            # Rows stay claimed until claim_ttl passes
            logger.exception("Failed to release outbox claims", extra={"worker_id": self.worker_id})
            return
        logger.info(
            "Released unfinished outbox claims",
            extra={"released": released, "worker_id": self.worker_id},
        )

    async def _publish_row(self, row: _ClaimedRow) -> str | None:
        """Publish one row; return the error text, or None on success."""
        try:
            envelope = EventEnvelope.from_wire(row.payload)
            await asyncio.wait_for(
                self._bus.publish(row.routing_key, envelope),
                timeout=self.settings.publish_timeout,
            )
        except TimeoutError:
            return f"publish timed out after {self.settings.publish_timeout}s"
        except Exception as e:
            return f"{type(e).__name__}: {e}"

        logger.debug(
            "Event published",
            extra={"event_id": row.event_id, "event_type": row.event_type, "routing_key": row.routing_key},
        )
        return None

    async def _finalize(self, row: _ClaimedRow, *, error: str | None) -> bool:
        async with self._session_factory() as session, session.begin():
            if error is None:
                updated = await self._repo.mark_published(session, row.id, worker_id=self.worker_id)
            else:
                updated = await self._repo.mark_failed(session, row.id, error, worker_id=self.worker_id)

        if error is not None:
            logger.warning(
                "Failed to publish event, will retry on next tick",
                extra={
                    "event_id": row.event_id,
                    "event_type": row.event_type,
                    "routing_key": row.routing_key,
                    "retry_count": row.retry_count + 1,
                    "error": error,
                },
            )
        if not updated:
            # Lease expired and another worker took the row over
            logger.warning(
                "Outbox claim lost before finalize",
                extra={"event_id": row.event_id, "worker_id": self.worker_id},
            )
        return updated

    # ──────────────────────────────────────────────────────
    # Maintenance
    # ──────────────────────────────────────────────────────

    async def cleanup(self) -> int:
        """Delete published rows older than ``retention_days``."""
        async with self._session_factory() as session, session.begin():
            deleted = await self._repo.cleanup_published(
                session,
                older_than_days=self.settings.retention_days,
            )
        self._last_cleanup = time.monotonic()
        if deleted:
            logger.info(
                "Cleaned up published outbox rows",
                extra={"deleted": deleted, "retention_days": self.settings.retention_days},
            )
        return deleted

    def _cleanup_due(self) -> bool:
        if self._last_cleanup is None:
            return True
        return time.monotonic() - self._last_cleanup >= self.settings.cleanup_interval

    # ──────────────────────────────────────────────────────
    # Triggering and the periodic loop
    # ──────────────────────────────────────────────────────

    def trigger(self) -> asyncio.Task[DrainResult] | None:
        """Schedule a best-effort drain without waiting for it.

        Returns None when called outside a running event loop.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None

        task = loop.create_task(self._drain_safely(), name="outbox-drain-trigger")
        self._triggered.add(task)
        task.add_done_callback(self._triggered.discard)
        return task

    async def _drain_safely(self) -> DrainResult:
        try:
            return await self.drain()
        except Exception:
            logger.exception("Triggered outbox drain failed")
            return DrainResult()

    async def start(self) -> None:
        """Start the periodic drain loop."""
        if self._running:
            logger.warning("Outbox drainer already running")
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name="outbox-drainer")
        logger.info(
            "Outbox drainer started",
            extra={
                "batch_size": self.settings.batch_size,
                "poll_interval": self.settings.poll_interval,
                "max_retries": self.settings.max_retries,
                "worker_id": self.worker_id,
            },
        )

    async def stop(self) -> None:
        """Stop the loop, letting an in-flight tick finish within the timeout."""
        if not self._running:
            return

        self._running = False
        self._stop_event.set()

        pending = [t for t in (self._task, *self._triggered) if t is not None]
        if pending:
            done, not_done = await asyncio.wait(pending, timeout=self.settings.shutdown_timeout)
            if not_done:
                logger.warning("Outbox drainer shutdown timed out, cancelling")
                for task in not_done:
                    task.cancel()
                for task in not_done:
                    with contextlib.suppress(asyncio.CancelledError):
                        await task
        self._task = None

        logger.info("Outbox drainer stopped", extra={"worker_id": self.worker_id})

    async def _run_loop(self) -> None:
        while self._running:
            delay = self.settings.poll_interval
            try:
                result = await self.drain()
                if (
                    not result.skipped
                    and result.failed == 0
                    and result.claimed >= self.settings.batch_size
                ):
                    # Backlog: go again right away
                    delay = 0
                if self._cleanup_due():
                    await self.cleanup()
            except asyncio.CancelledError:
                logger.info("Outbox drainer loop cancelled")
                raise
            except Exception:
                logger.exception("Error in outbox drainer loop")

            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)


async def start_outbox_drainer(
    bus: EventBus,
    session_factory: Callable[[], AsyncSession],
    settings: OutboxSettings | None = None,
) -> OutboxDrainer:
    """Create and start the process-wide drainer.

    With ``OUTBOX_ENABLED=false`` the periodic loop is not started, but the
    instance is still registered so that post-commit ``trigger()`` works.
    """
    global _drainer

    settings = settings or get_outbox_settings()
    _drainer = OutboxDrainer(bus, session_factory, settings)
    if not settings.enabled:
        logger.info("Outbox drainer disabled, events are published on commit triggers only")
        return _drainer
    await _drainer.start()
    return _drainer


async def stop_outbox_drainer() -> None:
    """Stop the process-wide drainer."""
    global _drainer

    if _drainer is not None:
        await _drainer.stop()
        _drainer = None


def get_outbox_drainer() -> OutboxDrainer | None:
    """Get the process-wide drainer instance."""
    return _drainer


__all__ = [
    "DrainResult",
    "EventBus",
    "OutboxDrainer",
    "default_worker_id",
    "get_outbox_drainer",
    "start_outbox_drainer",
    "stop_outbox_drainer",
]
