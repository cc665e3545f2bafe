"""Producer API: record events in the outbox inside the caller's transaction.

Recording an event never talks to the broker. The row commits or rolls back
together with the domain change, and the drainer publishes it later:

    async with publisher.transaction() as session:
        lead = Lead(email=data.email)
        session.add(lead)
        await publisher.record(session, LeadCreated(lead_id=str(lead.id), email=lead.email))
    # committed: both rows or neither; a drain is triggered afterwards

Routing keys default to the event type.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from event_relay.core.events.base import EventEnvelope, EventPayload
from event_relay.core.events.registry import event_registry
from event_relay.core.settings import get_app_settings
from event_relay.infra.events.outbox.models import OutboxEntry, OutboxStatus
from event_relay.infra.events.outbox.repository import OutboxRepository
from event_relay.infra.messaging.conventions import validate_routing_key

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from sqlalchemy.ext.asyncio import AsyncSession

    from event_relay.core.events.registry import EventRegistry
    from event_relay.core.settings import AppSettings
    from event_relay.infra.events.outbox.processor import OutboxDrainer

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value.astimezone(UTC)


class OutboxStore:
    """Writes outbox rows through a caller-owned session.

    The store never begins, commits or rolls back. It inserts one
    ``pending`` row and flushes, so an insert failure is raised inside the
    caller's transaction and the caller's rollback discards the domain
    change with it.
    """

    def __init__(self, repository: OutboxRepository | None = None) -> None:
        self._repo = repository or OutboxRepository()

    async def record_event(
        self,
        session: AsyncSession,
        envelope: EventEnvelope,
        routing_key: str | None = None,
        *,
        scheduled_for: datetime | None = None,
    ) -> OutboxEntry:
        """Insert one pending row for ``envelope``.

        Args:
            session: Session with an open transaction owned by the caller.
            envelope: Event to publish; its ``event_id`` is stored unchanged.
            routing_key: Topic routing key; defaults to the event type.
            scheduled_for: Earliest publish time. Naive values are taken as UTC.

        Raises:
            InvalidRoutingKeyError: If the routing key is malformed.
            sqlalchemy.exc.IntegrityError: If the event id was already recorded.
        """
        key = validate_routing_key(routing_key or envelope.event_type)
        if scheduled_for is not None:
            scheduled_for = _as_utc(scheduled_for)

        entry = OutboxEntry(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            routing_key=key,
            payload=envelope.to_json(),
            status=OutboxStatus.PENDING.value,
            retry_count=0,
            scheduled_for=scheduled_for,
        )
        await self._repo.add(session, entry)

        logger.debug(
            "Event staged in outbox",
            extra={
                "event_id": envelope.event_id,
                "event_type": envelope.event_type,
                "routing_key": key,
                "scheduled_for": scheduled_for.isoformat() if scheduled_for else None,
            },
        )
        return entry


class EventPublisher:
    """Per-service producer facade over ``OutboxStore``.

    Validates payloads against the event registry, stamps the envelope with
    this service's identity and triggers a drain after commits it owns.
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] | None = None,
        *,
        drainer: OutboxDrainer | None = None,
        store: OutboxStore | None = None,
        registry: EventRegistry | None = None,
        app_settings: AppSettings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._drainer = drainer
        self._store = store or OutboxStore()
        self._registry = registry or event_registry
        self._app_settings = app_settings or get_app_settings()

    @property
    def producer(self) -> str:
        return self._app_settings.service_name

    @property
    def source(self) -> str:
        return self._app_settings.event_source

    def build_envelope(
        self,
        event: EventPayload | EventEnvelope,
        *,
        event_type: str | None = None,
    ) -> EventEnvelope:
        """Validate a payload and wrap it; envelopes pass through unchanged."""
        if isinstance(event, EventEnvelope):
            self._registry.validate(event.event_type, event.payload, event.schema_version)
            return event
        payload = self._registry.validate(event_type or event.event_type, event)
        return EventEnvelope.wrap(payload, producer=self.producer, source=self.source)

    def build_envelope_from_dict(self, event_type: str, body: dict[str, Any]) -> EventEnvelope:
        """Validate a raw body for ``event_type`` and wrap it."""
        payload = self._registry.validate(event_type, body)
        return EventEnvelope.wrap(payload, producer=self.producer, source=self.source)

    async def record(
        self,
        session: AsyncSession,
        event: EventPayload | EventEnvelope,
        routing_key: str | None = None,
        *,
        scheduled_for: datetime | None = None,
    ) -> EventEnvelope:
        """Record an event inside the caller's open transaction.

        Raises:
            UnknownEventTypeError: If the event type is not registered.
            pydantic.ValidationError: If the payload does not match its schema.
        """
        envelope = self.build_envelope(event)
        await self._store.record_event(session, envelope, routing_key, scheduled_for=scheduled_for)
        return envelope

    @asynccontextmanager
    async def transaction(self, *, trigger: bool = True) -> AsyncIterator[AsyncSession]:
        """Session inside a transaction; commits on exit, then triggers a drain.

        Pass ``trigger=False`` when nothing recorded in it is due yet.

        Any exception rolls the whole unit back and is re-raised.
        """
        if self._session_factory is None:
            msg = "EventPublisher has no session factory; pass one to use transaction()"
            raise RuntimeError(msg)

        async with self._session_factory() as session:
            async with session.begin():
                yield session
        if trigger:
            self.notify_committed()

    async def save_and_publish_event(
        self,
        event: EventPayload | EventEnvelope,
        routing_key: str | None = None,
        *,
        scheduled_for: datetime | None = None,
    ) -> EventEnvelope:
        """Record an event in its own transaction and kick the drainer.

        Only a failure of the local transaction is raised; publishing
        happens asynchronously. An event scheduled in the future is left
        for the periodic drain that first sees it due.
        """
        due = scheduled_for is None or _as_utc(scheduled_for) <= datetime.now(UTC)
        async with self.transaction(trigger=due) as session:
            envelope = await self.record(session, event, routing_key, scheduled_for=scheduled_for)
        return envelope

    def notify_committed(self) -> None:
        """Ask the drainer for an immediate best-effort pass."""
        if self._drainer is not None:
            self._drainer.trigger()


def get_event_publisher() -> EventPublisher:
    """Publisher wired to the process-wide session factory and drainer.

    Usable as a FastAPI dependency.
    """
    from event_relay.core.settings import get_outbox_settings
    from event_relay.infra.database.session import get_session_factory
    from event_relay.infra.events.outbox.processor import get_outbox_drainer

    drainer = get_outbox_drainer() if get_outbox_settings().trigger_after_commit else None
    return EventPublisher(get_session_factory(), drainer=drainer)


__all__ = ["EventPublisher", "OutboxStore", "get_event_publisher"]
