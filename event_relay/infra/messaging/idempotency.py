"""Consumer-side deduplication for at-least-once delivery.

The bus may deliver the same event more than once (drainer retries after a
lost confirm, redeliveries after a consumer crash). Wrapping a handler in
``IdempotentHandler`` records ``(consumer, event_id)`` in a transaction
that commits only when the handler succeeds, so a duplicate is skipped:

    registry.add(
        "email.leads",
        ["lead.created"],
        IdempotentHandler("email.welcome", send_welcome_email),
    )
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import DateTime, String, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, mapped_column

from event_relay.core.database.base import Base, utcnow

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from event_relay.core.events.base import EventEnvelope

logger = logging.getLogger(__name__)


class ProcessedEvent(Base):
    """One event handled by one consumer."""

    __tablename__ = "processed_events"

    consumer: Mapped[str] = mapped_column(String(200), primary_key=True)
    event_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(200), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<ProcessedEvent(consumer={self.consumer}, event_id={self.event_id})>"


async def was_processed(session: AsyncSession, consumer: str, event_id: str) -> bool:
    result = await session.execute(
        select(ProcessedEvent.event_id).where(
            ProcessedEvent.consumer == consumer,
            ProcessedEvent.event_id == event_id,
        )
    )
    return result.scalar_one_or_none() is not None


class IdempotentHandler:
    """Run ``handler`` at most once per ``(consumer, event_id)``.

    The marker row is inserted and flushed before the handler runs, so a
    concurrent duplicate blocks on (or fails) the primary key instead of
    running twice. A failing handler rolls the marker back and the event
    stays eligible for the next delivery.
    """

    def __init__(
        self,
        consumer: str,
        handler: Callable[[EventEnvelope], Awaitable[None]],
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ) -> None:
        self.consumer = consumer
        self.handler = handler
        self._session_factory = session_factory
        self.__qualname__ = f"IdempotentHandler[{consumer}]"
        self.__module__ = getattr(handler, "__module__", __name__)

    def _factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            from event_relay.infra.database.session import get_session_factory

            self._session_factory = get_session_factory()
        return self._session_factory

    async def __call__(self, envelope: EventEnvelope) -> None:
        async with self._factory()() as session:
            if await was_processed(session, self.consumer, envelope.event_id):
                logger.info(
                    "Duplicate event skipped",
                    extra={"consumer": self.consumer, "event_id": envelope.event_id},
                )
                return

            session.add(
                ProcessedEvent(
                    consumer=self.consumer,
                    event_id=envelope.event_id,
                    event_type=envelope.event_type,
                )
            )
            try:
                await session.flush()
            except IntegrityError:
                logger.info(
                    "Event processed concurrently, skipped",
                    extra={"consumer": self.consumer, "event_id": envelope.event_id},
                )
                await session.rollback()
                return

            # Closing the session without commit rolls the marker back
            await self.handler(envelope)
            await session.commit()


__all__ = ["IdempotentHandler", "ProcessedEvent", "was_processed"]
