"""OutboxEntry SQLAlchemy model for the transactional outbox.

Rows are inserted in the same transaction as the domain change that
produced the event, so either both exist or neither does. The drainer
reads rows that are not yet published, publishes them, and records the
outcome on the row.

Lifecycle:

    pending ──publish ok──▶ published
       │                        ▲
       └──publish error──▶ failed ──publish ok (later tick)
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from event_relay.core.database.base import Base, TimestampMixin, UUIDv7PKMixin

# Longest error text kept on a row
MAX_ERROR_LENGTH = 1000


class OutboxStatus(StrEnum):
    """Delivery state of an outbox row."""

    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OutboxEntry(Base, UUIDv7PKMixin, TimestampMixin):
    """A recorded event awaiting (or done with) publication.

    Attributes:
        id: UUID v7 primary key.
        event_id: Envelope ``eventID``; unique, never regenerated.
        event_type: Envelope ``eventType``.
        routing_key: Topic routing key used on publish.
        payload: JSON text of the full envelope, published verbatim.
        status: pending | published | failed.
        retry_count: Failed publish attempts so far.
        last_error: Last publish error, truncated.
        published_at: When the broker accepted the message.
        claimed_by: Worker currently holding the row, if any.
        claimed_at: When the claim was taken; stale claims expire.
        scheduled_for: Earliest publish time; None publishes on the next tick.
    """

    __tablename__ = "event_outbox"

    event_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True,
        index=True,
        comment="Envelope eventID",
    )
    event_type: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Event type identifier",
    )
    routing_key: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        comment="Topic routing key",
    )
    payload: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="JSON-serialized event envelope",
    )

    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=OutboxStatus.PENDING.value,
        comment="pending | published | failed",
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="Number of failed publish attempts",
    )
    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Last publish error",
    )
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the event was published",
    )

    # Claim lease held by a drainer
    claimed_by: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="Drainer worker id holding the row",
    )
    claimed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="When the claim was taken",
    )

    scheduled_for: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        comment="Not published before this time",
    )

    __table_args__ = (
        # Drainer scan: unpublished rows, oldest first
        Index("ix_event_outbox_status_created", "status", "created_at"),
    )

    @property
    def is_published(self) -> bool:
        return self.status == OutboxStatus.PUBLISHED

    def __repr__(self) -> str:
        return (
            f"OutboxEntry("
            f"event_id={self.event_id!r}, "
            f"event_type={self.event_type!r}, "
            f"status={self.status}, "
            f"retries={self.retry_count}"
            f")"
        )


__all__ = ["MAX_ERROR_LENGTH", "OutboxEntry", "OutboxStatus"]
