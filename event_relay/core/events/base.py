"""Event payloads and the envelope that carries them over the bus.

An envelope is the unit stored in the outbox and published to RabbitMQ.
Its JSON shape is shared by every service, so field names on the wire are
camelCase:

    {
        "eventID": "0192f7c4-...",
        "eventType": "lead.landing.submitted",
        "schemaVersion": 1,
        "occurredAt": "2026-10-19T09:12:44.102000Z",
        "producer": "leads",
        "source": "leads.production",
        "payload": {"leadID": "...", "email": "a@b.com"}
    }

Payload bodies are typed per event type by subclassing ``EventPayload``.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from uuid_utils import uuid7


def _generate_event_id() -> str:
    """Generate a time-sortable UUID v7 string."""
    return str(uuid7())


class EventPayload(BaseModel):
    """Base class for typed event bodies.

    Subclasses must define:
    - event_type: ClassVar[str], dotted ``domain.entity.action`` identifier
    - schema_version: ClassVar[int], bumped on breaking payload changes

    Intermediate bases that group payloads set ``abstract = True`` in their
    own class body and are exempt from the check.

    Example:
        class LeadCreated(EventPayload):
            event_type: ClassVar[str] = "lead.created"

            lead_id: str = Field(alias="leadID")
            email: str
    """

    event_type: ClassVar[str] = ""
    schema_version: ClassVar[int] = 1
    abstract: ClassVar[bool] = True

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
    )

    def __init_subclass__(cls, **kwargs: Any) -> None:
        super().__init_subclass__(**kwargs)
        if cls.__dict__.get("abstract", False):
            return
        if not cls.__dict__.get("event_type"):
            msg = f"{cls.__name__} must define 'event_type' class variable"
            raise TypeError(msg)

    @classmethod
    def get_qualified_type(cls) -> str:
        """Event type with version, e.g. ``lead.created:v1``."""
        return f"{cls.event_type}:v{cls.schema_version}"

    def to_body(self) -> dict[str, Any]:
        """JSON-ready body using wire (camelCase) field names."""
        return self.model_dump(mode="json", by_alias=True)


class EventEnvelope(BaseModel):
    """Immutable wrapper stamped once at record time.

    ``event_id`` is assigned when the envelope is built and travels unchanged
    through the outbox, every publish retry and every consumer; consumers
    deduplicate on it.
    """

    event_id: str = Field(default_factory=_generate_event_id, alias="eventID", min_length=1)
    event_type: str = Field(alias="eventType", min_length=1, max_length=255)
    schema_version: int = Field(default=1, alias="schemaVersion", ge=1)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(UTC), alias="occurredAt")
    producer: str = Field(min_length=1)
    source: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("occurred_at")
    @classmethod
    def _ensure_utc(cls, v: datetime) -> datetime:
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)

    @classmethod
    def wrap(
        cls,
        payload: EventPayload,
        *,
        producer: str,
        source: str,
        event_id: str | None = None,
        occurred_at: datetime | None = None,
    ) -> EventEnvelope:
        """Build an envelope around a typed payload.

        Args:
            payload: Validated event body.
            producer: Service name of the emitter.
            source: ``<service>.<environment>`` of the emitter.
            event_id: Explicit id, only for re-wrapping a known event.
            occurred_at: Explicit timestamp; defaults to now (UTC).
        """
        data: dict[str, Any] = {
            "event_type": payload.event_type,
            "schema_version": payload.schema_version,
            "producer": producer,
            "source": source,
            "payload": payload.to_body(),
        }
        if event_id is not None:
            data["event_id"] = event_id
        if occurred_at is not None:
            data["occurred_at"] = occurred_at
        return cls(**data)

    def to_wire(self) -> dict[str, Any]:
        """Serialize with camelCase aliases, JSON-compatible values only."""
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        """Serialize to the JSON text stored in the outbox and sent on the bus."""
        return json.dumps(self.to_wire(), separators=(",", ":"))

    @classmethod
    def from_wire(cls, data: dict[str, Any] | str | bytes) -> EventEnvelope:
        """Parse an envelope from a dict or raw JSON.

        Raises:
            pydantic.ValidationError: If the data is not a valid envelope.
        """
        if isinstance(data, (str, bytes, bytearray)):
            return cls.model_validate_json(data)
        return cls.model_validate(data)

    def headers(self) -> dict[str, Any]:
        """AMQP headers mirroring the envelope identity."""
        return {
            "x-event-id": self.event_id,
            "x-event-type": self.event_type,
            "x-schema-version": str(self.schema_version),
            "x-producer": self.producer,
            "x-source": self.source,
        }

    def __repr__(self) -> str:
        return (
            f"EventEnvelope("
            f"event_id={self.event_id!r}, "
            f"event_type={self.event_type!r}, "
            f"occurred_at={self.occurred_at.isoformat()}"
            f")"
        )


__all__ = ["EventEnvelope", "EventPayload"]
