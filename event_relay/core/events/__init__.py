"""Domain events: typed payloads, the wire envelope, and the outbox producer API.

Usage:
    from event_relay.core.events import EventPayload, EventPublisher, event_registry

    @event_registry.register
    class LeadCreated(EventPayload):
        event_type: ClassVar[str] = "lead.created"
        lead_id: str = Field(alias="leadID")
        email: str

    async with publisher.transaction() as session:
        session.add(lead)
        await publisher.record(session, LeadCreated(lead_id=str(lead.id), email=lead.email))
"""

from event_relay.core.events.base import EventEnvelope, EventPayload
from event_relay.core.events.publisher import EventPublisher, OutboxStore, get_event_publisher
from event_relay.core.events.registry import EventRegistry, UnknownEventTypeError, event_registry

__all__ = [
    "EventEnvelope",
    "EventPayload",
    "EventPublisher",
    "EventRegistry",
    "OutboxStore",
    "UnknownEventTypeError",
    "event_registry",
    "get_event_publisher",
]
