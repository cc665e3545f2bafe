"""RabbitMQ messaging: bus client, subscription registry and routing conventions.

Usage:
    from event_relay.infra.messaging import BusClient, SubscriptionRegistry

    bus = BusClient()
    registry = SubscriptionRegistry(bus)
    registry.add("email.leads", ["lead.created"], send_welcome_email)

    await bus.connect()
    await registry.register_all()
"""

from event_relay.infra.messaging.client import BusClient, ConnectionState, InboundMessage
from event_relay.infra.messaging.exceptions import (
    BusError,
    BusUnavailableError,
    InvalidRoutingKeyError,
    PublishError,
    PublishTimeoutError,
)
from event_relay.infra.messaging.idempotency import IdempotentHandler
from event_relay.infra.messaging.registry import SubscriptionRegistry

__all__ = [
    "BusClient",
    "BusError",
    "BusUnavailableError",
    "ConnectionState",
    "IdempotentHandler",
    "InboundMessage",
    "InvalidRoutingKeyError",
    "PublishError",
    "PublishTimeoutError",
    "SubscriptionRegistry",
]
