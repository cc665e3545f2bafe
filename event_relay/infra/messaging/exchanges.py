"""FastStream exchange and queue definitions.

All exchanges and queues are durable. Consumer queues carry dead-letter
arguments so a message rejected without requeue lands on the DLQ exchange
under ``dlq.<queue>``; a catch-all ``<prefix>.dlq`` queue bound to ``dlq.#``
keeps them for inspection.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from faststream.rabbit import ExchangeType, RabbitExchange, RabbitQueue

from event_relay.infra.messaging.conventions import (
    get_dlq_exchange_name,
    get_dlq_routing_key,
    get_exchange_name,
)

if TYPE_CHECKING:
    from event_relay.core.settings import RabbitSettings


def build_events_exchange(settings: RabbitSettings | None = None) -> RabbitExchange:
    """The shared topic exchange every service publishes to."""
    return RabbitExchange(
        name=get_exchange_name(settings),
        type=ExchangeType.TOPIC,
        durable=True,
        auto_delete=False,
    )


def build_dlq_exchange(settings: RabbitSettings | None = None) -> RabbitExchange:
    """Topic exchange receiving dead-lettered messages."""
    return RabbitExchange(
        name=get_dlq_exchange_name(settings),
        type=ExchangeType.TOPIC,
        durable=True,
        auto_delete=False,
    )


def build_dlq_queue(settings: RabbitSettings | None = None) -> RabbitQueue:
    """Catch-all queue for dead-lettered messages (``dlq.#``)."""
    return RabbitQueue(
        name=get_dlq_exchange_name(settings),
        durable=True,
        auto_delete=False,
        routing_key="dlq.#",
    )


def create_queue_with_dlq(
    queue_name: str,
    settings: RabbitSettings | None = None,
    *,
    dlq_routing_key: str | None = None,
) -> RabbitQueue:
    """Durable consumer queue whose rejected messages go to the DLQ exchange.

    Example:
        >>> queue = create_queue_with_dlq("email.leads")
        >>> queue.arguments["x-dead-letter-routing-key"]
        'dlq.email.leads'
    """
    return RabbitQueue(
        name=queue_name,
        durable=True,
        auto_delete=False,
        arguments={
            "x-dead-letter-exchange": get_dlq_exchange_name(settings),
            "x-dead-letter-routing-key": dlq_routing_key or get_dlq_routing_key(queue_name),
        },
    )


__all__ = [
    "build_dlq_exchange",
    "build_dlq_queue",
    "build_events_exchange",
    "create_queue_with_dlq",
]
