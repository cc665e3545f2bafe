"""RabbitMQ bus client built on FastStream.

The FastStream ``RabbitBroker`` owns the robust AMQP connection and is used
for publishing. Consumers run on a dedicated aio-pika robust channel opened
on that connection, with QoS set from ``RABBIT_PREFETCH_COUNT``; robust
channels re-declare queues, bindings and consumers after a reconnect.

Usage:
    bus = BusClient(get_rabbit_settings())
    await bus.connect()
    await bus.publish("lead.created", envelope)
    await bus.subscribe("email.leads", ["lead.created", "lead.qualified"], handler)
    ...
    await bus.close()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import aio_pika
from faststream.rabbit import RabbitBroker

from event_relay.core.events.base import EventEnvelope
from event_relay.core.settings import get_rabbit_settings
from event_relay.infra.messaging.conventions import (
    RETRY_COUNT_HEADER,
    validate_binding_pattern,
    validate_routing_key,
)
from event_relay.infra.messaging.exceptions import (
    BusUnavailableError,
    PublishError,
    PublishTimeoutError,
)
from event_relay.infra.messaging.exchanges import (
    build_dlq_exchange,
    build_dlq_queue,
    build_events_exchange,
    create_queue_with_dlq,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from aio_pika.abc import AbstractIncomingMessage, AbstractRobustChannel, AbstractRobustQueue

    from event_relay.core.settings import RabbitSettings

logger = logging.getLogger(__name__)

ORIGINAL_ROUTING_KEY_HEADER = "x-original-routing-key"
"""Set on copies republished straight to a queue, where the AMQP routing key is the queue name."""


class ConnectionState(str, Enum):
    """Connection states for the RabbitMQ broker.

    Attributes:
        DISCONNECTED: Not connected, or closed on purpose.
        CONNECTING: First connection attempt in progress.
        CONNECTED: Connected and operational.
        RECONNECTING: Connection lost; the robust connection is retrying.
        FAILED: Gave up after the configured retry attempts.
    """

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class InboundMessage:
    """A delivery handed to a queue handler.

    ``ack``/``reject`` settle the delivery at most once; later calls are
    ignored. Without a raw AMQP message (in-memory buses) the outcome is only
    recorded.
    """

    body: bytes
    routing_key: str
    queue: str
    headers: dict[str, Any] = field(default_factory=dict)
    message_id: str | None = None
    redelivered: bool = False
    raw: AbstractIncomingMessage | None = None
    outcome: str | None = None

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    @property
    def retry_count(self) -> int:
        """How many times a consumer has republished this message."""
        try:
            return int(self.headers.get(RETRY_COUNT_HEADER, 0))
        except (TypeError, ValueError):
            return 0

    def envelope(self) -> EventEnvelope:
        """Decode the body.

        Raises:
            pydantic.ValidationError: If the body is not a valid envelope.
        """
        return EventEnvelope.from_wire(self.body)

    async def ack(self) -> None:
        if self.settled:
            return
        self.outcome = "ack"
        if self.raw is not None:
            await self.raw.ack()

    async def reject(self, *, requeue: bool = False) -> None:
        if self.settled:
            return
        self.outcome = "requeue" if requeue else "reject"
        if self.raw is not None:
            await self.raw.reject(requeue=requeue)

    @classmethod
    def from_aio_pika(cls, message: AbstractIncomingMessage, queue: str) -> InboundMessage:
        headers = dict(message.headers or {})
        original = headers.get(ORIGINAL_ROUTING_KEY_HEADER)
        if isinstance(original, bytes):
            original = original.decode()
        return cls(
            body=message.body,
            routing_key=original or message.routing_key or "",
            queue=queue,
            headers=headers,
            message_id=message.message_id,
            redelivered=bool(message.redelivered),
            raw=message,
        )


@dataclass
class _Subscription:
    queue_name: str
    routing_keys: set[str]
    handler: Callable[[InboundMessage], Awaitable[None]]
    queue: AbstractRobustQueue | None = None
    bound_keys: set[str] = field(default_factory=set)
    consumer_tag: str | None = None


class BusClient:
    """Publish/subscribe over one durable RabbitMQ topic exchange."""

    def __init__(self, settings: RabbitSettings | None = None, *, broker: RabbitBroker | None = None) -> None:
        self.settings = settings or get_rabbit_settings()
        self._broker = broker or RabbitBroker(
            self.settings.url,
            graceful_timeout=self.settings.graceful_timeout,
            logger=logger,
        )
        self._exchange_def = build_events_exchange(self.settings)
        self._state = ConnectionState.DISCONNECTED
        self._connection: Any = None
        self._channel: AbstractRobustChannel | None = None
        self._consume_exchange: Any = None
        self._subscriptions: dict[str, _Subscription] = {}
        self._subscribe_lock = asyncio.Lock()
        self._closing = False
        self._reconnect_task: asyncio.Task[None] | None = None

    # ──────────────────────────────────────────────────────
    # Connection
    # ──────────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        if self._state is not ConnectionState.CONNECTED:
            return False
        is_closed = getattr(self._connection, "is_closed", False)
        return not (is_closed is True)

    @property
    def broker(self) -> RabbitBroker:
        return self._broker

    async def connect(self) -> None:
        """Connect with bounded attempts and exponential backoff.

        Raises:
            BusUnavailableError: When every attempt failed.
        """
        if self.is_connected:
            return

        self._closing = False
        self._state = ConnectionState.CONNECTING
        attempts = self.settings.retry_attempts + 1

        for attempt in range(1, attempts + 1):
            try:
                connection = await asyncio.wait_for(
                    self._broker.connect(),
                    timeout=self.settings.connection_timeout,
                )
                await self._broker.declare_exchange(self._exchange_def)
                break
            except Exception as e:
                reason = (
                    f"timeout after {self.settings.connection_timeout}s"
                    if isinstance(e, TimeoutError)
                    else str(e)
                )
                if attempt >= attempts:
                    self._state = ConnectionState.FAILED
                    logger.error(
                        "RabbitMQ connection failed",
                        extra={"attempts": attempts, "host": self.settings.host, "error": reason},
                    )
                    raise BusUnavailableError(f"Could not connect to RabbitMQ: {reason}") from e

                delay = min(self.settings.retry_backoff * 2 ** (attempt - 1), self.settings.retry_backoff_max)
                logger.warning(
                    "RabbitMQ connection attempt failed, retrying",
                    extra={"attempt": attempt, "max_attempts": attempts, "delay": delay, "error": reason},
                )
                await asyncio.sleep(delay)

        self._attach_connection(connection)
        self._state = ConnectionState.CONNECTED
        logger.info(
            "Connected to RabbitMQ",
            extra={"host": self.settings.host, "exchange": self._exchange_def.name},
        )

        # Subscriptions requested while disconnected
        await self._restore_subscriptions()

    def connect_in_background(self) -> asyncio.Task[None]:
        """Keep trying to connect until it works; used in degraded startup."""
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._connect_forever(), name="bus-connect")
        return self._reconnect_task

    async def _connect_forever(self) -> None:
        delay = self.settings.retry_backoff or 1.0
        while not self._closing and not self.is_connected:
            try:
                await self.connect()
            except BusUnavailableError:
                self._state = ConnectionState.RECONNECTING
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.settings.retry_backoff_max or delay)

    def _attach_connection(self, connection: Any) -> None:
        self._connection = connection
        close_callbacks = getattr(connection, "close_callbacks", None)
        if close_callbacks is not None:
            close_callbacks.add(self._on_connection_closed)
        reconnect_callbacks = getattr(connection, "reconnect_callbacks", None)
        if reconnect_callbacks is not None:
            reconnect_callbacks.add(self._on_connection_reconnected)

    def _on_connection_closed(self, *args: Any) -> None:
        if self._closing:
            self._state = ConnectionState.DISCONNECTED
            return
        self._state = ConnectionState.RECONNECTING
        error = args[1] if len(args) > 1 else None
        logger.warning("RabbitMQ connection lost, reconnecting", extra={"error": str(error) if error else None})

    def _on_connection_reconnected(self, *args: Any) -> None:
        _ = args
        self._state = ConnectionState.CONNECTED
        logger.info("RabbitMQ connection re-established")

    # ──────────────────────────────────────────────────────
    # Publishing
    # ──────────────────────────────────────────────────────

    async def publish(self, routing_key: str, envelope: EventEnvelope) -> None:
        """Publish an envelope to the topic exchange.

        Fails fast instead of waiting for a reconnect; the outbox retries.

        Raises:
            BusUnavailableError: Not connected.
            PublishTimeoutError: The broker did not confirm in time.
            PublishError: The broker rejected the message.
        """
        if not self.is_connected:
            raise BusUnavailableError(f"RabbitMQ is {self._state.value}; cannot publish")

        validate_routing_key(routing_key)
        try:
            await asyncio.wait_for(
                self._broker.publish(
                    envelope.to_wire(),
                    exchange=self._exchange_def,
                    routing_key=routing_key,
                    persist=True,
                    mandatory=False,
                    message_id=envelope.event_id,
                    headers=envelope.headers(),
                ),
                timeout=self.settings.publish_timeout,
            )
        except TimeoutError as e:
            raise PublishTimeoutError(
                f"Publish timed out after {self.settings.publish_timeout}s",
                routing_key=routing_key,
                event_id=envelope.event_id,
            ) from e
        except Exception as e:
            raise PublishError(str(e) or type(e).__name__, routing_key=routing_key, event_id=envelope.event_id) from e

    async def republish_to_queue(self, queue_name: str, message: InboundMessage, headers: dict[str, Any]) -> None:
        """Send a copy of a delivery straight to one queue via the default exchange.

        The original routing key travels in a header so handlers still match.
        """
        if not self.is_connected:
            raise BusUnavailableError(f"RabbitMQ is {self._state.value}; cannot republish")

        all_headers = {**message.headers, **headers, ORIGINAL_ROUTING_KEY_HEADER: message.routing_key}
        try:
            await asyncio.wait_for(
                self._broker.publish(
                    message.body,
                    queue=queue_name,
                    persist=True,
                    mandatory=False,
                    message_id=message.message_id,
                    headers=all_headers,
                    content_type="application/json",
                ),
                timeout=self.settings.publish_timeout,
            )
        except TimeoutError as e:
            raise PublishTimeoutError(
                f"Republish timed out after {self.settings.publish_timeout}s",
                routing_key=queue_name,
                event_id=message.message_id,
            ) from e
        except Exception as e:
            raise PublishError(str(e) or type(e).__name__, routing_key=queue_name, event_id=message.message_id) from e

    # ──────────────────────────────────────────────────────
    # Subscribing
    # ──────────────────────────────────────────────────────

    async def subscribe(
        self,
        queue_name: str,
        routing_keys: Iterable[str],
        handler: Callable[[InboundMessage], Awaitable[None]],
    ) -> None:
        """Declare a durable queue, bind it and start one consumer.

        Repeating a call is safe: keys already bound are skipped, new keys are
        bound in addition, the handler is replaced and the queue keeps exactly
        one consumer. While disconnected the request is kept and applied on
        the next ``connect()``.
        """
        keys = {validate_binding_pattern(key) for key in routing_keys}
        if not keys:
            raise ValueError(f"Queue {queue_name!r} needs at least one routing key")

        async with self._subscribe_lock:
            subscription = self._subscriptions.get(queue_name)
            if subscription is None:
                subscription = _Subscription(queue_name, set(keys), handler)
                self._subscriptions[queue_name] = subscription
            else:
                subscription.routing_keys |= keys
                subscription.handler = handler

            if self.is_connected:
                await self._apply_subscription(subscription)
            else:
                logger.info(
                    "RabbitMQ not connected, subscription deferred",
                    extra={"queue": queue_name, "routing_keys": sorted(keys)},
                )

    async def _restore_subscriptions(self) -> None:
        async with self._subscribe_lock:
            for subscription in self._subscriptions.values():
                await self._apply_subscription(subscription)

    async def _ensure_channel(self) -> AbstractRobustChannel:
        if self._channel is not None and not self._channel.is_closed:
            return self._channel

        channel = await self._connection.channel()
        await channel.set_qos(prefetch_count=self.settings.prefetch_count)

        self._consume_exchange = await channel.declare_exchange(
            self._exchange_def.name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        dlq_exchange_def = build_dlq_exchange(self.settings)
        dlq_exchange = await channel.declare_exchange(
            dlq_exchange_def.name,
            aio_pika.ExchangeType.TOPIC,
            durable=True,
        )
        dlq_queue_def = build_dlq_queue(self.settings)
        dlq_queue = await channel.declare_queue(dlq_queue_def.name, durable=True)
        await dlq_queue.bind(dlq_exchange, routing_key=dlq_queue_def.routing_key)

        self._channel = channel
        return channel

    async def _apply_subscription(self, subscription: _Subscription) -> None:
        channel = await self._ensure_channel()

        if subscription.queue is None:
            queue_def = create_queue_with_dlq(subscription.queue_name, self.settings)
            subscription.queue = await channel.declare_queue(
                queue_def.name,
                durable=True,
                arguments=queue_def.arguments,
            )

        for key in sorted(subscription.routing_keys - subscription.bound_keys):
            await subscription.queue.bind(self._consume_exchange, routing_key=key)
            subscription.bound_keys.add(key)
            logger.info("Queue bound", extra={"queue": subscription.queue_name, "routing_key": key})

        if subscription.consumer_tag is None:
            queue_name = subscription.queue_name

            async def _on_message(message: AbstractIncomingMessage) -> None:
                await self._deliver(queue_name, message)

            subscription.consumer_tag = await subscription.queue.consume(_on_message)
            logger.info("Consumer started", extra={"queue": queue_name})

    async def _deliver(self, queue_name: str, message: AbstractIncomingMessage) -> None:
        subscription = self._subscriptions.get(queue_name)
        inbound = InboundMessage.from_aio_pika(message, queue_name)
        if subscription is None:
            await inbound.reject(requeue=True)
            return

        try:
            await subscription.handler(inbound)
        except Exception:
            logger.exception(
                "Queue handler raised, dead-lettering message",
                extra={"queue": queue_name, "message_id": inbound.message_id},
            )
            await inbound.reject(requeue=False)
            return

        if not inbound.settled:
            await inbound.ack()

    @property
    def subscriptions(self) -> dict[str, set[str]]:
        """Queue name to requested routing keys."""
        return {name: set(sub.routing_keys) for name, sub in self._subscriptions.items()}

    # ──────────────────────────────────────────────────────
    # Shutdown and health
    # ──────────────────────────────────────────────────────

    async def close(self) -> None:
        """Cancel consumers and close the connection."""
        self._closing = True

        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reconnect_task
        self._reconnect_task = None

        for subscription in self._subscriptions.values():
            if subscription.queue is not None and subscription.consumer_tag is not None:
                try:
                    await subscription.queue.cancel(subscription.consumer_tag)
                except Exception as e:
                    logger.warning("Error cancelling consumer", extra={"queue": subscription.queue_name, "error": str(e)})
            subscription.queue = None
            subscription.consumer_tag = None
            subscription.bound_keys.clear()

        if self._channel is not None:
            with contextlib.suppress(Exception):
                await self._channel.close()
            self._channel = None

        try:
            await self._broker.close()
            logger.info("RabbitMQ connection closed")
        except Exception as e:
            logger.exception("Error stopping RabbitMQ broker", extra={"error": str(e)})
        finally:
            self._connection = None
            self._state = ConnectionState.DISCONNECTED

    async def health(self) -> dict[str, Any]:
        """Health information in the shape used by ``/health``.

        Returns:
            Dictionary with status, state, is_connected and an optional reason.
        """
        if not self.settings.is_configured:
            return {
                "status": "unavailable",
                "state": ConnectionState.DISCONNECTED.value,
                "is_connected": False,
                "reason": "rabbitmq_not_enabled",
            }
        if self.is_connected:
            return {
                "status": "healthy",
                "state": self._state.value,
                "is_connected": True,
                "subscriptions": len(self._subscriptions),
            }
        return {
            "status": "unhealthy",
            "state": self._state.value,
            "is_connected": False,
            "reason": "connection_closed" if self._connection is not None else "not_connected",
        }


__all__ = [
    "BusClient",
    "ConnectionState",
    "InboundMessage",
    "ORIGINAL_ROUTING_KEY_HEADER",
]
