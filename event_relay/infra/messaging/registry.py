"""Subscription registry: explicit startup wiring of queue handlers.

Handlers are declared as ``(queue, routing key patterns, handler)`` triples
and bound in one ``register_all()`` call during startup; nothing subscribes
as a side effect of constructing an object.

    registry = SubscriptionRegistry(bus)

    @registry.subscriber("email.leads", "lead.created", "lead.qualified")
    async def send_welcome(envelope: EventEnvelope) -> None:
        ...

    await registry.register_all()

Every handler whose patterns match a delivery runs in its own isolating
boundary. The delivery is acked only after all of them succeed; otherwise
the configured ``HandlerFailurePolicy`` decides between a bounded
redelivery and the dead-letter queue.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pydantic import ValidationError

from event_relay.core.settings import get_rabbit_settings
from event_relay.infra.logging.context import event_log_context
from event_relay.infra.messaging.conventions import (
    RETRY_COUNT_HEADER,
    matches_any,
    validate_binding_pattern,
)
from event_relay.infra.messaging.exceptions import BusError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from event_relay.core.events.base import EventEnvelope
    from event_relay.core.settings import RabbitSettings
    from event_relay.infra.messaging.client import BusClient, InboundMessage

    EventHandler = Callable[[EventEnvelope], Awaitable[None]]

logger = logging.getLogger(__name__)

FAILED_HANDLERS_HEADER = "x-failed-handlers"
"""Comma-separated handler names that still have to run on a redelivered copy."""


@dataclass(frozen=True)
class Subscription:
    """One registered handler."""

    queue_name: str
    routing_keys: tuple[str, ...]
    handler: EventHandler
    name: str


def _handler_name(handler: object) -> str:
    name = getattr(handler, "__qualname__", None) or getattr(handler, "__name__", None)
    if name is None:
        name = type(handler).__qualname__
    module = getattr(handler, "__module__", None)
    return f"{module}.{name}" if module else name


class SubscriptionRegistry:
    """Collects handler triples and binds them to the bus."""

    def __init__(self, bus: BusClient, settings: RabbitSettings | None = None) -> None:
        self._bus = bus
        self.settings = settings or get_rabbit_settings()
        self._subscriptions: list[Subscription] = []
        self._registered: dict[str, set[str]] = {}

    # ──────────────────────────────────────────────────────
    # Declaring handlers
    # ──────────────────────────────────────────────────────

    def add(
        self,
        queue_name: str,
        routing_keys: Iterable[str],
        handler: EventHandler,
        *,
        name: str | None = None,
    ) -> Subscription:
        """Record a handler for ``queue_name``.

        Adding the same handler to the same queue again merges the routing
        keys instead of creating a second entry.

        Raises:
            InvalidRoutingKeyError: If a pattern is malformed.
            ValueError: If no routing key is given, or the name is taken by
                another handler on the same queue.
        """
        keys = tuple(dict.fromkeys(validate_binding_pattern(k) for k in routing_keys))
        if not keys:
            raise ValueError(f"Handler for {queue_name!r} needs at least one routing key")
        handler_name = name or _handler_name(handler)

        for index, existing in enumerate(self._subscriptions):
            if existing.queue_name != queue_name or existing.name != handler_name:
                continue
            if existing.handler is not handler:
                raise ValueError(f"Handler name {handler_name!r} already used on queue {queue_name!r}")
            merged = Subscription(
                queue_name,
                tuple(dict.fromkeys((*existing.routing_keys, *keys))),
                handler,
                handler_name,
            )
            self._subscriptions[index] = merged
            return merged

        subscription = Subscription(queue_name, keys, handler, handler_name)
        self._subscriptions.append(subscription)
        return subscription

    def subscriber(
        self,
        queue_name: str,
        *routing_keys: str,
        name: str | None = None,
    ) -> Callable[[EventHandler], EventHandler]:
        """Decorator form of ``add``."""

        def decorator(handler: EventHandler) -> EventHandler:
            self.add(queue_name, routing_keys, handler, name=name)
            return handler

        return decorator

    @property
    def subscriptions(self) -> list[Subscription]:
        return list(self._subscriptions)

    def queues(self) -> dict[str, set[str]]:
        """Queue name to the union of its handlers' routing keys."""
        grouped: dict[str, set[str]] = {}
        for subscription in self._subscriptions:
            grouped.setdefault(subscription.queue_name, set()).update(subscription.routing_keys)
        return grouped

    # ──────────────────────────────────────────────────────
    # Binding
    # ──────────────────────────────────────────────────────

    async def register_all(self) -> None:
        """Subscribe every queue once with the union of its handlers' keys.

        Safe to call again: the bus binds only keys it has not bound yet.
        """
        for queue_name, keys in self.queues().items():
            await self._bus.subscribe(queue_name, sorted(keys), functools.partial(self.dispatch, queue_name))
            new_keys = keys - self._registered.get(queue_name, set())
            self._registered.setdefault(queue_name, set()).update(keys)
            logger.info(
                "Subscription registered",
                extra={
                    "queue": queue_name,
                    "routing_keys": sorted(keys),
                    "new_keys": sorted(new_keys),
                    "handlers": [s.name for s in self._subscriptions if s.queue_name == queue_name],
                },
            )

    # ──────────────────────────────────────────────────────
    # Dispatch
    # ──────────────────────────────────────────────────────

    def handlers_for(self, queue_name: str, routing_key: str) -> list[Subscription]:
        return [
            s
            for s in self._subscriptions
            if s.queue_name == queue_name and matches_any(s.routing_keys, routing_key)
        ]

    async def dispatch(self, queue_name: str, message: InboundMessage) -> None:
        """Run matching handlers for one delivery and settle it.

        Never raises: handler errors are logged and resolved by the failure
        policy.
        """
        try:
            envelope = message.envelope()
        except (ValidationError, ValueError) as e:
            logger.error(
                "Undecodable message rejected",
                extra={
                    "queue": queue_name,
                    "routing_key": message.routing_key,
                    "message_id": message.message_id,
                    "error": str(e),
                },
            )
            await message.reject(requeue=False)
            return

        handlers = self.handlers_for(queue_name, message.routing_key)
        pending = message.headers.get(FAILED_HANDLERS_HEADER)
        if pending:
            if isinstance(pending, bytes):
                pending = pending.decode()
            only = set(str(pending).split(","))
            handlers = [h for h in handlers if h.name in only]

        if not handlers:
            logger.debug(
                "No handler matched routing key",
                extra={"queue": queue_name, "routing_key": message.routing_key, "event_id": envelope.event_id},
            )
            await message.ack()
            return

        with event_log_context(
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            queue=queue_name,
        ):
            results = await asyncio.gather(*(self._run_isolated(h, envelope) for h in handlers))
            failed = [h for h, ok in zip(handlers, results, strict=True) if not ok]

            if not failed:
                await message.ack()
                return
            await self._on_failure(queue_name, message, envelope, failed)

    async def _run_isolated(self, subscription: Subscription, envelope: EventEnvelope) -> bool:
        try:
            await subscription.handler(envelope)
        except Exception:
            logger.exception(
                "Event handler failed",
                extra={
                    "event_id": envelope.event_id,
                    "event_type": envelope.event_type,
                    "queue": subscription.queue_name,
                    "handler": subscription.name,
                },
            )
            return False
        return True

    async def _on_failure(
        self,
        queue_name: str,
        message: InboundMessage,
        envelope: EventEnvelope,
        failed: list[Subscription],
    ) -> None:
        policy = self.settings.handler_failure_policy
        attempt = message.retry_count
        failed_names = [s.name for s in failed]

        if policy == "retry" and attempt < self.settings.handler_max_retries:
            headers = {
                RETRY_COUNT_HEADER: attempt + 1,
                FAILED_HANDLERS_HEADER: ",".join(failed_names),
            }
            try:
                await self._bus.republish_to_queue(queue_name, message, headers)
            except BusError as e:
                logger.warning(
                    "Could not schedule redelivery, requeueing",
                    extra={"event_id": envelope.event_id, "queue": queue_name, "error": str(e)},
                )
                await message.reject(requeue=True)
                return
            await message.ack()
            logger.warning(
                "Message scheduled for redelivery",
                extra={
                    "event_id": envelope.event_id,
                    "event_type": envelope.event_type,
                    "queue": queue_name,
                    "retry_count": attempt + 1,
                    "max_retries": self.settings.handler_max_retries,
                    "handlers": failed_names,
                },
            )
            return

        await message.reject(requeue=False)
        logger.error(
            "Message dead-lettered after handler failure",
            extra={
                "event_id": envelope.event_id,
                "event_type": envelope.event_type,
                "queue": queue_name,
                "retry_count": attempt,
                "policy": policy,
                "handlers": failed_names,
            },
        )


__all__ = ["FAILED_HANDLERS_HEADER", "Subscription", "SubscriptionRegistry"]
