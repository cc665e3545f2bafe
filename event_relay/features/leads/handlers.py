"""Consumers reacting to lead, auth and billing events.

Handlers are plain async functions taking the typed payload and the
envelope. ``register_lead_handlers`` wires them to their queues during
startup; each queue handler is wrapped in ``IdempotentHandler`` so a
redelivered event is not acted on twice.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from event_relay.core.events import event_registry
from event_relay.features.leads.events import (
    CoachRegistered,
    LeadCreated,
    LeadLandingSubmitted,
    LeadQualified,
    LeadStatusUpdated,
    PaymentCompleted,
)
from event_relay.infra.messaging.idempotency import IdempotentHandler

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from event_relay.core.events import EventEnvelope
    from event_relay.infra.messaging.registry import SubscriptionRegistry

logger = logging.getLogger(__name__)

LEADS_QUEUE = "email.leads"
BILLING_QUEUE = "email.billing"

LEADS_ROUTING_KEYS = (
    "lead.created",
    "lead.status.updated",
    "lead.landing.submitted",
    "lead.qualified",
    "auth.coach.registered",
)
BILLING_ROUTING_KEYS = ("billing.payment.completed",)


async def on_lead_created(event: LeadCreated, envelope: EventEnvelope) -> None:
    logger.info(
        "Lead follow-up sequence scheduled",
        extra={"lead_id": event.lead_id, "source": event.source, "producer": envelope.producer},
    )


async def on_landing_submitted(event: LeadLandingSubmitted, envelope: EventEnvelope) -> None:
    """Qualified landing leads get a coach account invitation."""
    if not event.qualified:
        logger.info("Landing lead not qualified, no invitation", extra={"lead_id": event.lead_id})
        return
    first_name, _, last_name = event.name.strip().partition(" ")
    logger.info(
        "Coach account invitation queued",
        extra={
            "lead_id": event.lead_id,
            "first_name": first_name,
            "has_last_name": bool(last_name),
            "marketing_opt_in": event.marketing_opt_in,
            "occurred_at": envelope.occurred_at.isoformat(),
        },
    )


async def on_lead_status_updated(event: LeadStatusUpdated, envelope: EventEnvelope) -> None:
    _ = envelope
    logger.info(
        "Lead status change noted",
        extra={"lead_id": event.lead_id, "previous_status": event.previous_status, "new_status": event.new_status},
    )


async def on_lead_qualified(event: LeadQualified, envelope: EventEnvelope) -> None:
    _ = envelope
    logger.info("Qualified lead welcome email queued", extra={"lead_id": event.lead_id})


async def on_coach_registered(event: CoachRegistered, envelope: EventEnvelope) -> None:
    _ = envelope
    logger.info("Coach welcome email queued", extra={"coach_id": event.coach_id})


async def on_payment_completed(event: PaymentCompleted, envelope: EventEnvelope) -> None:
    _ = envelope
    logger.info(
        "Payment confirmation email queued",
        extra={"coach_id": event.coach_id, "transaction_id": event.transaction_id, "amount": event.amount},
    )


HANDLERS: dict[str, Callable[[Any, EventEnvelope], Awaitable[None]]] = {
    LeadCreated.event_type: on_lead_created,
    LeadLandingSubmitted.event_type: on_landing_submitted,
    LeadStatusUpdated.event_type: on_lead_status_updated,
    LeadQualified.event_type: on_lead_qualified,
    CoachRegistered.event_type: on_coach_registered,
    PaymentCompleted.event_type: on_payment_completed,
}


async def handle_event(envelope: EventEnvelope) -> None:
    """Decode the payload and call the handler for its event type.

    Raises:
        UnknownEventTypeError: No payload class is registered for the type.
        pydantic.ValidationError: The payload does not match its class.
    """
    handler = HANDLERS.get(envelope.event_type)
    if handler is None:
        logger.debug("No lead handler for event type", extra={"event_type": envelope.event_type})
        return
    payload = event_registry.deserialize(envelope)
    await handler(payload, envelope)


def register_lead_handlers(
    registry: SubscriptionRegistry,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    """Add the email consumers to ``registry``; call before ``register_all()``."""
    registry.add(
        LEADS_QUEUE,
        LEADS_ROUTING_KEYS,
        IdempotentHandler(LEADS_QUEUE, handle_event, session_factory),
        name=LEADS_QUEUE,
    )
    registry.add(
        BILLING_QUEUE,
        BILLING_ROUTING_KEYS,
        IdempotentHandler(BILLING_QUEUE, handle_event, session_factory),
        name=BILLING_QUEUE,
    )


__all__ = [
    "BILLING_QUEUE",
    "HANDLERS",
    "LEADS_QUEUE",
    "handle_event",
    "register_lead_handlers",
]
