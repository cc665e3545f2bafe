"""Unit tests for the lead consumers and their queue wiring."""
from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from event_relay.core.events import EventEnvelope, event_registry
from event_relay.core.events.registry import UnknownEventTypeError
from event_relay.core.settings import RabbitSettings
from event_relay.features.leads.events import LeadLandingSubmitted, PaymentCompleted
from event_relay.features.leads.handlers import (
    BILLING_QUEUE,
    LEADS_QUEUE,
    handle_event,
    register_lead_handlers,
)
from event_relay.infra.messaging.registry import SubscriptionRegistry


def _wrap(payload) -> EventEnvelope:
    return EventEnvelope.wrap(payload, producer="leads", source="coaching-platform")


def _landing(*, qualified: bool) -> LeadLandingSubmitted:
    return LeadLandingSubmitted(
        lead_id="lead-1",
        name="Ada Lovelace",
        email="ada@example.com",
        qualified=qualified,
        submitted_at="2026-10-19T09:00:00Z",
    )


class TestHandleEvent:
    async def test_qualified_landing_lead_gets_invitation(self, caplog):
        with caplog.at_level(logging.INFO, logger="event_relay.features.leads.handlers"):
            await handle_event(_wrap(_landing(qualified=True)))

        (record,) = [r for r in caplog.records if r.getMessage() == "Coach account invitation queued"]
        assert record.first_name == "Ada"
        assert record.has_last_name is True

    async def test_unqualified_landing_lead_is_skipped(self, caplog):
        with caplog.at_level(logging.INFO, logger="event_relay.features.leads.handlers"):
            await handle_event(_wrap(_landing(qualified=False)))

        assert "Landing lead not qualified, no invitation" in caplog.messages

    async def test_payment_completed(self, caplog):
        envelope = _wrap(PaymentCompleted(coach_id="coach-7", transaction_id="tx-1", amount=49.0))

        with caplog.at_level(logging.INFO, logger="event_relay.features.leads.handlers"):
            await handle_event(envelope)

        assert "Payment confirmation email queued" in caplog.messages

    async def test_event_without_handler_is_ignored(self):
        envelope = EventEnvelope.from_wire(
            {
                **_wrap(_landing(qualified=True)).to_wire(),
                "eventType": "auth.password.reset",
                "payload": {},
            }
        )

        await handle_event(envelope)

    async def test_unregistered_type_with_handler_raises(self, monkeypatch):
        envelope = _wrap(_landing(qualified=True))
        monkeypatch.setattr(event_registry, "deserialize", _raise_unknown)

        with pytest.raises(UnknownEventTypeError):
            await handle_event(envelope)

    async def test_malformed_payload_raises(self):
        wire = _wrap(_landing(qualified=True)).to_wire()
        wire["payload"] = {"leadID": "lead-1"}

        with pytest.raises(ValidationError):
            await handle_event(EventEnvelope.from_wire(wire))


def _raise_unknown(envelope, **kwargs):
    _ = kwargs
    raise UnknownEventTypeError(envelope.event_type)


class TestRegistration:
    async def test_queues_and_bindings(self, bus, session_factory):
        registry = SubscriptionRegistry(bus, RabbitSettings())

        register_lead_handlers(registry, session_factory)

        queues = registry.queues()
        assert set(queues) == {LEADS_QUEUE, BILLING_QUEUE}
        assert queues[LEADS_QUEUE] == {
            "lead.created",
            "lead.status.updated",
            "lead.landing.submitted",
            "lead.qualified",
            "auth.coach.registered",
        }
        assert queues[BILLING_QUEUE] == {"billing.payment.completed"}

    async def test_delivery_is_deduplicated(self, bus, session_factory):
        registry = SubscriptionRegistry(bus, RabbitSettings())
        register_lead_handlers(registry, session_factory)
        await registry.register_all()
        envelope = _wrap(_landing(qualified=True))

        first = await bus.deliver("lead.landing.submitted", envelope)
        second = await bus.deliver("lead.landing.submitted", envelope)

        assert [m.outcome for m in first + second] == ["ack", "ack"]
