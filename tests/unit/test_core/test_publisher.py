"""Unit tests for OutboxStore and EventPublisher."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from event_relay.core.events import EventEnvelope, EventPublisher, OutboxStore, UnknownEventTypeError
from event_relay.features.leads.events import LeadCreated
from event_relay.features.leads.models import Lead
from event_relay.infra.events.outbox.models import OutboxEntry, OutboxStatus
from event_relay.infra.messaging.exceptions import InvalidRoutingKeyError


async def _count(session_factory, model) -> int:
    async with session_factory() as session:
        return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestOutboxStore:
    async def test_record_event_inserts_pending_row(self, session_factory, make_envelope):
        envelope = make_envelope()

        async with session_factory() as session, session.begin():
            entry = await OutboxStore().record_event(session, envelope)

        assert entry.status == OutboxStatus.PENDING.value
        async with session_factory() as session:
            row = (await session.execute(select(OutboxEntry))).scalar_one()
        assert row.event_id == envelope.event_id
        assert row.routing_key == "lead.created"
        assert row.retry_count == 0
        assert json.loads(row.payload)["eventID"] == envelope.event_id

    async def test_record_event_uses_explicit_routing_key(self, session_factory, make_envelope):
        async with session_factory() as session, session.begin():
            entry = await OutboxStore().record_event(session, make_envelope(), "lead.created.vip")

        assert entry.routing_key == "lead.created.vip"

    async def test_record_event_does_not_commit(self, session_factory, make_envelope):
        async with session_factory() as session:
            await session.begin()
            await OutboxStore().record_event(session, make_envelope())
            await session.rollback()

        assert await _count(session_factory, OutboxEntry) == 0

    async def test_duplicate_event_id_fails_in_caller_transaction(self, session_factory, make_envelope):
        envelope = make_envelope()
        async with session_factory() as session, session.begin():
            await OutboxStore().record_event(session, envelope)

        with pytest.raises(IntegrityError):
            async with session_factory() as session, session.begin():
                await OutboxStore().record_event(session, envelope)

        assert await _count(session_factory, OutboxEntry) == 1

    async def test_wildcard_routing_key_is_rejected(self, session_factory, make_envelope):
        with pytest.raises(InvalidRoutingKeyError):
            async with session_factory() as session, session.begin():
                await OutboxStore().record_event(session, make_envelope(), "lead.*")


class TestEventPublisher:
    async def test_domain_change_and_event_commit_together(self, publisher, session_factory):
        async with publisher.transaction() as session:
            lead = Lead(name="Ada", email="ada@example.com")
            session.add(lead)
            await session.flush()
            envelope = await publisher.record(session, LeadCreated(lead_id=str(lead.id), email=lead.email))

        assert await _count(session_factory, Lead) == 1
        async with session_factory() as session:
            row = (await session.execute(select(OutboxEntry))).scalar_one()
        assert row.event_id == envelope.event_id
        assert envelope.producer == "leads"
        assert envelope.source == "leads.test"

    async def test_rollback_discards_both(self, publisher, session_factory):
        with pytest.raises(RuntimeError, match="boom"):
            async with publisher.transaction() as session:
                lead = Lead(name="Ada", email="ada@example.com")
                session.add(lead)
                await session.flush()
                await publisher.record(session, LeadCreated(lead_id=str(lead.id), email=lead.email))
                raise RuntimeError("boom")

        assert await _count(session_factory, Lead) == 0
        assert await _count(session_factory, OutboxEntry) == 0

    async def test_invalid_payload_never_reaches_outbox(self, publisher, session_factory):
        with pytest.raises(ValidationError):
            async with publisher.transaction() as session:
                envelope = EventEnvelope(
                    event_type="lead.created",
                    producer="leads",
                    source="leads.test",
                    payload={"leadID": "L1"},
                )
                await publisher.record(session, envelope)

        assert await _count(session_factory, OutboxEntry) == 0

    async def test_unknown_event_type_is_rejected(self, publisher):
        with pytest.raises(UnknownEventTypeError):
            publisher.build_envelope_from_dict("lead.teleported", {"leadID": "L1"})

    def test_build_envelope_from_dict(self, publisher):
        envelope = publisher.build_envelope_from_dict("lead.created", {"leadID": "L1", "email": "a@b.com"})

        assert envelope.event_type == "lead.created"
        assert envelope.payload["leadID"] == "L1"

    def test_prebuilt_envelope_keeps_its_id(self, publisher, make_envelope):
        envelope = make_envelope()

        assert publisher.build_envelope(envelope) is envelope

    async def test_save_and_publish_event_triggers_drainer(self, session_factory, app_settings):
        drainer = MagicMock()
        publisher = EventPublisher(session_factory, drainer=drainer, app_settings=app_settings)

        envelope = await publisher.save_and_publish_event(LeadCreated(lead_id="L1", email="a@b.com"))

        drainer.trigger.assert_called_once_with()
        async with session_factory() as session:
            row = (await session.execute(select(OutboxEntry))).scalar_one()
        assert row.event_id == envelope.event_id

    async def test_failed_transaction_does_not_trigger(self, session_factory, app_settings):
        drainer = MagicMock()
        publisher = EventPublisher(session_factory, drainer=drainer, app_settings=app_settings)

        with pytest.raises(RuntimeError):
            async with publisher.transaction():
                raise RuntimeError("rollback")

        drainer.trigger.assert_not_called()

    async def test_transaction_requires_session_factory(self, app_settings):
        publisher = EventPublisher(app_settings=app_settings)

        with pytest.raises(RuntimeError, match="session factory"):
            async with publisher.transaction():
                pass

    async def test_future_event_is_stored_without_triggering(self, session_factory, app_settings):
        drainer = MagicMock()
        publisher = EventPublisher(session_factory, drainer=drainer, app_settings=app_settings)
        when = datetime.now(UTC) + timedelta(hours=1)

        await publisher.save_and_publish_event(LeadCreated(lead_id="L1", email="a@b.com"), scheduled_for=when)

        drainer.trigger.assert_not_called()
        async with session_factory() as session:
            row = (await session.execute(select(OutboxEntry))).scalar_one()
        assert row.scheduled_for.replace(tzinfo=None) == when.replace(tzinfo=None)

    async def test_past_due_event_triggers(self, session_factory, app_settings):
        drainer = MagicMock()
        publisher = EventPublisher(session_factory, drainer=drainer, app_settings=app_settings)

        await publisher.save_and_publish_event(
            LeadCreated(lead_id="L1", email="a@b.com"),
            scheduled_for=datetime.now(UTC) - timedelta(seconds=1),
        )

        drainer.trigger.assert_called_once_with()

    async def test_scheduled_for_is_stored_in_utc(self, session_factory, make_envelope):
        local = datetime(2026, 10, 19, 11, 0, tzinfo=timezone(timedelta(hours=2)))
        naive = datetime(2026, 10, 19, 9, 30)

        async with session_factory() as session, session.begin():
            aware_entry = await OutboxStore().record_event(session, make_envelope("L1"), scheduled_for=local)
            naive_entry = await OutboxStore().record_event(session, make_envelope("L2"), scheduled_for=naive)

        assert aware_entry.scheduled_for == datetime(2026, 10, 19, 9, 0, tzinfo=UTC)
        assert naive_entry.scheduled_for == datetime(2026, 10, 19, 9, 30, tzinfo=UTC)
