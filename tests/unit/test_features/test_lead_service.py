"""Unit tests for LeadService writes and the events they record."""
from __future__ import annotations

import json
from datetime import timedelta
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from event_relay.core.database.base import utcnow
from event_relay.core.exceptions import ConflictException, NotFoundException
from event_relay.features.leads.models import Lead, LeadStatus, LeadType
from event_relay.features.leads.schemas import LandingLeadCreate, LeadCreate
from event_relay.features.leads.service import LeadService
from event_relay.infra.events.outbox.models import OutboxEntry


@pytest.fixture
def service(publisher) -> LeadService:
    return LeadService(publisher)


def landing(email: str = "ada@example.com", **overrides) -> LandingLeadCreate:
    body = {
        "lead": {"name": "Ada Lovelace", "email": email, "phone": "+33 6 00 00 00 00", "marketingOptIn": True},
        "answers": {"clients": "10-50"},
        "qualified": True,
    }
    body.update(overrides)
    return LandingLeadCreate.model_validate(body)


async def outbox_rows(session_factory) -> list[OutboxEntry]:
    async with session_factory() as session:
        result = await session.execute(select(OutboxEntry).order_by(OutboxEntry.id))
        return list(result.scalars())


class TestLandingSubmission:
    async def test_creates_lead_and_event(self, service, session_factory):
        lead = await service.create_from_landing(landing())

        assert lead.lead_type == LeadType.ADMIN_LEAD.value
        assert lead.source == "Website"
        assert lead.qualified is True
        (row,) = await outbox_rows(session_factory)
        assert row.event_type == "lead.landing.submitted"
        assert row.routing_key == "lead.landing.submitted"
        wire = json.loads(row.payload)
        assert wire["payload"]["leadID"] == str(lead.id)
        assert wire["payload"]["answers"] == {"clients": "10-50"}
        assert wire["payload"]["marketingOptIn"] is True
        assert wire["producer"] == "leads"

    async def test_duplicate_within_three_months_conflicts(self, service, session_factory):
        await service.create_from_landing(landing())

        with pytest.raises(ConflictException) as exc_info:
            await service.create_from_landing(landing())

        assert exc_info.value.type == "duplicate-submission"
        assert len(await outbox_rows(session_factory)) == 1

    async def test_resubmission_after_three_months_updates_lead(self, service, session_factory):
        first = await service.create_from_landing(landing(qualified=False))
        async with session_factory() as session, session.begin():
            await session.execute(
                update(Lead).where(Lead.id == first.id).values(received_at=utcnow() - timedelta(days=100))
            )

        second = await service.create_from_landing(landing())

        assert second.id == first.id
        assert second.qualified is True
        async with session_factory() as session:
            assert await session.scalar(select(func.count()).select_from(Lead)) == 1
        assert [row.event_type for row in await outbox_rows(session_factory)] == [
            "lead.landing.submitted",
            "lead.landing.submitted",
        ]

    async def test_back_dated_submission_still_conflicts(self, service, session_factory):
        back_dated = (utcnow() - timedelta(days=365)).isoformat()
        first = await service.create_from_landing(landing(submittedAt=back_dated))

        with pytest.raises(ConflictException):
            await service.create_from_landing(landing(submittedAt=back_dated))

        assert first.submitted_at < first.received_at - timedelta(days=300)
        (row,) = await outbox_rows(session_factory)
        assert json.loads(row.payload)["payload"]["submittedAt"].startswith(back_dated[:10])

    async def test_other_email_is_independent(self, service):
        await service.create_from_landing(landing())

        lead = await service.create_from_landing(landing(email="grace@example.com"))

        assert lead.email == "grace@example.com"


class TestCreate:
    async def test_records_lead_created(self, service, session_factory):
        lead = await service.create(LeadCreate(name="Grace", email="grace@example.com", coachID="coach-7"))

        assert lead.lead_type == LeadType.COACH_LEAD.value
        (row,) = await outbox_rows(session_factory)
        assert row.event_type == "lead.created"
        assert json.loads(row.payload)["payload"]["coachID"] == "coach-7"

    async def test_without_coach_is_admin_lead(self, service):
        lead = await service.create(LeadCreate(name="Grace", email="grace@example.com"))

        assert lead.lead_type == LeadType.ADMIN_LEAD.value
        assert lead.source == "Manual"


class TestUpdateStatus:
    async def test_records_status_change(self, service, session_factory):
        lead = await service.create(LeadCreate(name="Grace", email="grace@example.com"))

        updated = await service.update_status(lead.id, LeadStatus.CONTACTED)

        assert updated.status == LeadStatus.CONTACTED.value
        rows = await outbox_rows(session_factory)
        assert [row.event_type for row in rows] == ["lead.created", "lead.status.updated"]
        payload = json.loads(rows[1].payload)["payload"]
        assert payload["previousStatus"] == LeadStatus.NOT_CONVERTED.value
        assert payload["newStatus"] == LeadStatus.CONTACTED.value

    async def test_conversion_also_records_qualified(self, service, session_factory):
        lead = await service.create(LeadCreate(name="Grace", email="grace@example.com"))

        await service.update_status(lead.id, LeadStatus.CONVERTED)
        await service.update_status(lead.id, LeadStatus.CONVERTED)

        assert [row.event_type for row in await outbox_rows(session_factory)] == [
            "lead.created",
            "lead.status.updated",
            "lead.qualified",
            "lead.status.updated",
        ]

    async def test_missing_lead(self, service, session_factory):
        with pytest.raises(NotFoundException):
            await service.update_status(uuid4(), LeadStatus.CONTACTED)

        assert await outbox_rows(session_factory) == []
