"""Lead business operations.

Every operation that changes a lead records its event through the outbox in
the same transaction, so a lead row never exists without its event and an
event is never published for a change that rolled back.
"""

from __future__ import annotations

import logging
from datetime import UTC, timedelta
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import select

from event_relay.core.database.base import utcnow
from event_relay.core.exceptions import ConflictException, NotFoundException
from event_relay.features.leads.events import (
    LeadCreated,
    LeadLandingSubmitted,
    LeadQualified,
    LeadStatusUpdated,
)
from event_relay.features.leads.models import Lead, LeadStatus, LeadType

if TYPE_CHECKING:
    from event_relay.core.events import EventPublisher
    from event_relay.features.leads.schemas import LandingLeadCreate, LeadCreate

logger = logging.getLogger(__name__)

# A landing email may submit again only after this period
RESUBMIT_AFTER = timedelta(days=90)


class LeadService:
    """Orchestrates lead writes and their outbox events."""

    def __init__(self, publisher: EventPublisher) -> None:
        self._publisher = publisher

    async def create_from_landing(self, data: LandingLeadCreate) -> Lead:
        """Store a landing submission and record ``lead.landing.submitted``.

        A previous landing lead with the same email is updated in place. The
        90-day window is measured on server receive time; the client's
        ``submittedAt`` is stored and forwarded as reported.

        Raises:
            ConflictException: The email already submitted within the last
                90 days.
        """
        contact = data.lead
        received_at = utcnow()
        submitted_at = data.submitted_at or received_at
        if submitted_at.tzinfo is None:
            submitted_at = submitted_at.replace(tzinfo=UTC)

        async with self._publisher.transaction() as session:
            result = await session.execute(
                select(Lead)
                .where(Lead.email == contact.email, Lead.lead_type == LeadType.ADMIN_LEAD.value)
                .order_by(Lead.received_at.desc())
                .limit(1)
            )
            lead = result.scalar_one_or_none()

            if lead is not None:
                last = lead.received_at
                if last.tzinfo is None:
                    last = last.replace(tzinfo=UTC)
                if last >= received_at - RESUBMIT_AFTER:
                    raise ConflictException(
                        "A submission with this email was already received within the last 3 months",
                        type="duplicate-submission",
                    )
            else:
                lead = Lead(lead_type=LeadType.ADMIN_LEAD.value, email=str(contact.email), source="Website")
                session.add(lead)

            lead.name = contact.name
            lead.phone = contact.phone
            lead.status = LeadStatus.NOT_CONVERTED.value
            lead.answers = data.answers
            lead.qualified = data.qualified
            lead.marketing_opt_in = contact.marketing_opt_in
            lead.submitted_at = submitted_at
            lead.received_at = received_at
            await session.flush()

            await self._publisher.record(
                session,
                LeadLandingSubmitted(
                    lead_id=str(lead.id),
                    name=lead.name,
                    email=lead.email,
                    phone=lead.phone,
                    answers=data.answers,
                    marketing_opt_in=lead.marketing_opt_in,
                    qualified=lead.qualified,
                    submitted_at=submitted_at,
                ),
            )

        logger.info(
            "Landing lead accepted",
            extra={"lead_id": str(lead.id), "qualified": lead.qualified},
        )
        return lead

    async def create(self, data: LeadCreate) -> Lead:
        """Insert a lead and record ``lead.created``."""
        async with self._publisher.transaction() as session:
            lead = Lead(
                lead_type=LeadType.COACH_LEAD.value if data.coach_id else LeadType.ADMIN_LEAD.value,
                coach_id=data.coach_id,
                name=data.name,
                email=str(data.email),
                phone=data.phone,
                source=data.source,
                notes=data.notes,
            )
            session.add(lead)
            await session.flush()

            await self._publisher.record(
                session,
                LeadCreated(
                    lead_id=str(lead.id),
                    email=lead.email,
                    name=lead.name,
                    source=lead.source,
                    coach_id=lead.coach_id,
                ),
            )

        logger.info("Lead created", extra={"lead_id": str(lead.id), "source": lead.source})
        return lead

    async def update_status(self, lead_id: UUID, status: LeadStatus) -> Lead:
        """Change a lead's status and record ``lead.status.updated``.

        Moving to ``converted`` also records ``lead.qualified``.

        Raises:
            NotFoundException: No lead with this id.
        """
        async with self._publisher.transaction() as session:
            lead = await session.get(Lead, lead_id)
            if lead is None:
                raise NotFoundException(f"Lead {lead_id} not found", type="lead-not-found")

            previous = lead.status
            lead.status = status.value
            await self._publisher.record(
                session,
                LeadStatusUpdated(
                    lead_id=str(lead.id),
                    previous_status=previous,
                    new_status=status.value,
                    coach_id=lead.coach_id,
                ),
            )
            if status is LeadStatus.CONVERTED and previous != status.value:
                await self._publisher.record(session, LeadQualified(lead_id=str(lead.id), email=lead.email))

        logger.info(
            "Lead status updated",
            extra={"lead_id": str(lead_id), "previous_status": previous, "new_status": status.value},
        )
        return lead
