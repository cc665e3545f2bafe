"""Event catalogue for leads and the events the leads consumers react to.

Payload field names on the wire follow the platform convention
(``leadID``, ``coachID``, ``transactionID``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, ClassVar

from pydantic import Field

from event_relay.core.events import EventPayload, event_registry


class LeadEventPayload(EventPayload):
    """Shared ``leadID`` field."""

    abstract: ClassVar[bool] = True

    lead_id: str = Field(alias="leadID", description="UUID of the lead")


@event_registry.register
class LeadCreated(LeadEventPayload):
    """A lead was entered by a coach or an admin."""

    event_type: ClassVar[str] = "lead.created"

    email: str
    name: str | None = None
    source: str | None = None
    coach_id: str | None = Field(default=None, alias="coachID")


@event_registry.register
class LeadLandingSubmitted(LeadEventPayload):
    """The landing page form was submitted."""

    event_type: ClassVar[str] = "lead.landing.submitted"

    name: str
    email: str
    phone: str | None = None
    answers: dict[str, Any] = Field(default_factory=dict)
    marketing_opt_in: bool = False
    qualified: bool = False
    submitted_at: datetime


@event_registry.register
class LeadStatusUpdated(LeadEventPayload):
    event_type: ClassVar[str] = "lead.status.updated"

    previous_status: str | None = None
    new_status: str
    coach_id: str | None = Field(default=None, alias="coachID")


@event_registry.register
class LeadQualified(LeadEventPayload):
    event_type: ClassVar[str] = "lead.qualified"

    email: str


@event_registry.register
class CoachRegistered(EventPayload):
    """Published by the auth service."""

    event_type: ClassVar[str] = "auth.coach.registered"

    coach_id: str = Field(alias="coachID")
    email: str
    first_name: str | None = None
    last_name: str | None = None


@event_registry.register
class PaymentCompleted(EventPayload):
    """Published by the billing service."""

    event_type: ClassVar[str] = "billing.payment.completed"

    coach_id: str = Field(alias="coachID")
    transaction_id: str = Field(alias="transactionID")
    amount: float
    plan_name: str | None = None


__all__ = [
    "CoachRegistered",
    "LeadCreated",
    "LeadEventPayload",
    "LeadLandingSubmitted",
    "LeadQualified",
    "LeadStatusUpdated",
    "PaymentCompleted",
]
