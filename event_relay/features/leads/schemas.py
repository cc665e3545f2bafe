"""Pydantic schemas for the leads feature.

Request bodies use the landing site's camelCase field names.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

from event_relay.features.leads.models import LeadStatus


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class LandingLeadContact(_CamelModel):
    """Contact block of a landing submission."""

    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    marketing_opt_in: bool = False


class LandingLeadCreate(_CamelModel):
    """Body of ``POST /leads/landing``.

    Example:
        {
            "lead": {"name": "Ada Lovelace", "email": "ada@example.com", "marketingOptIn": true},
            "answers": {"clients": "10-50"},
            "qualified": true,
            "submittedAt": "2026-10-19T09:12:44Z"
        }
    """

    lead: LandingLeadContact
    answers: dict[str, Any] = Field(default_factory=dict)
    qualified: bool = False
    submitted_at: datetime | None = None


class LeadCreate(_CamelModel):
    """Lead entered by a coach or an admin."""

    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: str | None = Field(default=None, max_length=40)
    source: str = Field(default="Manual", max_length=64)
    coach_id: str | None = Field(default=None, alias="coachID")
    notes: str | None = None


class LeadResponse(_CamelModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    id: UUID
    name: str
    email: str
    phone: str | None = None
    source: str
    status: LeadStatus
    qualified: bool
    marketing_opt_in: bool
    submitted_at: datetime
    created_at: datetime
