"""SQLAlchemy models for the leads feature."""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from event_relay.core.database.base import Base, TimestampMixin, UUIDv7PKMixin, utcnow


class LeadStatus(StrEnum):
    NOT_CONVERTED = "not_converted"
    CONTACTED = "contacted"
    SCHEDULED = "scheduled"
    CONVERTED = "converted"
    UNRESPONSIVE = "unresponsive"


class LeadType(StrEnum):
    ADMIN_LEAD = "admin_lead"
    COACH_LEAD = "coach_lead"


class Lead(Base, UUIDv7PKMixin, TimestampMixin):
    """A prospective customer captured from the landing page or by a coach."""

    __tablename__ = "leads"

    lead_type: Mapped[str] = mapped_column(String(32), default=LeadType.ADMIN_LEAD.value, nullable=False)
    coach_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True)
    source: Mapped[str] = mapped_column(String(64), default="Website", nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=LeadStatus.NOT_CONVERTED.value, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text(), nullable=True)
    answers: Mapped[dict[str, Any] | None] = mapped_column(JSON(), nullable=True)
    qualified: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    marketing_opt_in: Mapped[bool] = mapped_column(Boolean(), default=False, nullable=False)
    # Client-reported time; informational only
    submitted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    # Server time of the last landing submission; drives the resubmission window
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<Lead(id={self.id}, email={self.email}, status={self.status})>"
