"""FastAPI dependencies for the leads feature."""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from event_relay.core.events import EventPublisher, get_event_publisher
from event_relay.features.leads.service import LeadService


def get_lead_service(
    publisher: Annotated[EventPublisher, Depends(get_event_publisher)],
) -> LeadService:
    return LeadService(publisher)


LeadServiceDep = Annotated[LeadService, Depends(get_lead_service)]

__all__ = ["LeadServiceDep", "get_lead_service"]
