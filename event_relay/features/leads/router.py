"""API router for the leads feature."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, status

from event_relay.features.leads.dependencies import LeadServiceDep
from event_relay.features.leads.schemas import LandingLeadCreate, LeadResponse
from event_relay.infra.security import verify_landing_request

router = APIRouter(prefix="/leads", tags=["leads"])

logger = logging.getLogger(__name__)


@router.post(
    "/landing",
    response_model=LeadResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Submit the landing page form",
    description="""
Public endpoint for the marketing site. The request must be signed:

- `x-anti-spam-token`: signer identity
- `x-anti-spam-timestamp`: Unix epoch milliseconds
- `x-anti-spam-signature`: hex HMAC-SHA256 of `METHOD|path|rawBody|timestamp`
""",
    responses={
        401: {"description": "Missing or invalid signature headers"},
        403: {"description": "Replay detected or timestamp outside the window"},
        409: {"description": "Email already submitted within the last 3 months"},
    },
    dependencies=[Depends(verify_landing_request)],
)
async def submit_landing_lead(data: LandingLeadCreate, service: LeadServiceDep) -> LeadResponse:
    lead = await service.create_from_landing(data)
    return LeadResponse.model_validate(lead)
