"""Health check API endpoints.

- ``/health/live``: the process is up
- ``/health/``: database, bus and outbox backlog
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text

from event_relay.core.settings import get_app_settings
from event_relay.infra.database.session import get_session_factory
from event_relay.infra.events.outbox.models import OutboxStatus
from event_relay.infra.events.outbox.repository import OutboxRepository

router = APIRouter(prefix="/health", tags=["health"])

logger = logging.getLogger(__name__)


@router.get("/live", summary="Liveness probe")
async def liveness() -> dict[str, str]:
    return {"status": "alive"}


@router.get("/", summary="Dependency health")
async def health_check(request: Request, response: Response) -> dict[str, Any]:
    """Overall status with database, RabbitMQ and outbox details.

    ``degraded`` (HTTP 200) means requests are accepted and events queue up
    in the outbox; ``unhealthy`` (HTTP 503) means the database is down.
    """
    checks: dict[str, Any] = {}

    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
            counts = await OutboxRepository().count_by_status(session)
        checks["database"] = {"status": "healthy"}
        checks["outbox"] = {
            "status": "healthy",
            "pending": counts.get(OutboxStatus.PENDING.value, 0),
            "failed": counts.get(OutboxStatus.FAILED.value, 0),
        }
    except Exception as e:
        logger.warning("Database health check failed", extra={"error": str(e)})
        checks["database"] = {"status": "unhealthy", "reason": str(e)}

    bus = getattr(request.app.state, "bus", None)
    checks["messaging"] = await bus.health() if bus is not None else {"status": "unavailable"}

    drainer = getattr(request.app.state, "drainer", None)
    if "outbox" in checks:
        checks["outbox"]["drainer_running"] = bool(drainer and drainer.is_running)

    if checks["database"]["status"] != "healthy":
        overall = "unhealthy"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif checks["messaging"].get("status") != "healthy":
        overall = "degraded"
    else:
        overall = "healthy"

    app_settings = get_app_settings()
    return {
        "status": overall,
        "service": app_settings.service_name,
        "version": app_settings.version,
        "checks": checks,
    }
