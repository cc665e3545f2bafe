"""Application lifespan management.

Startup order:
1. Logging
2. Database
3. Bus client (RabbitMQ); degraded mode unless RABBIT_STARTUP_REQUIRE_RABBIT
4. Subscriptions (``SubscriptionRegistry.register_all``)
5. Outbox drainer

Shutdown runs in reverse: drainer, bus, database, logging.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from event_relay.core.settings import (
    get_app_settings,
    get_db_settings,
    get_logging_settings,
    get_outbox_settings,
    get_rabbit_settings,
)
from event_relay.infra.logging.config import setup_logging
from event_relay.infra.logging.config import shutdown as shutdown_logging

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from fastapi import FastAPI

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start and stop every service the relay depends on."""
    from event_relay.features.leads.handlers import register_lead_handlers
    from event_relay.infra.database.session import close_database, get_session_factory, init_database
    from event_relay.infra.events.outbox.processor import start_outbox_drainer, stop_outbox_drainer
    from event_relay.infra.messaging.client import BusClient
    from event_relay.infra.messaging.exceptions import BusUnavailableError
    from event_relay.infra.messaging.registry import SubscriptionRegistry

    app_settings = get_app_settings()
    db_settings = get_db_settings()
    rabbit_settings = get_rabbit_settings()
    outbox_settings = get_outbox_settings()

    # ── Startup ──────────────────────────────────────────
    setup_logging(get_logging_settings(), service_name=app_settings.service_name)
    logger.info(
        "Application starting",
        extra={"service": app_settings.service_name, "environment": app_settings.environment},
    )

    await init_database(create_tables=db_settings.is_sqlite)
    session_factory = get_session_factory()

    bus = BusClient(rabbit_settings)
    if rabbit_settings.is_configured:
        try:
            await bus.connect()
        except BusUnavailableError as e:
            if rabbit_settings.startup_require_rabbit:
                logger.error(
                    "RabbitMQ required but unavailable, failing startup",
                    extra={"error": str(e), "startup_require_rabbit": True},
                )
                await close_database()
                raise
            logger.warning(
                "RabbitMQ unavailable, continuing in degraded mode",
                extra={"error": str(e), "startup_require_rabbit": False},
            )
            bus.connect_in_background()

    registry = SubscriptionRegistry(bus, rabbit_settings)
    register_lead_handlers(registry, session_factory)
    # Deferred by the bus while disconnected, applied on connect
    await registry.register_all()

    drainer = await start_outbox_drainer(bus, session_factory, outbox_settings)

    app.state.bus = bus
    app.state.subscriptions = registry
    app.state.drainer = drainer
    logger.info("Application started", extra={"bus_state": bus.state.value, "drainer_running": drainer.is_running})

    try:
        yield
    finally:
        # ── Shutdown ─────────────────────────────────────
        logger.info("Application shutting down")
        await stop_outbox_drainer()
        await bus.close()
        await close_database()
        logger.info("Application stopped")
        shutdown_logging()


__all__ = ["lifespan"]
