"""FastAPI application factory."""

from __future__ import annotations

from fastapi import FastAPI

from event_relay.app.exception_handlers import configure_exception_handlers
from event_relay.app.lifespan import lifespan
from event_relay.core.settings import get_app_settings
from event_relay.features.health.router import router as health_router
from event_relay.features.leads.router import router as leads_router


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    app_settings = get_app_settings()

    app = FastAPI(
        title=app_settings.title,
        version=app_settings.version,
        debug=app_settings.debug,
        lifespan=lifespan,
    )

    # Exception handlers first so router errors are rendered consistently
    configure_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(leads_router, prefix=app_settings.api_prefix)

    return app


# Application instance for uvicorn
app = create_app()
