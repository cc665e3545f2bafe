"""Server management commands."""

import click
import uvicorn

from event_relay.cli.utils import info
from event_relay.core.settings import get_app_settings


@click.group(name="server")
def server() -> None:
    """Server management commands."""


@server.command()
@click.option("--host", default="0.0.0.0", show_default=True, help="Host to bind")
@click.option("--port", default=8000, show_default=True, type=int, help="Port to bind")
@click.option("--reload/--no-reload", default=False, help="Enable auto-reload on code changes")
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["critical", "error", "warning", "info", "debug"]),
    help="Uvicorn log level",
)
def run(host: str, port: int, reload: bool, log_level: str) -> None:
    """Run the API, the outbox drainer and the consumers in one process."""
    settings = get_app_settings()
    info(f"Server will run at: http://{host}:{port}")
    info(f"Environment: {settings.environment}")

    uvicorn.run(
        "event_relay.app.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
        # Application logging is configured by the lifespan
        log_config=None,
    )
