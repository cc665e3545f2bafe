"""Main CLI entry point for event-relay management commands."""

import click

from event_relay.cli.commands import outbox, server
from event_relay.infra.logging.config import setup_logging


@click.group()
@click.version_option(version="0.1.0", prog_name="event-relay")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """Event Relay CLI - outbox maintenance and server commands.

    \b
    Command Groups:
      outbox     Inspect, drain, retry and clean up the transactional outbox
      server     Run the HTTP service with drainer and consumers

    \b
    Quick Start:
      event-relay outbox stats          # Rows per status
      event-relay outbox drain          # Publish the backlog now
      event-relay server run            # Start the service
    """
    ctx.ensure_object(dict)


cli.add_command(outbox.outbox)
cli.add_command(server.server)


def main() -> None:
    """Entry point for CLI."""
    setup_logging()
    cli(obj={})


if __name__ == "__main__":
    main()
