"""CLI command groups."""

from event_relay.cli.commands import outbox, server

__all__ = ["outbox", "server"]
