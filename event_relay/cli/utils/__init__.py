"""CLI helpers."""

from event_relay.cli.utils.async_runner import coro
from event_relay.cli.utils.formatters import error, header, info, success, table, warning

__all__ = ["coro", "error", "header", "info", "success", "table", "warning"]
