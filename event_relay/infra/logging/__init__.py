"""Structured logging: JSONL formatter, context injection and queue-based handlers."""

from event_relay.infra.logging.config import configure_logging, setup_logging, shutdown
from event_relay.infra.logging.context import (
    ContextInjectingFilter,
    clear_log_context,
    event_log_context,
    get_log_context,
    set_log_context,
)
from event_relay.infra.logging.formatters import JSONFormatter

__all__ = [
    "ContextInjectingFilter",
    "JSONFormatter",
    "clear_log_context",
    "configure_logging",
    "event_log_context",
    "get_log_context",
    "set_log_context",
    "setup_logging",
    "shutdown",
]
