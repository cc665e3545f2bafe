"""Context propagation for structured logging.

Fields set here are copied onto every log record emitted in the same
asyncio task, so a consumer handler's logs carry the event it is handling
without passing ids around:

    with event_log_context(event_id=envelope.event_id, event_type=envelope.event_type):
        logger.info("Welcome email queued")   # includes event_id, event_type
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterator

# Each asyncio task sees its own copy
_log_context: ContextVar[dict[str, Any]] = ContextVar("log_context", default={})


def set_log_context(**kwargs: Any) -> None:
    """Add fields to the logging context of the current task."""
    current = _log_context.get().copy()
    current.update(kwargs)
    _log_context.set(current)


def get_log_context() -> dict[str, Any]:
    return _log_context.get().copy()


def clear_log_context() -> None:
    _log_context.set({})


@contextmanager
def event_log_context(**kwargs: Any) -> Iterator[None]:
    """Scope fields to a block and restore the previous context afterwards."""
    token = _log_context.set({**_log_context.get(), **kwargs})
    try:
        yield
    finally:
        _log_context.reset(token)


class ContextInjectingFilter(logging.Filter):
    """Copy context fields onto each LogRecord without overwriting attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _log_context.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


__all__ = [
    "ContextInjectingFilter",
    "clear_log_context",
    "event_log_context",
    "get_log_context",
    "set_log_context",
]
