"""Errors raised by the bus client.

None of these reach HTTP callers: publish failures are recorded on the
outbox row and retried, subscription failures abort startup.
"""

from __future__ import annotations


class BusError(Exception):
    """Base class for message bus failures."""


class BusUnavailableError(BusError):
    """The broker connection is down; the call failed without waiting."""


class PublishError(BusError):
    """The broker refused or failed a publish."""

    def __init__(self, message: str, *, routing_key: str | None = None, event_id: str | None = None) -> None:
        self.routing_key = routing_key
        self.event_id = event_id
        super().__init__(message)


class PublishTimeoutError(PublishError):
    """A publish did not complete within the configured timeout."""


class InvalidRoutingKeyError(BusError, ValueError):
    """A routing key or binding pattern is malformed."""


__all__ = [
    "BusError",
    "BusUnavailableError",
    "InvalidRoutingKeyError",
    "PublishError",
    "PublishTimeoutError",
]
