"""Transactional outbox.

1. Events are written to ``event_outbox`` in the same transaction as the
   domain change.
2. The drainer publishes unpublished rows to the bus on a timer and after
   each commit.
3. Each row ends ``published``; failures are retried on later ticks.

Delivery is at-least-once.
"""

from event_relay.infra.events.outbox.models import OutboxEntry, OutboxStatus
from event_relay.infra.events.outbox.processor import (
    DrainResult,
    OutboxDrainer,
    get_outbox_drainer,
    start_outbox_drainer,
    stop_outbox_drainer,
)
from event_relay.infra.events.outbox.repository import OutboxRepository

__all__ = [
    "DrainResult",
    "OutboxDrainer",
    "OutboxEntry",
    "OutboxRepository",
    "OutboxStatus",
    "get_outbox_drainer",
    "start_outbox_drainer",
    "stop_outbox_drainer",
]
