"""Inbound request integrity checks."""

from event_relay.infra.security.integrity import (
    InMemoryReplayCache,
    IntegrityGuard,
    RedisReplayCache,
    compute_signature,
    get_integrity_guard,
    verify_landing_request,
)

__all__ = [
    "InMemoryReplayCache",
    "IntegrityGuard",
    "RedisReplayCache",
    "compute_signature",
    "get_integrity_guard",
    "verify_landing_request",
]
