"""Exchange, queue and routing key conventions.

Every service publishes to one durable topic exchange. Routing keys are
dotted words, normally the event type itself (``lead.created``). Queues
bind with topic patterns where ``*`` matches exactly one word and ``#``
matches zero or more words. Rejected messages go to the ``<prefix>.dlq``
exchange with routing key ``dlq.<queue>``.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING

from event_relay.infra.messaging.exceptions import InvalidRoutingKeyError

if TYPE_CHECKING:
    from event_relay.core.settings import RabbitSettings

# AMQP short string limit
ROUTING_KEY_MAX_LENGTH = 255

RETRY_COUNT_HEADER = "x-retry-count"
"""Header carrying how many times a consumer has redelivered a message."""

_WORD = re.compile(r"^[A-Za-z0-9_-]+$")


# ──────────────────────────────────────────────────────────────────────────────
# Exchange / queue names
# ──────────────────────────────────────────────────────────────────────────────


def _settings(settings: RabbitSettings | None) -> RabbitSettings:
    if settings is not None:
        return settings
    from event_relay.core.settings import get_rabbit_settings

    return get_rabbit_settings()


def get_exchange_name(settings: RabbitSettings | None = None) -> str:
    """Name of the shared topic exchange."""
    return _settings(settings).exchange_name


def get_dlq_exchange_name(settings: RabbitSettings | None = None) -> str:
    """Name of the dead-letter exchange, e.g. ``platform.dlq``."""
    return _settings(settings).dlq_exchange_name


def get_dlq_routing_key(queue_name: str) -> str:
    """Dead-letter routing key for a queue, e.g. ``dlq.email.leads``."""
    return f"dlq.{queue_name}"


# ──────────────────────────────────────────────────────────────────────────────
# Routing keys and binding patterns
# ──────────────────────────────────────────────────────────────────────────────


def validate_routing_key(routing_key: str) -> str:
    """Check a concrete (publish-side) routing key.

    Wildcards are rejected; they only make sense in bindings.

    Raises:
        InvalidRoutingKeyError: If the key is empty, too long or malformed.
    """
    _check_length(routing_key)
    for word in routing_key.split("."):
        if not _WORD.match(word):
            raise InvalidRoutingKeyError(f"Invalid routing key {routing_key!r}")
    return routing_key


def validate_binding_pattern(pattern: str) -> str:
    """Check a topic binding pattern (``*`` and ``#`` allowed as whole words).

    Raises:
        InvalidRoutingKeyError: If the pattern is malformed.
    """
    _check_length(pattern)
    for word in pattern.split("."):
        if word in ("*", "#"):
            continue
        if not _WORD.match(word):
            raise InvalidRoutingKeyError(f"Invalid binding pattern {pattern!r}")
    return pattern


def _check_length(value: str) -> None:
    if not value:
        raise InvalidRoutingKeyError("Routing key must not be empty")
    if len(value.encode("utf-8")) > ROUTING_KEY_MAX_LENGTH:
        raise InvalidRoutingKeyError(
            f"Routing key exceeds {ROUTING_KEY_MAX_LENGTH} bytes: {value[:40]!r}..."
        )


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Whether ``routing_key`` matches a topic-exchange binding ``pattern``.

    Example:
        >>> topic_matches("lead.*", "lead.created")
        True
        >>> topic_matches("lead.*", "lead.status.updated")
        False
        >>> topic_matches("lead.#", "lead.status.updated")
        True
    """
    return _match(pattern.split("."), routing_key.split("."))


def _match(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False


def matches_any(patterns: list[str] | tuple[str, ...] | set[str], routing_key: str) -> bool:
    """Whether any binding pattern matches the routing key."""
    return any(topic_matches(pattern, routing_key) for pattern in patterns)


__all__ = [
    "RETRY_COUNT_HEADER",
    "ROUTING_KEY_MAX_LENGTH",
    "get_dlq_exchange_name",
    "get_dlq_routing_key",
    "get_exchange_name",
    "matches_any",
    "topic_matches",
    "validate_binding_pattern",
    "validate_routing_key",
]
