"""Event type registry for validation and typed decoding.

The registry maps ``(event_type, schema_version)`` to an ``EventPayload``
subclass. Producers validate outgoing bodies against it before anything
reaches the outbox; consumers use it to turn an envelope back into a typed
payload.

Usage:
    from event_relay.core.events import EventPayload, event_registry

    @event_registry.register
    class LeadCreated(EventPayload):
        event_type: ClassVar[str] = "lead.created"
        lead_id: str = Field(alias="leadID")
        email: str

    payload = event_registry.validate("lead.created", {"leadID": "L1", "email": "a@b.com"})
    typed = event_registry.deserialize(envelope)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, TypeVar, overload

if TYPE_CHECKING:
    from event_relay.core.events.base import EventEnvelope, EventPayload

logger = logging.getLogger(__name__)

T = TypeVar("T", bound="EventPayload")


class UnknownEventTypeError(KeyError):
    """Raised when an event type (or version) has no registered payload."""

    def __init__(self, event_type: str, version: int | None = None) -> None:
        self.event_type = event_type
        self.version = version
        version_str = f" version {version}" if version is not None else ""
        super().__init__(f"Unknown event type: '{event_type}'{version_str}")


class EventRegistry:
    """Registry of payload classes keyed by type and schema version.

    Registration is expected during import/startup; lookups are read-only
    afterwards.
    """

    def __init__(self) -> None:
        # event_type -> version -> payload class
        self._events: dict[str, dict[int, type[EventPayload]]] = {}
        self._latest_versions: dict[str, int] = {}

    @overload
    def register(self, payload_class: type[T]) -> type[T]: ...

    @overload
    def register(self, payload_class: None = None) -> Any: ...

    def register(self, payload_class: type[T] | None = None) -> type[T] | Any:
        """Register a payload class, directly or as a decorator.

        Raises:
            ValueError: If another class already owns the same type and version.
        """

        def _register(cls: type[T]) -> type[T]:
            event_type = cls.event_type
            version = cls.schema_version
            versions = self._events.setdefault(event_type, {})

            existing = versions.get(version)
            if existing is not None:
                if existing is not cls:
                    raise ValueError(
                        f"Event type '{event_type}' version {version} "
                        f"already registered with {existing.__name__}"
                    )
                return cls

            versions[version] = cls
            if version > self._latest_versions.get(event_type, 0):
                self._latest_versions[event_type] = version

            logger.debug(
                "Registered event type",
                extra={"event_type": event_type, "version": version, "class": cls.__name__},
            )
            return cls

        if payload_class is None:
            return _register
        return _register(payload_class)

    def get(self, event_type: str, version: int | None = None) -> type[EventPayload] | None:
        """Payload class for a type, latest version when ``version`` is None."""
        versions = self._events.get(event_type)
        if not versions:
            return None
        if version is not None:
            return versions.get(version)
        latest = self._latest_versions.get(event_type)
        return versions.get(latest) if latest is not None else None

    def get_or_raise(self, event_type: str, version: int | None = None) -> type[EventPayload]:
        """Like ``get`` but raises ``UnknownEventTypeError`` instead of returning None."""
        payload_class = self.get(event_type, version)
        if payload_class is None:
            raise UnknownEventTypeError(event_type, version)
        return payload_class

    def validate(
        self,
        event_type: str,
        body: dict[str, Any] | EventPayload,
        version: int | None = None,
    ) -> EventPayload:
        """Check a raw body against the registered shape for ``event_type``.

        Producer-side gate: nothing invalid reaches the outbox.

        Raises:
            UnknownEventTypeError: If the type is not registered.
            pydantic.ValidationError: If the body does not match the schema.
        """
        payload_class = self.get_or_raise(event_type, version)
        if isinstance(body, payload_class):
            return body
        if not isinstance(body, dict):
            body = body.to_body()
        return payload_class.model_validate(body)

    def deserialize(self, envelope: EventEnvelope, *, strict_version: bool = False) -> EventPayload:
        """Decode an envelope's payload into its registered class.

        With ``strict_version`` off, an unknown version falls back to the
        latest registered one.

        Raises:
            UnknownEventTypeError: If no class matches.
            pydantic.ValidationError: If the payload does not match the schema.
        """
        payload_class = self.get(envelope.event_type, envelope.schema_version)

        if payload_class is None and not strict_version:
            payload_class = self.get(envelope.event_type)
            if payload_class is not None:
                logger.warning(
                    "Using latest version for deserialization",
                    extra={
                        "event_type": envelope.event_type,
                        "requested_version": envelope.schema_version,
                        "using_version": payload_class.schema_version,
                    },
                )

        if payload_class is None:
            raise UnknownEventTypeError(envelope.event_type, envelope.schema_version)

        return payload_class.model_validate(envelope.payload)

    def list_types(self) -> list[str]:
        """All registered event types."""
        return list(self._events.keys())

    def list_versions(self, event_type: str) -> list[int]:
        """Registered versions for a type, ascending."""
        return sorted(self._events.get(event_type, {}).keys())

    def get_latest_version(self, event_type: str) -> int | None:
        return self._latest_versions.get(event_type)

    def __contains__(self, event_type: object) -> bool:
        return event_type in self._events

    def __len__(self) -> int:
        return len(self._events)

    def clear(self) -> None:
        """Clear all registrations (mainly for testing)."""
        self._events.clear()
        self._latest_versions.clear()


# Global registry instance
event_registry = EventRegistry()


__all__ = ["EventRegistry", "UnknownEventTypeError", "event_registry"]
