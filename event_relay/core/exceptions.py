"""HTTP-facing exception classes.

Every error that reaches a FastAPI handler is an ``AppException`` and is
rendered as RFC 7807 problem details by ``app.exception_handlers``.
Messaging and outbox failures live in ``infra.messaging.exceptions``; they
never cross the HTTP boundary.
"""

from __future__ import annotations

from typing import Any


class AppException(Exception):
    """Base application exception.

    Attributes:
        status_code: HTTP status code for the error.
        detail: Human-readable error message.
        type: Error type identifier (used in RFC 7807 problem details).
        title: Short, human-readable summary of the problem type.
        instance: URI reference that identifies the specific occurrence.
        extra: Additional context-specific information about the error.

    Example:
        raise AppException(
            status_code=404,
            detail="Lead not found",
            type="lead-not-found",
            extra={"lead_id": "0192..."},
        )
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        type: str = "about:blank",
        title: str | None = None,
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        self.type = type
        self.title = title or self._default_title(status_code)
        self.instance = instance
        self.extra = extra or {}
        super().__init__(detail)

    @staticmethod
    def _default_title(status_code: int) -> str:
        titles = {
            400: "Bad Request",
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            409: "Conflict",
            422: "Unprocessable Entity",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        return titles.get(status_code, "Error")


class NotFoundException(AppException):
    """Raised when a resource is not found."""

    def __init__(
        self,
        detail: str,
        type: str = "not-found",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(404, detail, type=type, title="Not Found", instance=instance, extra=extra)


class UnauthorizedException(AppException):
    """Raised when a request cannot be authenticated.

    The landing endpoint raises this for a missing, stale or forged
    anti-spam signature.
    """

    def __init__(
        self,
        detail: str,
        type: str = "unauthorized",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(401, detail, type=type, title="Unauthorized", instance=instance, extra=extra)


class ForbiddenException(AppException):
    """Raised when an authenticated request is refused."""

    def __init__(
        self,
        detail: str,
        type: str = "forbidden",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(403, detail, type=type, title="Forbidden", instance=instance, extra=extra)


class ReplayDetectedException(ForbiddenException):
    """Raised when a correctly signed request has already been accepted once."""

    def __init__(
        self,
        detail: str = "Request signature has already been used",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(detail, type="replay-detected", instance=instance, extra=extra)


class ConflictException(AppException):
    """Raised for resource conflicts."""

    def __init__(
        self,
        detail: str,
        type: str = "conflict",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(409, detail, type=type, title="Conflict", instance=instance, extra=extra)


class ServiceUnavailableException(AppException):
    """Raised when a dependency the request needs is down.

    Example:
        raise ServiceUnavailableException(
            detail="Database is temporarily unavailable",
            extra={"service": "postgresql"},
        )
    """

    def __init__(
        self,
        detail: str,
        type: str = "service-unavailable",
        instance: str | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(503, detail, type=type, title="Service Unavailable", instance=instance, extra=extra)
