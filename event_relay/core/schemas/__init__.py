"""Shared response schemas."""

from event_relay.core.schemas.problem_details import FieldError, ProblemDetails, ValidationProblemDetails

__all__ = ["FieldError", "ProblemDetails", "ValidationProblemDetails"]
