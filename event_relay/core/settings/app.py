"""Application settings shared by the host service and the event envelope."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["development", "staging", "production", "test"]


class AppSettings(BaseSettings):
    """Service identity and FastAPI toggles.

    Environment variables use APP_ prefix.
    Example: APP_SERVICE_NAME=leads, APP_ENVIRONMENT=production
    """

    # Service identity (stamped on every event envelope as producer/source)
    service_name: str = Field(
        default="event-relay",
        min_length=1,
        max_length=100,
        pattern=r"^[a-z0-9]+(-[a-z0-9]+)*$",
        description="Service name for logging and event provenance (lowercase, hyphens allowed)",
    )
    title: str = Field(
        default="Event Relay Service",
        min_length=1,
        max_length=200,
        description="API title displayed in documentation",
    )
    version: str = Field(
        default="0.1.0",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9]+)?$",
        description="API version (semver format)",
    )
    environment: Environment = Field(
        default="development",
        description="Environment: development|staging|production|test",
    )
    api_prefix: str = Field(
        default="/api/v1",
        min_length=1,
        max_length=255,
        pattern=r"^/.*$",
        description="Base URL prefix for API routes",
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @property
    def event_source(self) -> str:
        """Event envelope ``source`` value: ``<service>.<environment>``."""
        return f"{self.service_name}.{self.environment}"
