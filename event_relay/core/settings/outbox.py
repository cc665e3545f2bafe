"""Outbox drainer settings."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class OutboxSettings(BaseSettings):
    """Polling, batching and retention for the outbox drainer.

    Environment variables use OUTBOX_ prefix.
    Example: OUTBOX_POLL_INTERVAL=10, OUTBOX_MAX_RETRIES=25
    """

    enabled: bool = Field(default=True, description="Run the periodic drainer in this process.")
    batch_size: int = Field(
        default=100,
        ge=1,
        le=10_000,
        description="Maximum rows claimed per drain tick.",
    )
    poll_interval: float = Field(
        default=10.0,
        gt=0,
        le=3600.0,
        description="Seconds between scheduled drain ticks.",
    )
    max_retries: int | None = Field(
        default=None,
        ge=1,
        description=(
            "Failed publish attempts after which a row is parked until an operator "
            "resets it. None retries forever."
        ),
    )
    publish_timeout: float = Field(
        default=15.0,
        gt=0,
        le=600.0,
        description="Outer bound for one publish call made by the drainer.",
    )
    claim_ttl: float = Field(
        default=120.0,
        gt=0,
        description="Seconds after which a claim held by a crashed worker expires.",
    )
    retention_days: int = Field(
        default=7,
        ge=1,
        le=3650,
        description="Published rows older than this are deleted by the cleanup pass.",
    )
    cleanup_interval: float = Field(
        default=86_400.0,
        gt=0,
        description="Seconds between cleanup passes.",
    )
    shutdown_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Seconds to wait for an in-flight tick on shutdown before cancelling it.",
    )
    trigger_after_commit: bool = Field(
        default=True,
        description="Kick off a best-effort drain right after an event is committed.",
    )

    @model_validator(mode="after")
    def _validate_claim_ttl(self) -> OutboxSettings:
        """Ensure a freshly renewed claim outlives one publish call."""
        if self.claim_ttl <= self.publish_timeout:
            msg = (
                f"claim_ttl ({self.claim_ttl}s) must be greater than "
                f"publish_timeout ({self.publish_timeout}s)"
            )
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="OUTBOX_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )
