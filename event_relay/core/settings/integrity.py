"""Settings for the signed public ingestion endpoint."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ReplayBackend = Literal["memory", "redis"]


class IntegritySettings(BaseSettings):
    """HMAC signing, time window and replay cache for landing submissions.

    Environment variables use INTEGRITY_ prefix.
    Example: INTEGRITY_SECRET=..., INTEGRITY_TOKEN=landing-site
    """

    secret: SecretStr = Field(
        default=SecretStr(""),
        description="Shared HMAC-SHA256 secret used by the landing page signer.",
    )
    token: str = Field(
        default="",
        description="Value expected in x-anti-spam-token; identifies the signer.",
    )
    window_seconds: int = Field(
        default=300,
        ge=1,
        le=3600,
        description="Maximum clock skew accepted for x-anti-spam-timestamp.",
    )
    replay_ttl_seconds: int = Field(
        default=600,
        ge=1,
        le=86_400,
        description="How long a seen signature is remembered.",
    )
    replay_backend: ReplayBackend = Field(
        default="memory",
        description="memory: per-process cache; redis: shared across replicas.",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the shared replay cache.",
    )
    replay_key_prefix: str = Field(
        default="landing:replay:",
        description="Key prefix for replay markers in Redis.",
    )

    @model_validator(mode="after")
    def _validate_replay_ttl(self) -> IntegritySettings:
        """Ensure a signature is remembered for as long as its timestamp is accepted."""
        if self.replay_ttl_seconds < 2 * self.window_seconds:
            msg = (
                f"replay_ttl_seconds ({self.replay_ttl_seconds}) must be at least "
                f"twice window_seconds ({self.window_seconds})"
            )
            raise ValueError(msg)
        return self

    model_config = SettingsConfigDict(
        env_prefix="INTEGRITY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @property
    def is_configured(self) -> bool:
        """The guard rejects everything until a secret and token are set."""
        return bool(self.secret.get_secret_value()) and bool(self.token)
