"""Database settings for the async SQLAlchemy engine.

Supports a full SQLAlchemy URL only; component-wise DSN building is left to
deployment tooling. PostgreSQL uses the psycopg3 async driver
(``postgresql+psycopg://``), tests and local runs use aiosqlite.
"""

from __future__ import annotations

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Relational store holding the outbox table and domain rows.

    Environment variables use DB_ prefix.
    Example: DB_DATABASE_URL="postgresql+psycopg://user:pass@db:5432/leads"
    """

    enabled: bool = Field(
        default=True,
        description="Enable database integration. Set to False for stateless runs.",
    )
    database_url: str = Field(
        default="sqlite+aiosqlite:///./event_relay.db",
        description="SQLAlchemy async database URL",
    )
    pool_size: int = Field(default=10, ge=1, le=100, description="Connection pool size")
    max_overflow: int = Field(default=10, ge=0, le=100, description="Extra connections above pool_size")
    pool_timeout: float = Field(default=30.0, ge=1.0, le=300.0, description="Seconds to wait for a pooled connection")
    pool_recycle: int = Field(default=1800, ge=-1, description="Recycle connections after N seconds (-1 disables)")
    pool_pre_ping: bool = Field(default=True, description="Test connections before checkout")
    echo: bool = Field(default=False, description="Log all SQL statements")

    model_config = SettingsConfigDict(
        env_prefix="DB_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @field_validator("database_url")
    @classmethod
    def _normalize_postgres_driver(cls, v: str) -> str:
        """Force the psycopg3 async driver for bare postgres URLs."""
        for prefix in ("postgres://", "postgresql://"):
            if v.startswith(prefix):
                return "postgresql+psycopg://" + v[len(prefix):]
        return v

    @property
    def is_configured(self) -> bool:
        """Check if the database is enabled and has a URL."""
        return self.enabled and bool(self.database_url)

    @property
    def is_sqlite(self) -> bool:
        """SQLite does not accept pool sizing arguments."""
        return self.database_url.startswith("sqlite")
