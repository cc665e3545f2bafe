"""LRU-cached settings loaders.

Settings are loaded and validated once, then cached for the lifetime of the
process.

Testing:
    Clear the cache to force a reload after changing the environment:
    get_outbox_settings.cache_clear()

    Or pass explicit instances to the components under test:
    OutboxDrainer(bus, sessions, settings=OutboxSettings(batch_size=5))
"""

from __future__ import annotations

from functools import lru_cache

from .app import AppSettings
from .database import DatabaseSettings
from .integrity import IntegritySettings
from .logs import LoggingSettings
from .outbox import OutboxSettings
from .rabbit import RabbitSettings


@lru_cache(maxsize=1)
def get_app_settings() -> AppSettings:
    """Get cached application settings."""
    return AppSettings()


@lru_cache(maxsize=1)
def get_db_settings() -> DatabaseSettings:
    """Get cached database settings."""
    return DatabaseSettings()


@lru_cache(maxsize=1)
def get_rabbit_settings() -> RabbitSettings:
    """Get cached RabbitMQ settings."""
    return RabbitSettings()


@lru_cache(maxsize=1)
def get_outbox_settings() -> OutboxSettings:
    """Get cached outbox drainer settings."""
    return OutboxSettings()


@lru_cache(maxsize=1)
def get_integrity_settings() -> IntegritySettings:
    """Get cached landing-page integrity settings."""
    return IntegritySettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    """Get cached logging settings."""
    return LoggingSettings()


def clear_all_caches() -> None:
    """Drop every cached settings instance (tests only)."""
    for loader in (
        get_app_settings,
        get_db_settings,
        get_rabbit_settings,
        get_outbox_settings,
        get_integrity_settings,
        get_logging_settings,
    ):
        loader.cache_clear()
