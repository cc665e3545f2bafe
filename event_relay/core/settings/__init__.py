"""Modular Pydantic Settings v2 configuration.

One frozen settings model per concern, each read from its own environment
prefix (APP_, DB_, RABBIT_, OUTBOX_, INTEGRITY_, LOG_) and an optional .env
file.

Import settings via cached loaders:
    from event_relay.core.settings import get_outbox_settings

Configuration precedence (highest to lowest):
    1. init kwargs (testing/overrides)
    2. Environment variables
    3. .env file
"""

from __future__ import annotations

from .app import AppSettings
from .database import DatabaseSettings
from .integrity import IntegritySettings
from .loader import (
    clear_all_caches,
    get_app_settings,
    get_db_settings,
    get_integrity_settings,
    get_logging_settings,
    get_outbox_settings,
    get_rabbit_settings,
)
from .logs import LoggingSettings
from .outbox import OutboxSettings
from .rabbit import RabbitSettings

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "IntegritySettings",
    "LoggingSettings",
    "OutboxSettings",
    "RabbitSettings",
    "clear_all_caches",
    "get_app_settings",
    "get_db_settings",
    "get_integrity_settings",
    "get_logging_settings",
    "get_outbox_settings",
    "get_rabbit_settings",
]
