"""Database engine and session management."""

from event_relay.infra.database.session import (
    close_database,
    configure_database,
    get_async_session,
    get_engine,
    get_session_factory,
    init_database,
)

__all__ = [
    "close_database",
    "configure_database",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_database",
]
