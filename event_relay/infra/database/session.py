"""Async engine and session factory.

The engine is created lazily from ``DatabaseSettings`` the first time it is
needed, so importing this module never opens a connection. Tests and tools
that need a different database call ``configure_database(url)`` first.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from event_relay.core.database.base import Base
from event_relay.core.settings import get_app_settings, get_db_settings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = logging.getLogger(__name__)

# Queries slower than this are logged at WARNING
SLOW_QUERY_SECONDS = 1.0

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _install_query_timing(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _before_cursor_execute(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: Any
    ) -> None:
        _ = conn, cursor, statement, parameters, executemany
        context._query_start_time = time.perf_counter()

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def _after_cursor_execute(
        conn: Any, cursor: Any, statement: str, parameters: Any, context: Any, executemany: Any
    ) -> None:
        _ = conn, cursor, parameters, executemany
        duration = time.perf_counter() - context._query_start_time
        if duration > SLOW_QUERY_SECONDS:
            operation = statement.strip().split(" ", 1)[0].upper() if statement else "UNKNOWN"
            logger.warning(
                "Slow query",
                extra={"operation": operation, "duration_ms": round(duration * 1000, 1)},
            )


def configure_database(database_url: str | None = None, **engine_kwargs: Any) -> AsyncEngine:
    """Create (or replace) the process-wide engine and session factory.

    Args:
        database_url: Overrides ``DB_DATABASE_URL``.
        **engine_kwargs: Extra ``create_async_engine`` arguments.
    """
    global _engine, _session_factory

    db_settings = get_db_settings()
    url = database_url or db_settings.database_url

    kwargs: dict[str, Any] = {
        "echo": db_settings.echo or get_app_settings().debug,
        "pool_pre_ping": db_settings.pool_pre_ping,
    }
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=db_settings.pool_size,
            max_overflow=db_settings.max_overflow,
            pool_timeout=db_settings.pool_timeout,
            pool_recycle=db_settings.pool_recycle,
        )
    kwargs.update(engine_kwargs)

    _engine = create_async_engine(url, **kwargs)
    _install_query_timing(_engine)
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        configure_database()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory shared by the publisher, the drainer and request handlers."""
    if _session_factory is None:
        configure_database()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession]:
    """Get an async database session that is closed on exit.

    Example:
        async with get_async_session() as session:
            result = await session.execute(select(Lead))
    """
    async with get_session_factory()() as session:
        yield session


async def init_database(*, create_tables: bool = False) -> None:
    """Check connectivity; optionally create tables for migration-less runs.

    Raises:
        sqlalchemy.exc.SQLAlchemyError: If the database is unreachable.
    """
    engine = get_engine()
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        if create_tables:
            # Import models so they are attached to Base.metadata
            import event_relay.features.leads.models  # noqa: F401
            import event_relay.infra.events.outbox.models  # noqa: F401
            import event_relay.infra.messaging.idempotency  # noqa: F401

            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.error(
            "Failed to connect to database",
            extra={"url": engine.url.render_as_string(hide_password=True), "error": str(e)},
        )
        raise

    logger.info(
        "Database connection established",
        extra={"url": engine.url.render_as_string(hide_password=True), "tables_created": create_tables},
    )


async def close_database() -> None:
    """Dispose the engine; called on shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return
    logger.info("Closing database connection")
    try:
        await _engine.dispose()
    except Exception as e:
        logger.exception("Error closing database connection", extra={"error": str(e)})
    finally:
        _engine = None
        _session_factory = None


__all__ = [
    "close_database",
    "configure_database",
    "get_async_session",
    "get_engine",
    "get_session_factory",
    "init_database",
]
