"""Pytest configuration and shared fixtures.

Organization:
    - Settings Fixtures: explicit settings instances, cache isolation
    - Database Fixtures: file-backed SQLite engine and session factory
    - Messaging Fixtures: in-memory bus standing in for RabbitMQ
    - Producer Fixtures: publisher and envelopes
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from typing import TYPE_CHECKING

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from event_relay.core.database.base import Base
from event_relay.core.events import EventEnvelope, EventPublisher
from event_relay.core.settings import AppSettings, OutboxSettings, clear_all_caches
from event_relay.features.leads.events import LeadCreated
from tests.fakes import InMemoryBus

if TYPE_CHECKING:
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine

# Ensure tests run without external infrastructure
os.environ.setdefault("APP_ENVIRONMENT", "test")
os.environ.setdefault("RABBIT_ENABLED", "false")
os.environ.setdefault("OUTBOX_ENABLED", "false")


# ============================================================================
# Settings Fixtures
# ============================================================================


@pytest.fixture(autouse=True)
def _isolate_settings():
    """Drop cached settings around every test so env changes take effect."""
    clear_all_caches()
    yield
    clear_all_caches()


@pytest.fixture
def app_settings() -> AppSettings:
    return AppSettings(service_name="leads", environment="test")


@pytest.fixture
def outbox_settings() -> OutboxSettings:
    return OutboxSettings(
        batch_size=100,
        poll_interval=0.05,
        publish_timeout=1.0,
        claim_ttl=60.0,
        shutdown_timeout=1.0,
    )


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Async engine on a per-test SQLite file.

    A file (not ``:memory:``) so that several connections see the same
    data. Every transaction starts with ``BEGIN IMMEDIATE``, which gives
    SQLite the row-claim semantics the drainer relies on when two workers
    race.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        _ = connection_record
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    # Register every table on Base.metadata
    import event_relay.features.leads.models
    import event_relay.infra.events.outbox.models
    import event_relay.infra.messaging.idempotency  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


# ============================================================================
# Messaging Fixtures
# ============================================================================


@pytest.fixture
def bus() -> InMemoryBus:
    return InMemoryBus()


# ============================================================================
# Producer Fixtures
# ============================================================================


@pytest.fixture
def publisher(session_factory, app_settings) -> EventPublisher:
    return EventPublisher(session_factory, app_settings=app_settings)


@pytest.fixture
def make_envelope(app_settings):
    """Build ``lead.created`` envelopes with distinct lead ids."""

    def _make(lead_id: str = "lead-1", email: str = "ada@example.com") -> EventEnvelope:
        return EventEnvelope.wrap(
            LeadCreated(lead_id=lead_id, email=email),
            producer=app_settings.service_name,
            source=app_settings.event_source,
        )

    return _make
