"""Tests for the outbox maintenance commands."""
from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime, timedelta

import pytest
from click.testing import CliRunner
from sqlalchemy import select

from event_relay.cli.main import cli
from event_relay.core.database.base import Base
from event_relay.core.events import EventEnvelope
from event_relay.core.settings import clear_all_caches
from event_relay.features.leads.events import LeadCreated
from event_relay.infra.database.session import close_database, configure_database, get_session_factory
from event_relay.infra.events.outbox.models import OutboxEntry, OutboxStatus
from tests.fakes import InMemoryBus, UnavailableBus


def _entry(lead_id: str, status: OutboxStatus, *, retry_count: int = 0, **fields) -> OutboxEntry:
    envelope = EventEnvelope.wrap(
        LeadCreated(lead_id=lead_id, email=f"{lead_id}@example.com"), producer="leads", source="leads.test"
    )
    return OutboxEntry(
        event_id=envelope.event_id,
        event_type=envelope.event_type,
        routing_key=envelope.event_type,
        payload=envelope.to_json(),
        status=status.value,
        retry_count=retry_count,
        **fields,
    )


async def _seed(url: str, entries: list[OutboxEntry]) -> None:
    import event_relay.features.leads.models
    import event_relay.infra.events.outbox.models
    import event_relay.infra.messaging.idempotency  # noqa: F401

    engine = configure_database(url)
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with get_session_factory()() as session, session.begin():
            session.add_all(entries)
    finally:
        await close_database()


async def _rows() -> dict[str, OutboxEntry]:
    try:
        async with get_session_factory()() as session:
            result = await session.execute(select(OutboxEntry))
            return {row.event_id: row for row in result.scalars()}
    finally:
        await close_database()


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def entries() -> dict[str, OutboxEntry]:
    old = datetime.now(UTC) - timedelta(days=30)
    return {
        "pending": _entry("lead-1", OutboxStatus.PENDING),
        "retrying": _entry(
            "lead-2",
            OutboxStatus.FAILED,
            retry_count=1,
            last_error="PublishTimeoutError: slow",
            created_at=old,
        ),
        "parked": _entry("lead-3", OutboxStatus.FAILED, retry_count=5, last_error="PublishError: NOT_FOUND"),
        "published": _entry("lead-4", OutboxStatus.PUBLISHED, published_at=old),
    }


@pytest.fixture
def database(tmp_path, monkeypatch, entries) -> dict[str, str]:
    """Seeded SQLite file selected through DB_DATABASE_URL; returns role -> event id."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"
    monkeypatch.setenv("DB_DATABASE_URL", url)
    monkeypatch.setenv("OUTBOX_MAX_RETRIES", "5")
    clear_all_caches()
    ids = {role: entry.event_id for role, entry in entries.items()}
    asyncio.run(_seed(url, list(entries.values())))
    return ids


def test_version(runner):
    result = runner.invoke(cli, ["--version"])

    assert result.exit_code == 0
    assert "event-relay" in result.output


def test_stats_json(runner, database):
    _ = database

    result = runner.invoke(cli, ["outbox", "stats", "--format", "json"])

    assert result.exit_code == 0, result.output
    assert json.loads(result.stdout) == {
        "counts": {"pending": 1, "published": 1, "failed": 2},
        "parked": 1,
    }


def test_stats_table_warns_about_parked_rows(runner, database):
    _ = database

    result = runner.invoke(cli, ["outbox", "stats"])

    assert result.exit_code == 0, result.output
    assert "reached the retry cap" in result.output


def test_failed_lists_oldest_first(runner, database):
    result = runner.invoke(cli, ["outbox", "failed", "--format", "json"])

    assert result.exit_code == 0, result.output
    rows = json.loads(result.stdout)
    assert [row["event_id"] for row in rows] == [database["retrying"], database["parked"]]
    assert rows[1]["last_error"] == "PublishError: NOT_FOUND"


def test_drain_publishes_backlog(runner, database, monkeypatch):
    bus = InMemoryBus()
    monkeypatch.setattr("event_relay.cli.commands.outbox.make_bus", lambda: bus)

    result = runner.invoke(cli, ["outbox", "drain"])

    assert result.exit_code == 0, result.output
    assert "Published 2 event(s)" in result.output
    assert sorted(bus.published_ids) == sorted([database["pending"], database["retrying"]])
    assert bus.closed
    rows = asyncio.run(_rows())
    assert rows[database["parked"]].status == OutboxStatus.FAILED.value


def test_drain_without_rabbitmq_fails(runner, database, monkeypatch):
    _ = database
    monkeypatch.setattr("event_relay.cli.commands.outbox.make_bus", UnavailableBus)

    result = runner.invoke(cli, ["outbox", "drain"])

    assert result.exit_code == 1
    assert "RabbitMQ unavailable" in result.output


def test_retry_selected_rows(runner, database):
    result = runner.invoke(cli, ["outbox", "retry", database["parked"]])

    assert result.exit_code == 0, result.output
    assert "Reset 1 failed row(s)" in result.output
    rows = asyncio.run(_rows())
    assert rows[database["parked"]].retry_count == 0
    assert rows[database["retrying"]].retry_count == 1


def test_retry_all(runner, database):
    _ = database

    result = runner.invoke(cli, ["outbox", "retry", "--all"])

    assert result.exit_code == 0, result.output
    assert "Reset 2 failed row(s)" in result.output


def test_retry_requires_arguments(runner, database):
    _ = database

    result = runner.invoke(cli, ["outbox", "retry"])

    assert result.exit_code == 2


def test_cleanup_deletes_old_published_rows(runner, database):
    result = runner.invoke(cli, ["outbox", "cleanup", "--older-than-days", "7"])

    assert result.exit_code == 0, result.output
    assert "Deleted 1 published row(s)" in result.output
    rows = asyncio.run(_rows())
    assert database["published"] not in rows
    assert database["pending"] in rows
