"""Outbox operations commands.

Example:bash
    # Row counts per status
    event-relay outbox stats

    # Inspect failed rows
    event-relay outbox failed --limit 20

    # Publish the backlog now (needs RabbitMQ)
    event-relay outbox drain

    # Make rows that hit OUTBOX_MAX_RETRIES eligible again
    event-relay outbox retry 0192f7c4-... 0192f7c5-...
    event-relay outbox retry --all

    # Delete published rows past retention
    event-relay outbox cleanup --older-than-days 7
"""

import json
import sys

import click

from event_relay.cli.utils import coro, error, header, info, success, table, warning
from event_relay.core.settings import get_outbox_settings
from event_relay.infra.database.session import close_database, get_session_factory
from event_relay.infra.events.outbox.repository import OutboxRepository


def make_bus():
    """Bus client used by ``outbox drain``."""
    from event_relay.infra.messaging.client import BusClient

    return BusClient()


@click.group(name="outbox")
def outbox() -> None:
    """Transactional outbox inspection and maintenance."""


@outbox.command()
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def stats(output_format: str) -> None:
    """Show row counts per status."""
    settings = get_outbox_settings()
    repo = OutboxRepository()
    try:
        async with get_session_factory()() as session:
            counts = await repo.count_by_status(session)
            parked = (
                await repo.count_parked(session, max_retries=settings.max_retries)
                if settings.max_retries is not None
                else 0
            )
    finally:
        await close_database()

    if output_format == "json":
        click.echo(json.dumps({"counts": counts, "parked": parked}))
        return

    header("Outbox")
    table(["status", "rows"], sorted(counts.items()))
    if parked:
        warning(f"{parked} row(s) reached the retry cap; run 'event-relay outbox retry --all'")


@outbox.command()
@click.option("--limit", default=50, show_default=True, type=click.IntRange(1, 1000))
@click.option("--format", "output_format", type=click.Choice(["table", "json"]), default="table")
@coro
async def failed(limit: int, output_format: str) -> None:
    """List failed rows, oldest first."""
    try:
        async with get_session_factory()() as session:
            rows = await OutboxRepository().list_failed(session, limit=limit)
    finally:
        await close_database()

    if output_format == "json":
        click.echo(
            json.dumps(
                [
                    {
                        "event_id": row.event_id,
                        "event_type": row.event_type,
                        "routing_key": row.routing_key,
                        "retry_count": row.retry_count,
                        "last_error": row.last_error,
                        "created_at": row.created_at.isoformat(),
                    }
                    for row in rows
                ]
            )
        )
        return

    if not rows:
        success("No failed outbox rows")
        return
    table(
        ["event_id", "event_type", "retries", "last_error"],
        [(row.event_id, row.event_type, row.retry_count, (row.last_error or "")[:60]) for row in rows],
    )


@outbox.command()
@click.option("--max-passes", default=100, show_default=True, type=click.IntRange(1, 10_000))
@coro
async def drain(max_passes: int) -> None:
    """Publish pending and failed rows now."""
    from event_relay.infra.events.outbox.processor import OutboxDrainer
    from event_relay.infra.messaging.exceptions import BusUnavailableError

    bus = make_bus()
    try:
        await bus.connect()
    except BusUnavailableError as e:
        error(f"RabbitMQ unavailable: {e}")
        sys.exit(1)

    try:
        drainer = OutboxDrainer(bus, get_session_factory(), get_outbox_settings())
        result = await drainer.drain_all(max_passes=max_passes)
    finally:
        await bus.close()
        await close_database()

    if result.failed:
        warning(f"Published {result.published}, failed {result.failed}")
    else:
        success(f"Published {result.published} event(s)")


@outbox.command()
@click.argument("event_ids", nargs=-1)
@click.option("--all", "all_rows", is_flag=True, help="Reset every failed row.")
@coro
async def retry(event_ids: tuple[str, ...], all_rows: bool) -> None:
    """Reset the retry counter of failed rows."""
    if not event_ids and not all_rows:
        error("Pass one or more EVENT_IDS or --all")
        sys.exit(2)

    try:
        async with get_session_factory()() as session, session.begin():
            reset = await OutboxRepository().reset_retries(
                session,
                event_ids=None if all_rows else list(event_ids),
            )
    finally:
        await close_database()

    if reset:
        success(f"Reset {reset} failed row(s); the next drain picks them up")
    else:
        info("No failed rows matched")


@outbox.command()
@click.option("--older-than-days", type=click.IntRange(0, 3650), default=None, help="Defaults to OUTBOX_RETENTION_DAYS.")
@coro
async def cleanup(older_than_days: int | None) -> None:
    """Delete published rows past retention."""
    days = older_than_days if older_than_days is not None else get_outbox_settings().retention_days
    try:
        async with get_session_factory()() as session, session.begin():
            deleted = await OutboxRepository().cleanup_published(session, older_than_days=days)
    finally:
        await close_database()

    success(f"Deleted {deleted} published row(s) older than {days} day(s)")
