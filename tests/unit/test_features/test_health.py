"""Unit tests for the health endpoints."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from event_relay.app.main import create_app
from event_relay.infra.events.outbox.models import OutboxEntry, OutboxStatus


@pytest.fixture
def app(monkeypatch, session_factory):
    monkeypatch.setattr("event_relay.features.health.router.get_session_factory", lambda: session_factory)
    application = create_app()
    application.state.bus = MagicMock(health=AsyncMock(return_value={"status": "healthy", "state": "connected"}))
    application.state.drainer = MagicMock(is_running=True)
    return application


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


async def test_liveness(client):
    response = await client.get("/health/live")

    assert response.status_code == 200
    assert response.json() == {"status": "alive"}


async def test_healthy_with_outbox_counts(client, session_factory, make_envelope):
    async with session_factory() as session:
        envelope = make_envelope()
        session.add(
            OutboxEntry(
                event_id=envelope.event_id,
                event_type=envelope.event_type,
                routing_key=envelope.event_type,
                payload=envelope.to_json(),
                status=OutboxStatus.PENDING.value,
                retry_count=0,
            )
        )
        await session.commit()

    response = await client.get("/health/")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["outbox"] == {"status": "healthy", "pending": 1, "failed": 0, "drainer_running": True}


async def test_degraded_when_bus_is_down(app, client):
    app.state.bus.health.return_value = {"status": "unhealthy", "state": "reconnecting"}

    response = await client.get("/health/")

    assert response.status_code == 200
    assert response.json()["status"] == "degraded"


async def test_degraded_without_bus(app, client):
    del app.state.bus

    response = await client.get("/health/")

    assert response.json()["checks"]["messaging"] == {"status": "unavailable"}
    assert response.json()["status"] == "degraded"


async def test_unhealthy_when_database_is_down(monkeypatch, client):
    def broken_factory():
        raise ConnectionRefusedError("database is down")

    monkeypatch.setattr("event_relay.features.health.router.get_session_factory", broken_factory)

    response = await client.get("/health/")

    assert response.status_code == 503
    body = response.json()
    assert body["status"] == "unhealthy"
    assert body["checks"]["database"]["status"] == "unhealthy"
    assert "outbox" not in body["checks"]
