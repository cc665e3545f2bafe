"""Unit tests for BusClient against a mocked FastStream broker and aio-pika channel."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from event_relay.core.events import EventEnvelope
from event_relay.core.settings import RabbitSettings
from event_relay.features.leads.events import LeadCreated
from event_relay.infra.messaging.client import (
    ORIGINAL_ROUTING_KEY_HEADER,
    BusClient,
    ConnectionState,
    InboundMessage,
)
from event_relay.infra.messaging.exceptions import (
    BusUnavailableError,
    InvalidRoutingKeyError,
    PublishError,
    PublishTimeoutError,
)


def _make_queue() -> MagicMock:
    queue = MagicMock()
    queue.bind = AsyncMock()
    queue.consume = AsyncMock(return_value="ctag-1")
    queue.cancel = AsyncMock()
    return queue


class FakeAmqp:
    """Broker, connection and channel mocks wired together."""

    def __init__(self) -> None:
        self.queues: dict[str, MagicMock] = {}

        self.channel = MagicMock()
        self.channel.is_closed = False
        self.channel.set_qos = AsyncMock()
        self.channel.declare_exchange = AsyncMock(side_effect=lambda name, *a, **kw: MagicMock(name=name))
        self.channel.declare_queue = AsyncMock(side_effect=self._declare_queue)
        self.channel.close = AsyncMock()

        self.connection = MagicMock()
        self.connection.is_closed = False
        self.connection.channel = AsyncMock(return_value=self.channel)

        self.broker = MagicMock()
        self.broker.connect = AsyncMock(return_value=self.connection)
        self.broker.declare_exchange = AsyncMock()
        self.broker.publish = AsyncMock()
        self.broker.close = AsyncMock()

    def _declare_queue(self, name, *args, **kwargs):
        _ = args, kwargs
        return self.queues.setdefault(name, _make_queue())


@pytest.fixture
def rabbit_settings() -> RabbitSettings:
    return RabbitSettings(
        enabled=True,
        retry_attempts=1,
        retry_backoff=0,
        connection_timeout=1.0,
        publish_timeout=0.05,
        prefetch_count=7,
    )


@pytest.fixture
def amqp() -> FakeAmqp:
    return FakeAmqp()


@pytest.fixture
def client(rabbit_settings, amqp) -> BusClient:
    return BusClient(rabbit_settings, broker=amqp.broker)


@pytest.fixture
def envelope() -> EventEnvelope:
    return EventEnvelope.wrap(LeadCreated(lead_id="L1", email="ada@example.com"), producer="leads", source="leads.test")


def _raw_message(envelope: EventEnvelope, routing_key: str = "lead.created", headers=None) -> MagicMock:
    message = MagicMock()
    message.body = envelope.to_json().encode()
    message.routing_key = routing_key
    message.headers = headers or {}
    message.message_id = envelope.event_id
    message.redelivered = False
    message.ack = AsyncMock()
    message.reject = AsyncMock()
    return message


# ──────────────────────────────────────────────────────────────
# Connection
# ──────────────────────────────────────────────────────────────


class TestConnection:
    async def test_connect_declares_exchange(self, client, amqp):
        await client.connect()

        assert client.state is ConnectionState.CONNECTED
        assert client.is_connected
        amqp.broker.declare_exchange.assert_awaited_once()
        exchange = amqp.broker.declare_exchange.await_args.args[0]
        assert exchange.name == "platform.events"

    async def test_connect_retries_then_gives_up(self, client, amqp):
        amqp.broker.connect.side_effect = ConnectionError("connection refused")

        with pytest.raises(BusUnavailableError, match="connection refused"):
            await client.connect()

        assert amqp.broker.connect.await_count == 2
        assert client.state is ConnectionState.FAILED

    async def test_connect_recovers_on_second_attempt(self, client, amqp):
        amqp.broker.connect.side_effect = [ConnectionError("refused"), amqp.connection]

        await client.connect()

        assert client.is_connected

    async def test_lost_connection_is_reported(self, client):
        await client.connect()

        client._on_connection_closed(None, ConnectionResetError("reset by peer"))

        assert client.state is ConnectionState.RECONNECTING
        assert client.is_connected is False

        client._on_connection_reconnected()
        assert client.is_connected

    async def test_background_connect_applies_deferred_subscriptions(self, client, amqp):
        amqp.broker.connect.side_effect = [ConnectionError("refused")] * 2 + [amqp.connection]
        await client.subscribe("email.leads", ["lead.created"], AsyncMock())

        await asyncio.wait_for(client.connect_in_background(), timeout=5)

        assert client.is_connected
        amqp.queues["email.leads"].consume.assert_awaited_once()

    async def test_close(self, client, amqp):
        await client.connect()
        await client.subscribe("email.leads", ["lead.created"], AsyncMock())

        await client.close()

        amqp.queues["email.leads"].cancel.assert_awaited_once_with("ctag-1")
        amqp.broker.close.assert_awaited_once()
        assert client.state is ConnectionState.DISCONNECTED


# ──────────────────────────────────────────────────────────────
# Publishing
# ──────────────────────────────────────────────────────────────


class TestPublish:
    async def test_publish_to_topic_exchange(self, client, amqp, envelope):
        await client.connect()

        await client.publish("lead.created", envelope)

        kwargs = amqp.broker.publish.await_args.kwargs
        assert amqp.broker.publish.await_args.args[0] == envelope.to_wire()
        assert kwargs["routing_key"] == "lead.created"
        assert kwargs["message_id"] == envelope.event_id
        assert kwargs["persist"] is True
        assert kwargs["headers"]["x-event-id"] == envelope.event_id
        assert kwargs["exchange"].name == "platform.events"

    async def test_publish_fails_fast_when_disconnected(self, client, amqp, envelope):
        with pytest.raises(BusUnavailableError):
            await client.publish("lead.created", envelope)

        amqp.broker.publish.assert_not_awaited()

    async def test_publish_fails_fast_while_reconnecting(self, client, amqp, envelope):
        await client.connect()
        client._on_connection_closed(None, ConnectionResetError("reset"))

        with pytest.raises(BusUnavailableError, match="reconnecting"):
            await client.publish("lead.created", envelope)

        amqp.broker.publish.assert_not_awaited()

    async def test_publish_timeout(self, client, amqp, envelope):
        async def never_confirms(*args, **kwargs):
            await asyncio.sleep(10)

        amqp.broker.publish.side_effect = never_confirms
        await client.connect()

        with pytest.raises(PublishTimeoutError) as exc_info:
            await client.publish("lead.created", envelope)

        assert exc_info.value.event_id == envelope.event_id

    async def test_broker_error_is_wrapped(self, client, amqp, envelope):
        amqp.broker.publish.side_effect = RuntimeError("channel closed")
        await client.connect()

        with pytest.raises(PublishError, match="channel closed"):
            await client.publish("lead.created", envelope)

    async def test_wildcard_routing_key_is_rejected(self, client, envelope):
        await client.connect()

        with pytest.raises(InvalidRoutingKeyError):
            await client.publish("lead.#", envelope)

    async def test_republish_to_queue_keeps_routing_key(self, client, amqp, envelope):
        await client.connect()
        message = InboundMessage(
            body=envelope.to_json().encode(),
            routing_key="lead.created",
            queue="email.leads",
            headers={"x-event-id": envelope.event_id},
            message_id=envelope.event_id,
        )

        await client.republish_to_queue("email.leads", message, {"x-retry-count": 1})

        kwargs = amqp.broker.publish.await_args.kwargs
        assert kwargs["queue"] == "email.leads"
        assert kwargs["headers"]["x-retry-count"] == 1
        assert kwargs["headers"][ORIGINAL_ROUTING_KEY_HEADER] == "lead.created"
        assert kwargs["headers"]["x-event-id"] == envelope.event_id


# ──────────────────────────────────────────────────────────────
# Subscribing
# ──────────────────────────────────────────────────────────────


class TestSubscribe:
    async def test_subscribe_declares_binds_and_consumes(self, client, amqp):
        await client.connect()

        await client.subscribe("email.leads", ["lead.created", "lead.qualified"], AsyncMock())

        amqp.channel.set_qos.assert_awaited_once_with(prefetch_count=7)
        queue = amqp.queues["email.leads"]
        bound = sorted(call.kwargs["routing_key"] for call in queue.bind.await_args_list)
        assert bound == ["lead.created", "lead.qualified"]
        queue.consume.assert_awaited_once()
        declare_kwargs = next(
            call.kwargs for call in amqp.channel.declare_queue.await_args_list if call.args[0] == "email.leads"
        )
        assert declare_kwargs["durable"] is True
        assert declare_kwargs["arguments"]["x-dead-letter-exchange"] == "platform.dlq"
        assert declare_kwargs["arguments"]["x-dead-letter-routing-key"] == "dlq.email.leads"

    async def test_dead_letter_queue_is_declared(self, client, amqp):
        await client.connect()

        await client.subscribe("email.leads", ["lead.created"], AsyncMock())

        dlq = amqp.queues["platform.dlq"]
        assert dlq.bind.await_args.kwargs["routing_key"] == "dlq.#"

    async def test_subscribe_is_idempotent(self, client, amqp):
        await client.connect()

        await client.subscribe("email.leads", ["lead.created"], AsyncMock())
        await client.subscribe("email.leads", ["lead.created"], AsyncMock())
        await client.subscribe("email.leads", ["lead.created", "lead.qualified"], AsyncMock())

        queue = amqp.queues["email.leads"]
        bound = [call.kwargs["routing_key"] for call in queue.bind.await_args_list]
        assert bound == ["lead.created", "lead.qualified"]
        queue.consume.assert_awaited_once()
        assert client.subscriptions == {"email.leads": {"lead.created", "lead.qualified"}}

    async def test_subscribe_while_disconnected_is_deferred(self, client, amqp):
        await client.subscribe("email.leads", ["lead.created"], AsyncMock())

        amqp.connection.channel.assert_not_awaited()

        await client.connect()
        amqp.queues["email.leads"].consume.assert_awaited_once()

    async def test_subscribe_requires_routing_keys(self, client):
        with pytest.raises(ValueError, match="at least one routing key"):
            await client.subscribe("email.leads", [], AsyncMock())

    async def test_successful_handler_acks(self, client, amqp, envelope):
        handler = AsyncMock()
        await client.connect()
        await client.subscribe("email.leads", ["lead.created"], handler)
        on_message = amqp.queues["email.leads"].consume.await_args.args[0]
        raw = _raw_message(envelope)

        await on_message(raw)

        delivered = handler.await_args.args[0]
        assert delivered.envelope() == envelope
        assert delivered.queue == "email.leads"
        raw.ack.assert_awaited_once()
        raw.reject.assert_not_awaited()

    async def test_raising_handler_dead_letters(self, client, amqp, envelope):
        await client.connect()
        await client.subscribe("email.leads", ["lead.created"], AsyncMock(side_effect=RuntimeError("bug")))
        on_message = amqp.queues["email.leads"].consume.await_args.args[0]
        raw = _raw_message(envelope)

        await on_message(raw)

        raw.reject.assert_awaited_once_with(requeue=False)
        raw.ack.assert_not_awaited()

    async def test_handler_that_settles_is_not_acked_again(self, client, amqp, envelope):
        async def rejecting(message: InboundMessage) -> None:
            await message.reject(requeue=True)

        await client.connect()
        await client.subscribe("email.leads", ["lead.created"], rejecting)
        on_message = amqp.queues["email.leads"].consume.await_args.args[0]
        raw = _raw_message(envelope)

        await on_message(raw)

        raw.reject.assert_awaited_once_with(requeue=True)
        raw.ack.assert_not_awaited()


# ──────────────────────────────────────────────────────────────
# Health
# ──────────────────────────────────────────────────────────────


class TestHealth:
    async def test_healthy_when_connected(self, client):
        await client.connect()

        health = await client.health()

        assert health["status"] == "healthy"
        assert health["is_connected"] is True

    async def test_unhealthy_when_disconnected(self, client):
        health = await client.health()

        assert health["status"] == "unhealthy"
        assert health["reason"] == "not_connected"

    async def test_unavailable_when_disabled(self, amqp):
        client = BusClient(RabbitSettings(enabled=False), broker=amqp.broker)

        health = await client.health()

        assert health["status"] == "unavailable"


class TestInboundMessage:
    def test_original_routing_key_header_wins(self, envelope):
        raw = _raw_message(envelope, routing_key="email.leads", headers={ORIGINAL_ROUTING_KEY_HEADER: b"lead.created"})

        message = InboundMessage.from_aio_pika(raw, "email.leads")

        assert message.routing_key == "lead.created"

    def test_retry_count_defaults_to_zero(self, envelope):
        message = InboundMessage(body=b"{}", routing_key="lead.created", queue="q", headers={"x-retry-count": "bad"})

        assert message.retry_count == 0
        assert InboundMessage(body=b"{}", routing_key="k", queue="q", headers={"x-retry-count": 2}).retry_count == 2

    async def test_settles_once(self):
        message = InboundMessage(body=b"{}", routing_key="lead.created", queue="q")

        await message.ack()
        await message.reject()

        assert message.outcome == "ack"
