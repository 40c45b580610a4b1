"""Tests for QueueOperations: declare, publish, consume and administration."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from aio_pika.exceptions import ChannelNotFoundEntity, DeliveryError
from aiormq import spec

from rabbitmq_patterns.envelope import MessageEnvelope
from rabbitmq_patterns.exceptions import AckAlreadySettledError, TopologyConflictError
from rabbitmq_patterns.memory import InMemoryBroker
from rabbitmq_patterns.memory.broker import StoredMessage
from rabbitmq_patterns.rabbitmq import (
    AckHandle,
    PublishOptions,
    QueueOperations,
    RabbitMQConnectionManager,
)
from rabbitmq_patterns.topology import ExchangeKind


def _decode(message: StoredMessage) -> dict:
    return json.loads(message.body)


@pytest.mark.asyncio
async def test_declare_queue_returns_info(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    info = await operations.declare_queue("orders")
    assert info.name == "orders"
    assert info.message_count == 0
    assert "orders" in broker.queues


@pytest.mark.asyncio
async def test_declare_queue_without_name_gets_server_name(
    operations: QueueOperations,
) -> None:
    info = await operations.declare_queue("", durable=False, exclusive=True)
    assert info.name.startswith("amq.gen-")


@pytest.mark.asyncio
async def test_redeclare_same_options_is_noop(operations: QueueOperations) -> None:
    await operations.declare_exchange("ex", ExchangeKind.TOPIC)
    await operations.declare_exchange("ex", "topic")
    await operations.declare_queue("q", arguments={"x-max-priority": 10})
    await operations.declare_queue("q", arguments={"x-max-priority": 10})


@pytest.mark.asyncio
async def test_conflicting_queue_declare_raises_topology_conflict(
    manager: RabbitMQConnectionManager, operations: QueueOperations
) -> None:
    await operations.declare_queue("q", durable=True)
    with pytest.raises(TopologyConflictError) as exc_info:
        await operations.declare_queue("q", durable=False)
    assert exc_info.value.entity == "q"
    # PRECONDITION_FAILED closes the channel; the manager reopens it
    assert await manager.wait_until_ready(timeout=1.0)


@pytest.mark.asyncio
async def test_conflicting_exchange_declare_raises_topology_conflict(
    manager: RabbitMQConnectionManager, operations: QueueOperations
) -> None:
    await operations.declare_exchange("ex", ExchangeKind.DIRECT)
    with pytest.raises(TopologyConflictError):
        await operations.declare_exchange("ex", ExchangeKind.FANOUT)
    assert await manager.wait_until_ready(timeout=1.0)


@pytest.mark.asyncio
async def test_bind_twice_creates_one_binding(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_exchange("ex", ExchangeKind.DIRECT)
    await operations.declare_queue("q")
    await operations.bind("q", "ex", "k")
    await operations.bind("q", "ex", "k")
    assert broker.bindings("ex") == {("q", "k")}
    await operations.unbind("q", "ex", "k")
    assert broker.bindings("ex") == set()


@pytest.mark.asyncio
async def test_send_to_queue_wraps_payload(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_queue("q")
    assert await operations.send_to_queue("q", {"n": 1}) is True
    [stored] = broker.messages("q")
    wire = _decode(stored)
    assert wire["data"] == {"n": 1}
    assert wire["retryCount"] == 0
    assert stored.message_id == wire["id"]
    assert stored.content_type == "application/json"


@pytest.mark.asyncio
async def test_publish_applies_options(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_queue("q", arguments={"x-max-priority": 10})
    opts = PublishOptions(priority=7, expiration=60_000, headers={"tenant": "t1"})
    await operations.send_to_queue("q", "payload", opts)
    [stored] = broker.messages("q")
    assert stored.priority == 7
    assert stored.expiration_ms == 60_000
    assert stored.headers["tenant"] == "t1"
    assert _decode(stored)["priority"] == 7


@pytest.mark.asyncio
async def test_publish_delay_sets_header(operations: QueueOperations) -> None:
    envelope = operations._envelope_for("x", PublishOptions(delay=500))
    message = operations._build_message(envelope, PublishOptions(delay=500))
    assert message.headers["x-delay"] == 500
    assert envelope.delay == 500


@pytest.mark.asyncio
async def test_publish_envelope_is_sent_unchanged(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_queue("q")
    envelope = MessageEnvelope(data={"a": 1}, message_id="fixed-id", retry_count=2)
    await operations.send_to_queue("q", envelope)
    wire = _decode(broker.messages("q")[0])
    assert wire["id"] == "fixed-id"
    assert wire["retryCount"] == 2


@pytest.mark.asyncio
async def test_publish_routes_through_exchange(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_exchange("ex", ExchangeKind.DIRECT)
    await operations.declare_queue("a")
    await operations.declare_queue("b")
    await operations.bind("a", "ex", "ka")
    await operations.bind("b", "ex", "kb")
    await operations.publish("ex", "kb", "hello")
    assert broker.message_count("a") == 0
    assert broker.message_count("b") == 1


@pytest.mark.asyncio
async def test_publish_nack_returns_false() -> None:
    nack = DeliveryError(None, spec.Basic.Nack(delivery_tag=1))
    exchange = MagicMock()
    exchange.publish = AsyncMock(side_effect=nack)
    channel = MagicMock()
    channel.get_exchange = AsyncMock(return_value=exchange)
    connection = MagicMock()
    connection.get_channel.return_value = channel
    ops = QueueOperations(connection)
    assert await ops.publish("ex", "k", {"a": 1}) is False


@pytest.mark.asyncio
async def test_consume_acks_on_success(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    received: list[MessageEnvelope] = []

    async def handler(envelope: MessageEnvelope) -> None:
        received.append(envelope)

    consumer = await operations.consume("q", handler)
    await operations.send_to_queue("q", {"n": 1})
    await operations.send_to_queue("q", {"n": 2})
    await eventually(lambda: consumer.processed == 2)
    assert [e.data for e in received] == [{"n": 1}, {"n": 2}]
    assert broker.message_count("q") == 0
    assert consumer.consumer_tag is not None
    assert operations.consumers == [consumer]


@pytest.mark.asyncio
async def test_consume_delivers_null_payload(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    received: list[MessageEnvelope] = []

    async def handler(envelope: MessageEnvelope) -> None:
        received.append(envelope)

    consumer = await operations.consume("q", handler)
    await operations.send_to_queue("q", None)
    await eventually(lambda: consumer.processed == 1)
    assert len(received) == 1
    assert received[0].data is None
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_consume_failure_nacks_with_requeue(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    attempts: list[bool] = []

    async def flaky(envelope: MessageEnvelope) -> None:
        attempts.append(True)
        if len(attempts) == 1:
            raise RuntimeError("first try fails")

    consumer = await operations.consume("q", flaky)
    await operations.send_to_queue("q", "job")
    await eventually(lambda: consumer.processed == 2)
    assert len(attempts) == 2
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_consume_failure_without_requeue_dead_letters(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_exchange("dlx", ExchangeKind.DIRECT)
    await operations.declare_queue("dead")
    await operations.bind("dead", "dlx", "q")
    await operations.declare_queue(
        "q", arguments={"x-dead-letter-exchange": "dlx", "x-dead-letter-routing-key": "q"}
    )

    async def failing(envelope: MessageEnvelope) -> None:
        raise RuntimeError("nope")

    await operations.consume("q", failing, requeue_on_error=False)
    await operations.send_to_queue("q", "job")
    await eventually(lambda: broker.message_count("dead") == 1)
    assert broker.message_count("q") == 0
    assert broker.messages("dead")[0].headers["x-first-death-reason"] == "rejected"


@pytest.mark.asyncio
async def test_malformed_frame_is_rejected_without_reaching_handler(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    handler = AsyncMock()
    consumer = await operations.consume("q", handler)
    broker.publish(StoredMessage(body=b"garbage", exchange="", routing_key="q"))
    await eventually(lambda: consumer.processed == 1)
    handler.assert_not_awaited()
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_no_ack_consumer_never_settles(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    handler = AsyncMock(side_effect=RuntimeError("ignored"))
    consumer = await operations.consume("q", handler, no_ack=True)
    await operations.send_to_queue("q", 1)
    await eventually(lambda: consumer.processed == 1)
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_consume_prefetch_applies_to_consumer_only(
    broker: InMemoryBroker,
    manager: RabbitMQConnectionManager,
    operations: QueueOperations,
) -> None:
    await operations.declare_queue("q")
    await operations.consume("q", AsyncMock(), prefetch=1)
    [state] = broker.queues["q"].consumers
    assert state.prefetch == 1
    assert manager.get_channel().prefetch_count == manager.settings.prefetch_count


@pytest.mark.asyncio
async def test_consume_manual_ack(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    handles: list[AckHandle] = []

    async def handler(envelope: MessageEnvelope, handle: AckHandle) -> None:
        handles.append(handle)
        await handle.ack()
        with pytest.raises(AckAlreadySettledError):
            await handle.nack()

    consumer = await operations.consume_manual("q", handler)
    await operations.send_to_queue("q", "x")
    await eventually(lambda: consumer.processed == 1)
    assert handles[0].action == "ack"
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_consume_manual_exception_requeues_unsettled(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    seen: list[str] = []

    async def handler(envelope: MessageEnvelope, handle: AckHandle) -> None:
        seen.append(envelope.message_id)
        if len(seen) == 1:
            raise RuntimeError("boom")
        await handle.ack()

    consumer = await operations.consume_manual("q", handler)
    await operations.send_to_queue("q", "x")
    await eventually(lambda: consumer.processed == 2)
    assert seen[0] == seen[1]
    assert broker.message_count("q") == 0


@pytest.mark.asyncio
async def test_consume_manual_unsettled_message_keeps_slot(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")

    async def forgetful(envelope: MessageEnvelope, handle: AckHandle) -> None:
        return None

    consumer = await operations.consume_manual("q", forgetful, prefetch=1)
    await operations.send_to_queue("q", 1)
    await operations.send_to_queue("q", 2)
    await eventually(lambda: consumer.processed == 1)
    await asyncio.sleep(0.02)
    assert consumer.processed == 1
    assert broker.message_count("q") == 1


@pytest.mark.asyncio
async def test_stop_consumer_requeues_buffered_deliveries(
    broker: InMemoryBroker, operations: QueueOperations, eventually
) -> None:
    await operations.declare_queue("q")
    release = asyncio.Event()
    started = asyncio.Event()

    async def slow(envelope: MessageEnvelope) -> None:
        started.set()
        await release.wait()

    consumer = await operations.consume("q", slow, prefetch=5)
    for n in range(3):
        await operations.send_to_queue("q", n)
    await started.wait()
    stopping = asyncio.create_task(consumer.stop(timeout=1.0))
    await asyncio.sleep(0.01)
    release.set()
    await stopping
    assert consumer.running is False
    assert consumer.processed == 1
    assert broker.message_count("q") == 2
    assert broker.consumer_count("q") == 0


@pytest.mark.asyncio
async def test_stop_times_out_and_cancels(operations: QueueOperations) -> None:
    await operations.declare_queue("q")
    started = asyncio.Event()

    async def stuck(envelope: MessageEnvelope) -> None:
        started.set()
        await asyncio.sleep(10)

    consumer = await operations.consume("q", stuck)
    await operations.send_to_queue("q", 1)
    await started.wait()
    await operations.stop_consumer(consumer, timeout=0.05)
    assert consumer.running is False
    assert operations.consumers == []


@pytest.mark.asyncio
async def test_resubscribe_after_reconnect(
    broker: InMemoryBroker,
    manager: RabbitMQConnectionManager,
    operations: QueueOperations,
    eventually,
) -> None:
    await operations.declare_queue("q")
    received: list[object] = []

    async def handler(envelope: MessageEnvelope) -> None:
        received.append(envelope.data)

    consumer = await operations.consume("q", handler)
    manager.add_reconnect_listener(operations.resubscribe)
    broker.drop_connections()
    assert await manager.wait_until_ready(timeout=1.0)
    await eventually(lambda: broker.consumer_count("q") == 1)
    await operations.send_to_queue("q", "after")
    await eventually(lambda: received == ["after"])
    assert consumer.running


@pytest.mark.asyncio
async def test_resubscribe_drops_consumer_of_deleted_queue(
    broker: InMemoryBroker,
    manager: RabbitMQConnectionManager,
    operations: QueueOperations,
    eventually,
) -> None:
    await operations.declare_queue("q")
    consumer = await operations.consume("q", AsyncMock())
    manager.add_reconnect_listener(operations.resubscribe)
    [connection] = broker.connections
    await operations.delete_queue("q")

    manager.get_channel().close_from_broker(RuntimeError("boom"))
    await eventually(lambda: operations.consumers == [] and manager.is_ready())
    await asyncio.sleep(0.05)
    assert consumer.running is False
    assert broker.connections == [connection]
    assert len(connection._channels) == 3


@pytest.mark.asyncio
async def test_queue_info_purge_and_delete(
    broker: InMemoryBroker, operations: QueueOperations
) -> None:
    await operations.declare_queue("q")
    for n in range(3):
        await operations.send_to_queue("q", n)
    info = await operations.queue_info("q")
    assert (info.message_count, info.consumer_count) == (3, 0)
    assert await operations.purge_queue("q") == 3
    await operations.send_to_queue("q", "last")
    assert await operations.delete_queue("q") == 1
    assert "q" not in broker.queues


@pytest.mark.asyncio
async def test_queue_info_missing_queue_raises(
    manager: RabbitMQConnectionManager, operations: QueueOperations
) -> None:
    with pytest.raises(ChannelNotFoundEntity):
        await operations.queue_info("missing")
    assert await manager.wait_until_ready(timeout=1.0)


@pytest.mark.asyncio
async def test_delete_exchange(broker: InMemoryBroker, operations: QueueOperations) -> None:
    await operations.declare_exchange("ex", ExchangeKind.FANOUT)
    await operations.delete_exchange("ex")
    assert "ex" not in broker.exchanges
