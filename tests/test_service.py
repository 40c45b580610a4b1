"""Tests for the MessagingService facade."""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from rabbitmq_patterns.envelope import MessageEnvelope
from rabbitmq_patterns.exceptions import InvalidScheduleError
from rabbitmq_patterns.memory import InMemoryBroker
from rabbitmq_patterns.service import MessagingService
from rabbitmq_patterns.settings import BrokerSettings


@pytest_asyncio.fixture
async def service(
    broker: InMemoryBroker, settings: BrokerSettings
) -> AsyncIterator[MessagingService]:
    messaging = MessagingService(settings, connect=broker.connect)
    await messaging.start()
    yield messaging
    await messaging.close(timeout=1.0)


def _data(broker: InMemoryBroker, queue: str) -> list:
    return [json.loads(m.body)["data"] for m in broker.messages(queue)]


@pytest.mark.asyncio
async def test_start_declares_static_topology(
    broker: InMemoryBroker, service: MessagingService
) -> None:
    assert service.is_ready()
    assert service.topology_status().initialized is True
    assert "urgent-tasks" in broker.queues
    assert "events-exchange" in broker.exchanges


@pytest.mark.asyncio
async def test_start_twice_registers_one_listener(service: MessagingService) -> None:
    await service.start()
    assert len(service.connection._listeners) == 1


@pytest.mark.asyncio
async def test_context_manager_closes(broker: InMemoryBroker, settings: BrokerSettings) -> None:
    async with MessagingService(settings, connect=broker.connect) as messaging:
        assert messaging.is_ready()
    assert messaging.is_ready() is False
    assert broker.connections == []


@pytest.mark.asyncio
async def test_email_task_priorities(broker: InMemoryBroker, service: MessagingService) -> None:
    await service.send_email_task({"to": "a@example.com"}, priority="high")
    await service.send_email_task({"to": "b@example.com"})
    await service.send_email_task({"to": "c@example.com"}, priority="low")
    queue = broker.queues["priority.queue.email-tasks"]
    assert queue.arguments == {"x-max-priority": 10}
    assert [m.priority for m in queue.ready] == [10, 5, 1]
    assert broker.message_count("email-tasks") == 0


@pytest.mark.asyncio
async def test_sms_task_urgency(broker: InMemoryBroker, service: MessagingService) -> None:
    await service.send_sms_task({"to": "+100"}, urgent=True)
    await service.send_sms_task({"to": "+200"})
    assert [m.priority for m in broker.messages("priority.queue.sms-tasks")] == [10, 5]


@pytest.mark.asyncio
async def test_push_notification_sets_up_queue_once(
    broker: InMemoryBroker, service: MessagingService
) -> None:
    await service.send_push_notification({"title": "a"})
    await service.send_push_notification({"title": "b"})
    assert _data(broker, "work.queue.push-notifications") == [{"title": "a"}, {"title": "b"}]


@pytest.mark.asyncio
async def test_schedule_task_in_past_is_rejected(
    broker: InMemoryBroker, service: MessagingService
) -> None:
    past = datetime.now(timezone.utc) - timedelta(seconds=1)
    with pytest.raises(InvalidScheduleError):
        await service.schedule_task("report", {}, past)
    assert "scheduled-tasks" not in broker.queues


@pytest.mark.asyncio
async def test_schedule_task_delivers_later(
    broker: InMemoryBroker, service: MessagingService, eventually
) -> None:
    execute_at = datetime.now(timezone.utc) + timedelta(milliseconds=200)
    assert await service.schedule_task("report", {"day": 1}, execute_at) is True
    assert broker.message_count("scheduled-tasks") == 0
    await eventually(lambda: broker.message_count("scheduled-tasks") == 1)
    [payload] = _data(broker, "scheduled-tasks")
    assert payload == {
        "taskName": "report",
        "data": {"day": 1},
        "executeAt": execute_at.isoformat(),
    }


@pytest.mark.asyncio
async def test_publish_event_routes_by_type(
    broker: InMemoryBroker, service: MessagingService
) -> None:
    await service.setup_topic_exchange("system-events")
    await service.bind_to_topic("system-events", "audit.users", "user.*")
    await service.bind_to_topic("system-events", "audit.all", ["#"])
    await service.publish_event("user.created", {"id": 1})
    await service.publish_event("order.created", {"id": 2})
    [event] = _data(broker, "audit.users")
    assert event["eventType"] == "user.created"
    assert event["data"] == {"id": 1}
    assert "timestamp" in event
    assert broker.message_count("audit.all") == 2


@pytest.mark.asyncio
async def test_system_notification_reaches_every_listener(
    broker: InMemoryBroker, service: MessagingService
) -> None:
    await service.setup_fanout_exchange("system-notifications")
    for queue in ("ops", "status-page"):
        await service.bind_to_fanout("system-notifications", queue)
    await service.broadcast_system_notification({"text": "deploy"})
    for queue in ("ops", "status-page"):
        [notification] = _data(broker, queue)
        assert notification["text"] == "deploy"
        assert "timestamp" in notification


@pytest.mark.asyncio
async def test_static_table_shortcuts(broker: InMemoryBroker, service: MessagingService) -> None:
    await service.send_email({"to": "a@example.com"})
    await service.send_sms({"to": "+1"})
    await service.process_image({"url": "cat.png"})
    await service.publish_user_event("created", {"id": 1})
    await service.publish_order_event("paid", {"id": 2})
    await service.publish_payment_event("refunded", {"id": 3})
    await service.log_error("billing", "charge failed", ValueError("card declined"))
    await service.log_warning("billing", "slow gateway")
    await service.broadcast_notification({"text": "hi"})
    await service.send_urgent_task({"job": "failover"})

    assert _data(broker, "email-tasks") == [{"to": "a@example.com"}]
    assert _data(broker, "sms-tasks") == [{"to": "+1"}]
    assert _data(broker, "image-processing") == [{"url": "cat.png"}]
    assert broker.message_count("events.user") == 1
    assert broker.message_count("events.order") == 1
    assert broker.message_count("events.payment") == 1
    assert broker.message_count("events.all") == 3
    [user_event] = _data(broker, "events.user")
    assert (user_event["entity"], user_event["action"]) == ("user", "created")
    [error] = _data(broker, "logs.error")
    assert error["error"] == "card declined"
    assert broker.message_count("logs.warning") == 1
    assert broker.message_count("logs.all") == 2
    for queue in ("notifications.web", "notifications.mobile", "notifications.email"):
        assert broker.message_count(queue) == 1
    [urgent] = broker.messages("urgent-tasks")
    assert urgent.priority == 10


@pytest.mark.asyncio
async def test_work_roundtrip_through_facade(service: MessagingService, eventually) -> None:
    await service.setup_work_queue("jobs")
    done: list[int] = []

    async def handler(envelope: MessageEnvelope) -> None:
        done.append(envelope.data)

    await service.start_workers("jobs", handler, count=2)
    for n in range(4):
        await service.send_work("jobs", n)
    await eventually(lambda: len(done) == 4)
    assert sorted(done) == [0, 1, 2, 3]


@pytest.mark.asyncio
async def test_reconnect_restores_consumers(
    broker: InMemoryBroker, service: MessagingService, eventually
) -> None:
    await service.setup_work_queue("jobs")
    done: list[str] = []

    async def handler(envelope: MessageEnvelope) -> None:
        done.append(envelope.data)

    await service.consume_work("jobs", handler, worker_id="w1")
    broker.drop_connections()
    assert service.is_ready() is False

    assert await service.connection.wait_until_ready(timeout=2.0)
    await eventually(lambda: broker.consumer_count("work.queue.jobs") == 1)
    await service.send_work("jobs", "after-reconnect")
    await eventually(lambda: done == ["after-reconnect"])
    assert service.connection.reconnect_attempts == 0


@pytest.mark.asyncio
async def test_reconnect_replaces_temporary_fanout_listener(
    broker: InMemoryBroker, service: MessagingService, eventually
) -> None:
    await service.setup_fanout_exchange("alerts")
    received: list[str] = []

    async def handler(envelope: MessageEnvelope) -> None:
        received.append(envelope.data)

    old = await service.listen_to_fanout("alerts", handler)
    broker.drop_connections()
    assert await service.connection.wait_until_ready(timeout=2.0)
    await eventually(
        lambda: [c.queue for c in service.operations.consumers] not in ([], [old])
    )
    await service.broadcast("alerts", "after")
    await eventually(lambda: received == ["after"])
    [connection] = broker.connections
    assert len(connection._channels) == 1


@pytest.mark.asyncio
async def test_admin_results(broker: InMemoryBroker, service: MessagingService) -> None:
    await service.send_email({"to": "x"})
    result = await service.purge_queue("email-tasks")
    assert result.success is True
    assert result.message == "Purged 1 messages from email-tasks"

    deleted = await service.delete_queue("email-tasks")
    assert deleted.success is True
    assert "email-tasks" not in broker.queues

    reinit = await service.reinitialize_topology()
    assert reinit.success is True
    assert "email-tasks" in broker.queues

    missing = await service.purge_queue("ghost")
    assert missing.success is False
    assert "ghost" in missing.message
    assert await service.connection.wait_until_ready(timeout=1.0)


@pytest.mark.asyncio
async def test_dead_letter_admin(broker: InMemoryBroker, service: MessagingService) -> None:
    await service.setup_dead_letter_queue("payments")
    await service.operations.publish("dlx.payments", "payments", {"id": 1})
    stats = await service.dead_letter_stats("payments")
    assert stats.dead_letter_messages == 1
    result = await service.purge_dead_letters("payments")
    assert result.success is True
    assert broker.message_count("dlq.payments") == 0


@pytest.mark.asyncio
async def test_health_without_management_api(service: MessagingService) -> None:
    report = await service.health_check()
    assert report.status == "healthy"
    assert report.connected is True
    assert report.queues == []
