"""Integration tests against a real broker (require aio-pika and testcontainers)."""

from __future__ import annotations

import asyncio

import pytest

pytest.importorskip("aio_pika")
pytest.importorskip("testcontainers")
pytest.importorskip("pika")  # required by testcontainers.rabbitmq

from testcontainers.rabbitmq import RabbitMqContainer

from rabbitmq_patterns.envelope import MessageEnvelope
from rabbitmq_patterns.service import MessagingService
from rabbitmq_patterns.settings import BrokerSettings

pytestmark = pytest.mark.integration


@pytest.fixture(scope="module")
def broker_settings() -> BrokerSettings:
    with RabbitMqContainer("rabbitmq:3-management") as rabbit:
        params = rabbit.get_connection_params()
        creds = getattr(params, "credentials", None)
        yield BrokerSettings(
            _env_file=None,
            host=params.host,
            port=params.port,
            username=getattr(creds, "username", "guest"),
            password=getattr(creds, "password", "guest"),
            reconnect_delay=0.5,
        )


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_topology_and_work_queue(broker_settings: BrokerSettings) -> None:
    async with MessagingService(broker_settings, delay_strategy="ttl") as messaging:
        assert messaging.topology_status().initialized is True
        await messaging.setup_work_queue("it-jobs")
        received: list[int] = []

        async def handler(envelope: MessageEnvelope) -> None:
            received.append(envelope.data)

        await messaging.start_workers("it-jobs", handler, count=2)
        for n in range(5):
            await messaging.send_work("it-jobs", n)
        await _wait_for(lambda: len(received) == 5)
        assert sorted(received) == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_retry_then_dead_letter(broker_settings: BrokerSettings) -> None:
    async with MessagingService(broker_settings, delay_strategy="ttl") as messaging:
        await messaging.setup_dead_letter_queue("it-orders")
        counts: list[int] = []
        dead: list[MessageEnvelope] = []

        async def failing(envelope: MessageEnvelope) -> None:
            counts.append(envelope.retry_count)
            raise RuntimeError("always fails")

        async def terminal(envelope: MessageEnvelope) -> None:
            dead.append(envelope)

        await messaging.consume_with_retry("it-orders", failing, max_retries=3)
        await messaging.consume_dead_letter("it-orders", terminal)
        await messaging.operations.send_to_queue("it-orders", {"order": 1})
        await _wait_for(lambda: len(dead) == 1)
        assert counts == [0, 1, 2, 3]
        assert dead[0].retry_count == 3


@pytest.mark.asyncio
async def test_ttl_delay_queue(broker_settings: BrokerSettings) -> None:
    async with MessagingService(broker_settings, delay_strategy="ttl") as messaging:
        await messaging.setup_delay_queue("it-reminders")
        received: list[MessageEnvelope] = []

        async def handler(envelope: MessageEnvelope) -> None:
            received.append(envelope)

        await messaging.consume_delay_queue("it-reminders", handler)
        await messaging.send_delay_message("it-reminders", "ping", 300)
        await asyncio.sleep(0.1)
        assert received == []
        await _wait_for(lambda: len(received) == 1)
        assert received[0].delay == 300


@pytest.mark.asyncio
async def test_health_check(broker_settings: BrokerSettings) -> None:
    async with MessagingService(broker_settings) as messaging:
        report = await messaging.health_check()
        assert report.connected is True
        assert report.status == "healthy"
