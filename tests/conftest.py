"""Shared fixtures: an in-memory broker and the components wired to it."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable

import pytest
import pytest_asyncio

from rabbitmq_patterns.memory import InMemoryBroker
from rabbitmq_patterns.rabbitmq import QueueOperations, RabbitMQConnectionManager
from rabbitmq_patterns.settings import BrokerSettings

Waiter = Callable[..., Awaitable[None]]


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(
        _env_file=None,
        reconnect_delay=0.01,
        max_reconnect_attempts=3,
        prefetch_count=10,
    )


@pytest_asyncio.fixture
async def manager(
    broker: InMemoryBroker, settings: BrokerSettings
) -> AsyncIterator[RabbitMQConnectionManager]:
    manager = RabbitMQConnectionManager(settings, connect=broker.connect)
    await manager.connect()
    yield manager
    await manager.disconnect()


@pytest_asyncio.fixture
async def operations(manager: RabbitMQConnectionManager) -> AsyncIterator[QueueOperations]:
    ops = QueueOperations(manager)
    yield ops
    await ops.stop_consuming(timeout=1.0)


@pytest.fixture
def eventually() -> Waiter:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""

    async def wait(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return wait
