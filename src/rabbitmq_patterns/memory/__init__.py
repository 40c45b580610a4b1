"""In-memory broker for tests; plugs into RabbitMQConnectionManager(connect=...)."""

from __future__ import annotations

from .broker import InMemoryBroker, StoredMessage
from .connection import (
    InMemoryChannel,
    InMemoryConnection,
    InMemoryExchange,
    InMemoryIncomingMessage,
    InMemoryQueue,
)

__all__ = [
    "InMemoryBroker",
    "InMemoryChannel",
    "InMemoryConnection",
    "InMemoryExchange",
    "InMemoryIncomingMessage",
    "InMemoryQueue",
    "StoredMessage",
]
