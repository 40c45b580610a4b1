"""Structured results returned by administrative and facade operations."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class _Result(BaseModel):
    model_config = ConfigDict(frozen=True)


class OperationResult(_Result):
    success: bool
    message: str


class QueueInfo(_Result):
    """Broker-reported counters from a passive queue declare."""

    name: str
    message_count: int = 0
    consumer_count: int = 0


class InitResult(_Result):
    success: bool
    message: str
    queues: list[str] = Field(default_factory=list)


class TopologyStatus(_Result):
    initialized: bool
    queue_count: int
    exchange_count: int
    queues: list[str] = Field(default_factory=list)


class QueueStats(_Result):
    """Per-queue statistics as reported by the management API."""

    name: str
    messages: int = 0
    messages_ready: int = 0
    messages_unacknowledged: int = 0
    consumers: int = 0
    state: str | None = None
    publish_rate: float = 0.0
    deliver_rate: float = 0.0


class HealthReport(_Result):
    status: Literal["healthy", "unhealthy"]
    connected: bool
    queues: list[QueueStats] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class SystemOverview(_Result):
    total_queues: int
    total_messages: int
    total_consumers: int
    connected: bool
    uptime: float
    errors: list[str] = Field(default_factory=list)


class PurgeReport(_Result):
    purged: dict[str, int] = Field(default_factory=dict)
    errors: list[str] = Field(default_factory=list)


class CleanupReport(_Result):
    cleaned: list[str] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)


class DeadLetterStats(_Result):
    queue: str
    dead_letter_queue: str
    queue_messages: int | None = None
    dead_letter_messages: int | None = None
