"""Topic routing with ``*`` / ``#`` wildcard binding patterns."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Literal

from ..topology import ExchangeKind, topic_matches
from .registry import QueueKind

if TYPE_CHECKING:
    from ..rabbitmq.consumer import Consumer
    from ..rabbitmq.operations import PublishOptions, QueueOperations
    from .registry import Handler

logger = logging.getLogger("rabbitmq_patterns.patterns.topic")

TOPIC_PREFIX = "topic.exchange"

LOG_BINDINGS: dict[str, list[str]] = {
    "logs.error": ["app.*.error"],
    "logs.warning": ["app.*.warning", "app.*.error"],
    "logs.app.user-service": ["app.user-service.*"],
    "logs.all": ["#"],
}
EVENT_BINDINGS: dict[str, list[str]] = {
    "events.user": ["user.*"],
    "events.order": ["order.*"],
    "events.payment": ["payment.*"],
    "events.important": ["*.created", "*.deleted"],
}

__all__ = ["TopicService", "topic_matches"]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TopicService:
    kind = QueueKind.TOPIC

    def __init__(self, operations: QueueOperations, *, prefix: str = TOPIC_PREFIX) -> None:
        self._operations = operations
        self._prefix = prefix

    def exchange_name(self, name: str) -> str:
        return f"{self._prefix}.{name}"

    async def setup(self, exchange: str) -> None:
        full_name = self.exchange_name(exchange)
        await self._operations.declare_exchange(full_name, ExchangeKind.TOPIC, durable=True)
        logger.info("Topic exchange ready: %s", full_name)

    async def bind(
        self,
        exchange: str,
        queue: str,
        pattern: str,
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        await self.bind_many(
            exchange,
            queue,
            [pattern],
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
        )

    async def bind_many(
        self,
        exchange: str,
        queue: str,
        patterns: list[str],
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """Declare ``queue`` and bind it once per pattern."""
        await self._operations.declare_queue(
            queue,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
        )
        full_name = self.exchange_name(exchange)
        for pattern in patterns:
            await self._operations.bind(queue, full_name, pattern)
        logger.info("Bound %s to %s with %s", queue, full_name, ", ".join(patterns))

    async def unbind(self, exchange: str, queue: str, pattern: str) -> None:
        await self._operations.unbind(queue, self.exchange_name(exchange), pattern)

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        options: PublishOptions | None = None,
    ) -> bool:
        return await self._operations.publish(
            self.exchange_name(exchange), routing_key, payload, options
        )

    async def send(
        self,
        name: str,
        payload: Any,
        *,
        routing_key: str,
        options: PublishOptions | None = None,
    ) -> bool:
        return await self.publish(name, routing_key, payload, options)

    async def consume(self, name: str, handler: Handler, **options: Any) -> Consumer:
        """Consume the bound queue ``name``."""
        return await self._operations.consume(name, handler, **options)

    async def setup_log_queues(self, exchange: str) -> None:
        await self.setup(exchange)
        for queue, patterns in LOG_BINDINGS.items():
            await self.bind_many(exchange, queue, patterns)

    async def publish_log(
        self,
        exchange: str,
        level: Literal["info", "warning", "error"],
        service: str,
        message: Any,
    ) -> bool:
        return await self.publish(
            exchange,
            f"app.{service}.{level}",
            {"level": level, "service": service, "message": message, "timestamp": _now()},
        )

    async def setup_event_queues(self, exchange: str) -> None:
        await self.setup(exchange)
        for queue, patterns in EVENT_BINDINGS.items():
            await self.bind_many(exchange, queue, patterns)

    async def publish_event(self, exchange: str, entity: str, action: str, data: Any) -> bool:
        return await self.publish(
            exchange,
            f"{entity}.{action}",
            {"entity": entity, "action": action, "data": data, "timestamp": _now()},
        )
