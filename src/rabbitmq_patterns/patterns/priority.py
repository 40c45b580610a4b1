"""Priority queue: broker ``x-max-priority`` with named tiers."""

from __future__ import annotations

import logging
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Literal

from ..exceptions import InvalidPriorityError
from ..rabbitmq.operations import PublishOptions
from .registry import QueueKind

if TYPE_CHECKING:
    from ..envelope import MessageEnvelope
    from ..rabbitmq.consumer import Consumer
    from ..rabbitmq.operations import QueueOperations
    from ..results import QueueInfo
    from .registry import Handler

logger = logging.getLogger("rabbitmq_patterns.patterns.priority")

PRIORITY_PREFIX = "priority.queue"
MAX_PRIORITY = 255
TASKS_QUEUE = "tasks"
NOTIFICATIONS_QUEUE = "notifications"

TASK_PRIORITIES = {"urgent": 10, "normal": 5, "low": 1}
NOTIFICATION_PRIORITIES = {"critical": 5, "important": 3, "info": 1}


class PriorityTier(IntEnum):
    HIGH = 10
    MEDIUM = 5
    LOW = 1


def validate_priority(priority: Any, maximum: int = MAX_PRIORITY) -> int:
    """Return ``priority`` if it is an int in ``0..maximum``."""
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise InvalidPriorityError(f"Priority must be an integer, got {priority!r}")
    if not 0 <= priority <= maximum:
        raise InvalidPriorityError(f"Priority must be between 0 and {maximum}, got {priority}")
    return priority


class PriorityQueueService:
    """Higher numeric priority is served first among messages queued at dispatch time."""

    kind = QueueKind.PRIORITY

    def __init__(
        self, operations: QueueOperations, *, prefix: str = PRIORITY_PREFIX
    ) -> None:
        self._operations = operations
        self._prefix = prefix

    def queue_name(self, name: str) -> str:
        return f"{self._prefix}.{name}"

    async def setup(
        self,
        name: str,
        *,
        max_priority: int = PriorityTier.HIGH,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        validate_priority(max_priority)
        if max_priority < 1:
            raise InvalidPriorityError("max_priority must be at least 1")
        full_name = self.queue_name(name)
        await self._operations.declare_queue(
            full_name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments={"x-max-priority": int(max_priority), **(arguments or {})},
        )
        logger.info("Priority queue ready: %s (max priority %d)", full_name, max_priority)

    async def send(
        self,
        name: str,
        payload: Any,
        *,
        priority: int,
        options: PublishOptions | None = None,
    ) -> bool:
        """Send with ``priority``; out-of-range values are rejected before publishing."""
        validate_priority(priority)
        base = options or PublishOptions()
        result = await self._operations.send_to_queue(
            self.queue_name(name),
            payload,
            base.model_copy(update={"priority": int(priority)}),
        )
        logger.debug("Sent to %s with priority %d", self.queue_name(name), priority)
        return result

    async def send_high(self, name: str, payload: Any, options: PublishOptions | None = None) -> bool:
        return await self.send(name, payload, priority=PriorityTier.HIGH, options=options)

    async def send_medium(
        self, name: str, payload: Any, options: PublishOptions | None = None
    ) -> bool:
        return await self.send(name, payload, priority=PriorityTier.MEDIUM, options=options)

    async def send_low(self, name: str, payload: Any, options: PublishOptions | None = None) -> bool:
        return await self.send(name, payload, priority=PriorityTier.LOW, options=options)

    async def send_batch(
        self, name: str, items: list[tuple[Any, int]], options: PublishOptions | None = None
    ) -> list[bool]:
        """Send ``(payload, priority)`` pairs; every priority is validated first."""
        for _, priority in items:
            validate_priority(priority)
        return [
            await self.send(name, payload, priority=priority, options=options)
            for payload, priority in items
        ]

    async def consume(
        self, name: str, handler: Handler, *, prefetch: int | None = None
    ) -> Consumer:
        consumer = await self._operations.consume(
            self.queue_name(name), handler, prefetch=prefetch
        )
        logger.info("Consuming priority queue %s", self.queue_name(name))
        return consumer

    async def stats(self, name: str) -> QueueInfo:
        return await self._operations.queue_info(self.queue_name(name))

    async def setup_task_queue(self) -> None:
        await self.setup(TASKS_QUEUE, max_priority=10)

    async def send_task(
        self, task_type: Literal["urgent", "normal", "low"], data: Any
    ) -> bool:
        try:
            priority = TASK_PRIORITIES[task_type]
        except KeyError:
            raise InvalidPriorityError(f"Unknown task type {task_type!r}") from None
        return await self.send(
            TASKS_QUEUE, {"type": task_type, "data": data}, priority=priority
        )

    async def consume_task_queue(self, handler: Handler) -> Consumer:
        async def logged(envelope: MessageEnvelope) -> None:
            task_type = envelope.data.get("type") if isinstance(envelope.data, dict) else None
            logger.info("Processing %s task %s", task_type, envelope.message_id)
            await handler(envelope)

        return await self.consume(TASKS_QUEUE, logged)

    async def setup_notification_queue(self) -> None:
        await self.setup(NOTIFICATIONS_QUEUE, max_priority=5)

    async def send_notification(
        self,
        level: Literal["critical", "important", "info"],
        notification: dict[str, Any],
    ) -> bool:
        try:
            priority = NOTIFICATION_PRIORITIES[level]
        except KeyError:
            raise InvalidPriorityError(f"Unknown notification level {level!r}") from None
        return await self.send(
            NOTIFICATIONS_QUEUE, {**notification, "type": level}, priority=priority
        )
