"""MessagingService: one client-facing surface over every pattern.

The facade owns the component graph built around a single
:class:`RabbitMQConnectionManager`. Nothing is global: construct one per
process (or per test) and pass it where it is needed::

    async with MessagingService(BrokerSettings()) as messaging:
        await messaging.send_email_task({"to": "a@example.com"}, priority="high")

Administrative calls return :mod:`rabbitmq_patterns.results` models instead
of raising; messaging calls propagate errors to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from .dead_letter import DeadLetterService
from .envelope import now_ms
from .exceptions import InvalidScheduleError, MessagingError
from .patterns import (
    DelayQueueService,
    DelayStrategy,
    FanoutService,
    PriorityQueueService,
    QueueKind,
    TopicService,
    WorkQueueService,
    default_registry,
)
from .patterns.priority import PriorityTier
from .rabbitmq.connection import CONNECT_ERRORS, RabbitMQConnectionManager
from .rabbitmq.management import ManagementService
from .rabbitmq.operations import PublishOptions, QueueOperations
from .rabbitmq.registrar import TopologyRegistrar
from .results import (
    CleanupReport,
    DeadLetterStats,
    HealthReport,
    InitResult,
    OperationResult,
    PurgeReport,
    QueueStats,
    SystemOverview,
    TopologyStatus,
)
from .topology import DEFAULT_TOPOLOGY

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    import httpx

    from .dead_letter import DeadLetterOptions, Escalation
    from .envelope import MessageEnvelope
    from .patterns.registry import PatternRegistry
    from .rabbitmq.connection import ConnectFactory
    from .rabbitmq.consumer import Consumer
    from .retry import RetryPolicy
    from .settings import BrokerSettings
    from .topology import QueueBinding

    Handler = Callable[[MessageEnvelope], Awaitable[None]]

logger = logging.getLogger("rabbitmq_patterns.service")

_ADMIN_ERRORS = (MessagingError, *CONNECT_ERRORS)

EMAIL_TASKS = "email-tasks"
SMS_TASKS = "sms-tasks"
PUSH_NOTIFICATIONS = "push-notifications"
SCHEDULED_TASKS = "scheduled-tasks"
SYSTEM_EVENTS = "system-events"
SYSTEM_NOTIFICATIONS = "system-notifications"

WORK_EXCHANGE = "work-exchange"
EVENTS_EXCHANGE = "events-exchange"
LOGS_EXCHANGE = "logs-exchange"
NOTIFICATIONS_EXCHANGE = "notifications-exchange"
PRIORITY_EXCHANGE = "priority-exchange"

EMAIL_PRIORITIES = {
    "high": PriorityTier.HIGH,
    "normal": PriorityTier.MEDIUM,
    "low": PriorityTier.LOW,
}


def _now_iso() -> str:
    return datetime.now().astimezone().isoformat()


class MessagingService:
    """Facade composing the connection, topology, patterns and dead-letter handling."""

    def __init__(
        self,
        settings: BrokerSettings | None = None,
        *,
        connect: ConnectFactory | None = None,
        table: Sequence[QueueBinding] = DEFAULT_TOPOLOGY,
        retry_policy: RetryPolicy | None = None,
        delay_strategy: DelayStrategy | str = DelayStrategy.AUTO,
        on_dead_letter_failure: Escalation | None = None,
        management_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Build the component graph; no I/O happens until :meth:`start`.

        Args:
            settings: Broker settings; read from the environment if omitted.
            connect: Connection factory passed to the connection manager.
            table: Static topology declared on start and after every reconnect.
            retry_policy: Backoff and default retry limit for protected queues.
            delay_strategy: ``auto``, ``plugin`` or ``ttl`` for delay queues.
            on_dead_letter_failure: Escalation callback for failed dead letters.
            management_transport: httpx transport for the management API.
        """
        self.connection = RabbitMQConnectionManager(settings, connect=connect)
        self.operations = QueueOperations(self.connection)
        self.registrar = TopologyRegistrar(self.operations, table)
        self.management = ManagementService(
            self.connection, self.operations, transport=management_transport
        )
        self.patterns: PatternRegistry = default_registry(
            self.operations, management=self.management, delay_strategy=delay_strategy
        )
        self.dead_letters = DeadLetterService(
            self.operations,
            policy=retry_policy,
            on_dead_letter_failure=on_dead_letter_failure,
        )
        self._ready_queues: set[tuple[QueueKind, str]] = set()
        self._started = False

    @property
    def work(self) -> WorkQueueService:
        return self.patterns.get(QueueKind.WORK)  # type: ignore[return-value]

    @property
    def priority(self) -> PriorityQueueService:
        return self.patterns.get(QueueKind.PRIORITY)  # type: ignore[return-value]

    @property
    def delay(self) -> DelayQueueService:
        return self.patterns.get(QueueKind.DELAY)  # type: ignore[return-value]

    @property
    def fanout(self) -> FanoutService:
        return self.patterns.get(QueueKind.FANOUT)  # type: ignore[return-value]

    @property
    def topic(self) -> TopicService:
        return self.patterns.get(QueueKind.TOPIC)  # type: ignore[return-value]

    # -- lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Connect, declare the topology and arm automatic recovery."""
        await self.connection.connect()
        await self.registrar.initialize()
        if not self._started:
            self.connection.add_reconnect_listener(self._on_reconnect)
            self._started = True
        logger.info("Messaging service started")

    async def close(self, timeout: float = 10.0) -> None:
        """Drain consumers, then disconnect."""
        await self.operations.stop_consuming(timeout)
        await self.connection.disconnect()
        logger.info("Messaging service stopped")

    async def __aenter__(self) -> MessagingService:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _on_reconnect(self) -> None:
        await self.registrar.initialize(force=True)
        await self.operations.resubscribe()
        await self.fanout.restore_temporary_queues()
        logger.info(
            "Topology restored and %d consumers resubscribed", len(self.operations.consumers)
        )

    def is_ready(self) -> bool:
        return self.connection.is_ready()

    async def _ensure(self, kind: QueueKind, name: str, **options: Any) -> None:
        """Declare a pattern queue or exchange once per service lifetime."""
        if (kind, name) in self._ready_queues:
            return
        await self.patterns.get(kind).setup(name, **options)
        self._ready_queues.add((kind, name))

    # -- delay --------------------------------------------------------------

    async def setup_delay_queue(self, name: str, **options: Any) -> None:
        await self._ensure(QueueKind.DELAY, name, **options)

    async def send_delay_message(self, name: str, payload: Any, delay: int) -> bool:
        return await self.delay.send(name, payload, delay=delay)

    async def consume_delay_queue(self, name: str, handler: Handler, **options: Any) -> Consumer:
        return await self.delay.consume(name, handler, **options)

    async def cancel_delay_message(self, name: str, message_id: str) -> bool:
        return await self.delay.cancel_delay_message(name, message_id)

    # -- fanout -------------------------------------------------------------

    async def setup_fanout_exchange(self, exchange: str) -> None:
        await self._ensure(QueueKind.FANOUT, exchange)

    async def bind_to_fanout(self, exchange: str, queue: str, **options: Any) -> None:
        await self.fanout.bind(exchange, queue, **options)

    async def broadcast(self, exchange: str, payload: Any) -> bool:
        return await self.fanout.broadcast(exchange, payload)

    async def consume_fanout_queue(self, queue: str, handler: Handler, **options: Any) -> Consumer:
        return await self.fanout.consume(queue, handler, **options)

    async def listen_to_fanout(self, exchange: str, handler: Handler) -> str:
        """Consume ``exchange`` through a temporary queue; returns its name."""
        return await self.fanout.create_temporary_queue(exchange, handler)

    # -- topic --------------------------------------------------------------

    async def setup_topic_exchange(self, exchange: str) -> None:
        await self._ensure(QueueKind.TOPIC, exchange)

    async def bind_to_topic(
        self, exchange: str, queue: str, patterns: str | list[str], **options: Any
    ) -> None:
        if isinstance(patterns, str):
            patterns = [patterns]
        await self.topic.bind_many(exchange, queue, patterns, **options)

    async def publish_topic(self, exchange: str, routing_key: str, payload: Any) -> bool:
        return await self.topic.publish(exchange, routing_key, payload)

    async def consume_topic_queue(self, queue: str, handler: Handler, **options: Any) -> Consumer:
        return await self.topic.consume(queue, handler, **options)

    # -- priority -----------------------------------------------------------

    async def setup_priority_queue(self, name: str, max_priority: int = PriorityTier.HIGH) -> None:
        await self._ensure(QueueKind.PRIORITY, name, max_priority=max_priority)

    async def send_priority_message(self, name: str, payload: Any, priority: int) -> bool:
        return await self.priority.send(name, payload, priority=priority)

    async def consume_priority_queue(
        self, name: str, handler: Handler, *, prefetch: int | None = None
    ) -> Consumer:
        return await self.priority.consume(name, handler, prefetch=prefetch)

    # -- work ---------------------------------------------------------------

    async def setup_work_queue(self, name: str, **options: Any) -> None:
        await self._ensure(QueueKind.WORK, name, **options)

    async def send_work(self, name: str, payload: Any) -> bool:
        return await self.work.send(name, payload)

    async def consume_work(
        self, name: str, handler: Handler, *, worker_id: str | None = None, prefetch: int = 1
    ) -> Consumer:
        return await self.work.consume(name, handler, worker_id=worker_id, prefetch=prefetch)

    async def start_workers(
        self, name: str, handler: Handler, count: int = 3, *, prefetch: int = 1
    ) -> list[Consumer]:
        return await self.work.start_workers(name, handler, count, prefetch=prefetch)

    # -- dead letters -------------------------------------------------------

    async def setup_dead_letter_queue(
        self, queue: str, options: DeadLetterOptions | None = None
    ) -> None:
        await self.dead_letters.setup(queue, options)

    async def consume_with_retry(
        self,
        queue: str,
        handler: Handler,
        max_retries: int | None = None,
        *,
        prefetch: int | None = None,
    ) -> Consumer:
        return await self.dead_letters.consume_with_retry(
            queue, handler, max_retries, prefetch=prefetch
        )

    async def consume_dead_letter(
        self, queue: str, handler: Handler, *, prefetch: int | None = None
    ) -> Consumer:
        return await self.dead_letters.consume_dead_letter(queue, handler, prefetch=prefetch)

    async def dead_letter_stats(self, queue: str) -> DeadLetterStats:
        return await self.dead_letters.stats(queue)

    # -- conveniences -------------------------------------------------------

    async def send_email_task(
        self,
        email: dict[str, Any],
        priority: Literal["high", "normal", "low"] = "normal",
    ) -> bool:
        await self._ensure(QueueKind.PRIORITY, EMAIL_TASKS, max_priority=PriorityTier.HIGH)
        return await self.priority.send(
            EMAIL_TASKS, email, priority=EMAIL_PRIORITIES.get(priority, PriorityTier.MEDIUM)
        )

    async def send_sms_task(self, sms: dict[str, Any], urgent: bool = False) -> bool:
        await self._ensure(QueueKind.PRIORITY, SMS_TASKS, max_priority=PriorityTier.HIGH)
        priority = PriorityTier.HIGH if urgent else PriorityTier.MEDIUM
        return await self.priority.send(SMS_TASKS, sms, priority=priority)

    async def send_push_notification(self, notification: dict[str, Any]) -> bool:
        await self._ensure(QueueKind.WORK, PUSH_NOTIFICATIONS)
        return await self.work.send(PUSH_NOTIFICATIONS, notification)

    async def schedule_task(self, task_name: str, data: Any, execute_at: datetime) -> bool:
        """Deliver ``data`` to the ``scheduled-tasks`` delay queue at ``execute_at``."""
        delay = int(execute_at.timestamp() * 1000) - now_ms()
        if delay <= 0:
            raise InvalidScheduleError(
                f"Execution time {execute_at.isoformat()} for {task_name!r} is not in the future"
            )
        await self._ensure(QueueKind.DELAY, SCHEDULED_TASKS)
        logger.info("Scheduling %s in %dms", task_name, delay)
        return await self.delay.send(
            SCHEDULED_TASKS,
            {"taskName": task_name, "data": data, "executeAt": execute_at.isoformat()},
            delay=delay,
        )

    async def publish_event(self, event_type: str, data: Any) -> bool:
        await self._ensure(QueueKind.TOPIC, SYSTEM_EVENTS)
        return await self.topic.publish(
            SYSTEM_EVENTS,
            event_type,
            {"eventType": event_type, "data": data, "timestamp": _now_iso()},
        )

    async def broadcast_system_notification(self, notification: dict[str, Any]) -> bool:
        await self._ensure(QueueKind.FANOUT, SYSTEM_NOTIFICATIONS)
        return await self.fanout.broadcast(
            SYSTEM_NOTIFICATIONS, {**notification, "timestamp": _now_iso()}
        )

    # Shortcuts onto the static topology table.

    async def send_email(self, email: dict[str, Any]) -> bool:
        return await self.operations.publish(WORK_EXCHANGE, "email", email)

    async def send_sms(self, sms: dict[str, Any]) -> bool:
        return await self.operations.publish(WORK_EXCHANGE, "sms", sms)

    async def process_image(self, image: dict[str, Any]) -> bool:
        return await self.operations.publish(WORK_EXCHANGE, "image", image)

    async def _publish_entity_event(self, entity: str, action: str, data: Any) -> bool:
        return await self.operations.publish(
            EVENTS_EXCHANGE,
            f"{entity}.{action}",
            {"entity": entity, "action": action, "data": data, "timestamp": _now_iso()},
        )

    async def publish_user_event(self, action: str, data: Any) -> bool:
        return await self._publish_entity_event("user", action, data)

    async def publish_order_event(self, action: str, data: Any) -> bool:
        return await self._publish_entity_event("order", action, data)

    async def publish_payment_event(self, action: str, data: Any) -> bool:
        return await self._publish_entity_event("payment", action, data)

    async def log_error(
        self, service: str, message: str, error: BaseException | str | None = None
    ) -> bool:
        return await self.operations.publish(
            LOGS_EXCHANGE,
            f"{service}.error",
            {
                "level": "error",
                "service": service,
                "message": message,
                "error": str(error) if error is not None else None,
                "timestamp": _now_iso(),
            },
        )

    async def log_warning(self, service: str, message: str, data: Any = None) -> bool:
        return await self.operations.publish(
            LOGS_EXCHANGE,
            f"{service}.warning",
            {
                "level": "warning",
                "service": service,
                "message": message,
                "data": data,
                "timestamp": _now_iso(),
            },
        )

    async def broadcast_notification(self, notification: dict[str, Any]) -> bool:
        return await self.operations.publish(
            NOTIFICATIONS_EXCHANGE, "", {**notification, "timestamp": _now_iso()}
        )

    async def send_urgent_task(self, task: Any) -> bool:
        return await self.operations.publish(
            PRIORITY_EXCHANGE, "urgent", task, PublishOptions(priority=int(PriorityTier.HIGH))
        )

    # -- administration -----------------------------------------------------

    async def health_check(self) -> HealthReport:
        return await self.management.health_check()

    async def queue_stats(self, name: str) -> QueueStats | None:
        return await self.management.queue_stats(name)

    async def system_overview(self) -> SystemOverview:
        return await self.management.system_overview()

    async def reinitialize_topology(self) -> InitResult:
        return await self.registrar.manual_init()

    def topology_status(self) -> TopologyStatus:
        return self.registrar.status()

    async def purge_queue(self, name: str) -> OperationResult:
        try:
            count = await self.operations.purge_queue(name)
        except _ADMIN_ERRORS as e:
            logger.error("Failed to purge queue %s: %s", name, e)
            return OperationResult(success=False, message=f"Failed to purge queue {name}: {e}")
        return OperationResult(success=True, message=f"Purged {count} messages from {name}")

    async def delete_queue(
        self, name: str, *, if_unused: bool = False, if_empty: bool = False
    ) -> OperationResult:
        try:
            count = await self.operations.delete_queue(
                name, if_unused=if_unused, if_empty=if_empty
            )
        except _ADMIN_ERRORS as e:
            logger.error("Failed to delete queue %s: %s", name, e)
            return OperationResult(success=False, message=f"Failed to delete queue {name}: {e}")
        return OperationResult(success=True, message=f"Deleted {name} ({count} messages dropped)")

    async def purge_queues(self, names: list[str]) -> PurgeReport:
        return await self.management.purge_queues(names)

    async def cleanup_empty_queues(self, names: list[str]) -> CleanupReport:
        return await self.management.cleanup_empty_queues(names)

    async def purge_dead_letters(self, queue: str) -> OperationResult:
        try:
            count = await self.dead_letters.purge(queue)
        except _ADMIN_ERRORS as e:
            logger.error("Failed to purge dead letters for %s: %s", queue, e)
            return OperationResult(success=False, message=f"Failed to purge dead letters: {e}")
        return OperationResult(success=True, message=f"Purged {count} dead letters for {queue}")
