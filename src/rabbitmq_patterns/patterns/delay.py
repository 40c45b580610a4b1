"""Delayed delivery via the delayed-message exchange plugin or TTL holding queues.

Plugin mode declares ``delay.exchange.<queue>`` of type ``x-delayed-message``
bound to the target queue, and publishes with an ``x-delay`` header.

TTL mode sends each message to a holding queue ``delay.queue.<queue>.<ms>``
whose message TTL equals the delay and whose dead-letter target is
``direct.<queue>`` -> ``<queue>``. One holding queue exists per distinct
delay, since a queue-level TTL applies to every message in it.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..exceptions import (
    MessageValidationError,
    MessagingConnectionError,
    MessagingError,
    UnsupportedOperationError,
)
from ..rabbitmq.connection import CONNECT_ERRORS
from ..rabbitmq.operations import PublishOptions
from ..topology import ExchangeKind
from .registry import QueueKind

if TYPE_CHECKING:
    from ..rabbitmq.consumer import Consumer
    from ..rabbitmq.management import ManagementService
    from ..rabbitmq.operations import QueueOperations
    from ..results import QueueInfo
    from .registry import Handler

logger = logging.getLogger("rabbitmq_patterns.patterns.delay")

DELAY_EXCHANGE_PREFIX = "delay.exchange"
DELAY_QUEUE_PREFIX = "delay.queue"
TARGET_EXCHANGE_PREFIX = "direct"
# Holding queues outlive their last message by this much before the broker removes them.
HOLDING_QUEUE_GRACE_MS = 60_000


class DelayStrategy(str, Enum):
    AUTO = "auto"
    PLUGIN = "plugin"
    TTL = "ttl"


class DelayQueueService:
    """Delay messages for a target queue.

    With ``strategy=AUTO`` the plugin is preferred. Availability is read from
    the management API when one is configured; otherwise the plugin exchange
    declare is attempted and, if the broker refuses it, the service waits for
    the connection to recover and falls back to TTL mode.
    """

    kind = QueueKind.DELAY

    def __init__(
        self,
        operations: QueueOperations,
        *,
        strategy: DelayStrategy | str = DelayStrategy.AUTO,
        management: ManagementService | None = None,
        recovery_timeout: float = 30.0,
    ) -> None:
        self._operations = operations
        self._strategy = DelayStrategy(strategy)
        self._management = management
        self._recovery_timeout = recovery_timeout
        self._plugin_available: bool | None = None
        self._modes: dict[str, DelayStrategy] = {}
        self._holding: dict[str, set[int]] = {}

    @staticmethod
    def delay_exchange(name: str) -> str:
        return f"{DELAY_EXCHANGE_PREFIX}.{name}"

    @staticmethod
    def target_exchange(name: str) -> str:
        return f"{TARGET_EXCHANGE_PREFIX}.{name}"

    @staticmethod
    def holding_queue(name: str, delay_ms: int) -> str:
        return f"{DELAY_QUEUE_PREFIX}.{name}.{delay_ms}"

    def mode(self, name: str) -> DelayStrategy | None:
        """Strategy chosen for ``name`` by :meth:`setup`, or None if not set up."""
        return self._modes.get(name)

    async def setup(
        self,
        name: str,
        *,
        durable: bool = True,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        strategy = await self._resolve_strategy()
        if strategy is DelayStrategy.TTL:
            await self._setup_ttl(name, durable, arguments)
        elif strategy is DelayStrategy.PLUGIN:
            await self._setup_plugin(name, durable, arguments)
        else:
            try:
                await self._setup_plugin(name, durable, arguments)
            except CONNECT_ERRORS as e:
                logger.warning(
                    "Delayed-message exchange unavailable (%s); using TTL fallback", e
                )
                self._plugin_available = False
                if not await self._operations.connection.wait_until_ready(
                    self._recovery_timeout
                ):
                    raise MessagingConnectionError(
                        "Broker did not recover after delayed exchange declare failed"
                    ) from e
                await self._setup_ttl(name, durable, arguments)
            else:
                self._plugin_available = True

    async def _resolve_strategy(self) -> DelayStrategy:
        if self._strategy is not DelayStrategy.AUTO:
            return self._strategy
        if self._plugin_available is None and self._management is not None:
            types = await self._management.exchange_types()
            if types is not None:
                self._plugin_available = ExchangeKind.DELAYED.value in types
        if self._plugin_available is None:
            return DelayStrategy.AUTO
        return DelayStrategy.PLUGIN if self._plugin_available else DelayStrategy.TTL

    async def _setup_plugin(
        self, name: str, durable: bool, arguments: dict[str, Any] | None
    ) -> None:
        exchange = self.delay_exchange(name)
        await self._operations.declare_exchange(
            exchange,
            ExchangeKind.DELAYED,
            durable=True,
            arguments={"x-delayed-type": ExchangeKind.DIRECT.value},
        )
        await self._operations.declare_queue(name, durable=durable, arguments=arguments)
        await self._operations.bind(name, exchange, name)
        self._modes[name] = DelayStrategy.PLUGIN
        logger.info("Delay queue ready (plugin): %s", name)

    async def _setup_ttl(
        self, name: str, durable: bool, arguments: dict[str, Any] | None
    ) -> None:
        exchange = self.target_exchange(name)
        await self._operations.declare_exchange(exchange, ExchangeKind.DIRECT, durable=True)
        await self._operations.declare_queue(name, durable=durable, arguments=arguments)
        await self._operations.bind(name, exchange, name)
        self._modes[name] = DelayStrategy.TTL
        logger.info("Delay queue ready (ttl): %s", name)

    async def send(
        self,
        name: str,
        payload: Any,
        *,
        delay: int,
        options: PublishOptions | None = None,
    ) -> bool:
        """Deliver ``payload`` to ``name`` after ``delay`` milliseconds."""
        if isinstance(delay, bool) or not isinstance(delay, int) or delay < 0:
            raise MessageValidationError(f"Delay must be a non-negative int (ms), got {delay!r}")
        mode = self._modes.get(name)
        if mode is None:
            raise MessagingError(f"Delay queue {name!r} has not been set up")
        base = options or PublishOptions()
        if mode is DelayStrategy.PLUGIN:
            return await self._operations.publish(
                self.delay_exchange(name),
                name,
                payload,
                base.model_copy(update={"delay": delay}),
            )
        holding = self.holding_queue(name, delay)
        # Redeclared on every send so x-expires never fires under a pending message.
        await self._operations.declare_queue(
            holding,
            durable=True,
            arguments={
                "x-message-ttl": delay,
                "x-expires": delay + HOLDING_QUEUE_GRACE_MS,
                "x-dead-letter-exchange": self.target_exchange(name),
                "x-dead-letter-routing-key": name,
            },
        )
        self._holding.setdefault(name, set()).add(delay)
        envelope = self._operations.serializer.wrap(
            payload, delay=delay, priority=base.priority, headers=base.headers
        )
        return await self._operations.send_to_queue(holding, envelope, base)

    async def consume(self, name: str, handler: Handler, **options: Any) -> Consumer:
        consumer = await self._operations.consume(name, handler, **options)
        logger.info("Consuming delay queue %s", name)
        return consumer

    async def cancel_delay_message(self, name: str, message_id: str) -> bool:
        raise UnsupportedOperationError(
            f"Cannot cancel delayed message {message_id} on {name}: "
            "the broker offers no way to withdraw a specific in-flight message"
        )

    async def stats(self, name: str) -> dict[str, QueueInfo | None]:
        """Counters for the target queue (``"target"``) and its holding queues."""
        result: dict[str, QueueInfo | None] = {"target": await self._info(name)}
        for delay in sorted(self._holding.get(name, ())):
            holding = self.holding_queue(name, delay)
            result[holding] = await self._info(holding)
        return result

    async def _info(self, queue: str) -> QueueInfo | None:
        try:
            return await self._operations.queue_info(queue)
        except (MessagingError, *CONNECT_ERRORS) as e:
            logger.debug("No queue info for %s: %s", queue, e)
            return None
