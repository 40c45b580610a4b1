"""In-memory broker state: exchanges, queues, bindings, routing and dispatch.

Handles returned by :mod:`.connection` forward to this object. Routing follows
AMQP 0-9-1 semantics closely enough for tests: the default exchange, direct,
topic, fanout and delayed-message exchanges; priority queues; message and
queue TTL; dead-letter exchanges; per-consumer prefetch with round-robin
dispatch. Queue ``x-expires`` is accepted but not enforced.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import (
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    ConnectionClosed,
)

from ..topology import ExchangeKind, topic_matches

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .connection import InMemoryChannel, InMemoryConnection, InMemoryIncomingMessage

logger = logging.getLogger("rabbitmq_patterns.memory")

DEFAULT_EXCHANGE = ""


@dataclass
class StoredMessage:
    body: bytes
    exchange: str
    routing_key: str
    headers: dict[str, Any] = field(default_factory=dict)
    priority: int = 0
    message_id: str | None = None
    content_type: str | None = None
    expiration_ms: int | None = None
    redelivered: bool = False
    enqueued_at: float = 0.0
    seq: int = 0

    def expired(self, queue_ttl: int | None, now: float) -> bool:
        ttls = [t for t in (queue_ttl, self.expiration_ms) if t is not None]
        if not ttls:
            return False
        # loop timers may fire up to one clock tick early
        return (now - self.enqueued_at) * 1000 + 1 >= min(ttls)


@dataclass
class ConsumerState:
    tag: str
    queue: str
    channel: InMemoryChannel
    callback: Callable[[InMemoryIncomingMessage], Awaitable[Any]]
    no_ack: bool
    prefetch: int
    in_flight: int = 0

    @property
    def has_credit(self) -> bool:
        return self.no_ack or self.prefetch == 0 or self.in_flight < self.prefetch


@dataclass
class ExchangeState:
    name: str
    type: str
    durable: bool = True
    auto_delete: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)
    bindings: set[tuple[str, str]] = field(default_factory=set)

    def same_options(self, other: ExchangeState) -> bool:
        return (self.type, self.durable, self.auto_delete, self.arguments) == (
            other.type,
            other.durable,
            other.auto_delete,
            other.arguments,
        )


@dataclass
class QueueState:
    name: str
    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] = field(default_factory=dict)
    owner: InMemoryConnection | None = None
    ready: list[StoredMessage] = field(default_factory=list)
    consumers: list[ConsumerState] = field(default_factory=list)
    rr: int = 0
    had_consumer: bool = False

    def same_options(self, other: QueueState) -> bool:
        return (self.durable, self.exclusive, self.auto_delete, self.arguments) == (
            other.durable,
            other.exclusive,
            other.auto_delete,
            other.arguments,
        )

    @property
    def max_priority(self) -> int | None:
        value = self.arguments.get("x-max-priority")
        return int(value) if value is not None else None

    @property
    def message_ttl(self) -> int | None:
        value = self.arguments.get("x-message-ttl")
        return int(value) if value is not None else None

    def pop_next(self) -> StoredMessage:
        if self.max_priority is None:
            return self.ready.pop(0)
        best = max(range(len(self.ready)), key=lambda i: (self.ready[i].priority, -i))
        return self.ready.pop(best)


class InMemoryBroker:
    """A single-process stand-in for a RabbitMQ server.

    ``connect`` has the same shape as ``aio_pika.connect`` and can be passed
    to :class:`~rabbitmq_patterns.rabbitmq.RabbitMQConnectionManager`.
    """

    def __init__(self, *, delayed_exchange_plugin: bool = True) -> None:
        self.delayed_exchange_plugin = delayed_exchange_plugin
        self.available = True
        self.connect_attempts = 0
        self.exchanges: dict[str, ExchangeState] = {}
        self.queues: dict[str, QueueState] = {}
        self.published: list[StoredMessage] = []
        self._connections: list[InMemoryConnection] = []
        self._seq = itertools.count()
        self._tags = itertools.count(1)
        self._tasks: set[asyncio.Task[Any]] = set()

    # -- connections --------------------------------------------------------

    async def connect(self, url: str = "amqp://memory/", **kwargs: Any) -> InMemoryConnection:
        from .connection import InMemoryConnection

        self.connect_attempts += 1
        if not self.available:
            raise ConnectionError(f"Broker unavailable at {url}")
        connection = InMemoryConnection(self, client_properties=kwargs.get("client_properties"))
        self._connections.append(connection)
        return connection

    @property
    def connections(self) -> list[InMemoryConnection]:
        return [c for c in self._connections if not c.is_closed]

    def drop_connections(self) -> None:
        """Close every client connection from the broker side."""
        for connection in self.connections:
            connection.close_from_broker(
                ConnectionClosed(320, "CONNECTION_FORCED - broker forced connection closure")
            )

    def connection_closed(self, connection: InMemoryConnection) -> None:
        for name in [n for n, q in self.queues.items() if q.owner is connection]:
            self._delete_queue(name)

    def channel_closed(self, channel: InMemoryChannel) -> None:
        for queue in self.queues.values():
            queue.consumers = [c for c in queue.consumers if c.channel is not channel]
        for queue_name, consumer, message in channel.take_unacked():
            consumer.in_flight -= 1
            self._requeue(queue_name, message)

    # -- topology -----------------------------------------------------------

    def declare_exchange(self, state: ExchangeState) -> ExchangeState:
        if state.type == ExchangeKind.DELAYED.value and not self.delayed_exchange_plugin:
            raise ConnectionClosed(
                503, f"COMMAND_INVALID - unknown exchange type '{state.type}'"
            )
        existing = self.exchanges.get(state.name)
        if existing is None:
            self.exchanges[state.name] = state
            return state
        if not existing.same_options(state):
            raise ChannelPreconditionFailed(
                406, f"PRECONDITION_FAILED - inequivalent arg for exchange '{state.name}'"
            )
        return existing

    def declare_queue(self, state: QueueState, passive: bool = False) -> QueueState:
        if not state.name:
            state.name = f"amq.gen-{uuid.uuid4().hex[:22]}"
        existing = self.queues.get(state.name)
        if passive:
            if existing is None:
                raise ChannelNotFoundEntity(404, f"NOT_FOUND - no queue '{state.name}'")
            return existing
        if existing is None:
            self.queues[state.name] = state
            return state
        if not existing.same_options(state):
            raise ChannelPreconditionFailed(
                406, f"PRECONDITION_FAILED - inequivalent arg for queue '{state.name}'"
            )
        return existing

    def require_queue(self, name: str) -> QueueState:
        queue = self.queues.get(name)
        if queue is None:
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no queue '{name}'")
        return queue

    def require_exchange(self, name: str) -> ExchangeState:
        exchange = self.exchanges.get(name)
        if exchange is None:
            raise ChannelNotFoundEntity(404, f"NOT_FOUND - no exchange '{name}'")
        return exchange

    def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        self.require_queue(queue)
        self.require_exchange(exchange).bindings.add((queue, routing_key))

    def unbind(self, queue: str, exchange: str, routing_key: str) -> None:
        self.require_exchange(exchange).bindings.discard((queue, routing_key))

    def delete_queue(self, name: str, if_unused: bool = False, if_empty: bool = False) -> int:
        queue = self.require_queue(name)
        if if_unused and queue.consumers:
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - queue '{name}' in use")
        if if_empty and queue.ready:
            raise ChannelPreconditionFailed(406, f"PRECONDITION_FAILED - queue '{name}' not empty")
        return self._delete_queue(name)

    def _delete_queue(self, name: str) -> int:
        queue = self.queues.pop(name)
        for exchange in self.exchanges.values():
            exchange.bindings = {b for b in exchange.bindings if b[0] != name}
        return len(queue.ready)

    def delete_exchange(self, name: str, if_unused: bool = False) -> None:
        exchange = self.require_exchange(name)
        if if_unused and exchange.bindings:
            raise ChannelPreconditionFailed(
                406, f"PRECONDITION_FAILED - exchange '{name}' in use"
            )
        del self.exchanges[name]

    def purge(self, name: str) -> int:
        queue = self.require_queue(name)
        count = len(queue.ready)
        queue.ready.clear()
        return count

    # -- routing ------------------------------------------------------------

    def publish(self, message: StoredMessage) -> None:
        message.seq = next(self._seq)
        self.published.append(message)
        if message.exchange == DEFAULT_EXCHANGE:
            if message.routing_key in self.queues:
                self._enqueue(message.routing_key, message)
            return
        exchange = self.require_exchange(message.exchange)
        if exchange.type == ExchangeKind.DELAYED.value:
            delay = int(message.headers.get("x-delay", 0) or 0)
            if delay > 0:
                loop = asyncio.get_running_loop()
                loop.call_later(delay / 1000, self._route_delayed, exchange.name, message)
                return
        self._route(exchange, message)

    def _route_delayed(self, exchange_name: str, message: StoredMessage) -> None:
        exchange = self.exchanges.get(exchange_name)
        if exchange is not None:
            self._route(exchange, message)

    def _route(self, exchange: ExchangeState, message: StoredMessage) -> None:
        kind = exchange.type
        if kind == ExchangeKind.DELAYED.value:
            kind = exchange.arguments.get("x-delayed-type", ExchangeKind.DIRECT.value)
        targets: list[str] = []
        for queue, key in sorted(exchange.bindings):
            if kind == ExchangeKind.FANOUT.value:
                matched = True
            elif kind == ExchangeKind.TOPIC.value:
                matched = topic_matches(key, message.routing_key)
            else:
                matched = key == message.routing_key
            if matched and queue not in targets:
                targets.append(queue)
        for queue in targets:
            self._enqueue(queue, _copy(message))

    def _enqueue(self, queue_name: str, message: StoredMessage) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        message.enqueued_at = time.monotonic()
        if queue.max_priority is not None:
            message.priority = min(message.priority, queue.max_priority)
        queue.ready.append(message)
        ttls = [t for t in (queue.message_ttl, message.expiration_ms) if t is not None]
        if ttls:
            asyncio.get_running_loop().call_later(
                min(ttls) / 1000, self._expire, queue_name
            )
        self.dispatch(queue_name)

    def _expire(self, queue_name: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        now = time.monotonic()
        expired = [m for m in queue.ready if m.expired(queue.message_ttl, now)]
        gone = {id(m) for m in expired}
        queue.ready = [m for m in queue.ready if id(m) not in gone]
        for message in expired:
            self._dead_letter(queue, message, "expired")
        self.dispatch(queue_name)

    def _dead_letter(self, queue: QueueState, message: StoredMessage, reason: str) -> None:
        dlx = queue.arguments.get("x-dead-letter-exchange")
        if dlx is None or (dlx != DEFAULT_EXCHANGE and dlx not in self.exchanges):
            logger.debug("Dropping %s message from %s", reason, queue.name)
            return
        routing_key = queue.arguments.get("x-dead-letter-routing-key", message.routing_key)
        headers = dict(message.headers)
        headers.setdefault("x-first-death-queue", queue.name)
        headers.setdefault("x-first-death-reason", reason)
        self.publish(
            StoredMessage(
                body=message.body,
                exchange=dlx,
                routing_key=routing_key,
                headers=headers,
                priority=message.priority,
                message_id=message.message_id,
                content_type=message.content_type,
            )
        )

    def _requeue(self, queue_name: str, message: StoredMessage) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        message.redelivered = True
        queue.ready.insert(0, message)
        self.dispatch(queue_name)

    # -- consuming ----------------------------------------------------------

    def add_consumer(
        self,
        queue_name: str,
        channel: InMemoryChannel,
        callback: Callable[[InMemoryIncomingMessage], Awaitable[Any]],
        no_ack: bool,
    ) -> str:
        queue = self.require_queue(queue_name)
        tag = f"ctag-{next(self._tags)}"
        queue.consumers.append(
            ConsumerState(tag, queue_name, channel, callback, no_ack, channel.prefetch_count)
        )
        queue.had_consumer = True
        self.dispatch(queue_name)
        return tag

    def cancel_consumer(self, queue_name: str, tag: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        queue.consumers = [c for c in queue.consumers if c.tag != tag]
        if queue.auto_delete and queue.had_consumer and not queue.consumers:
            self._delete_queue(queue_name)

    def dispatch(self, queue_name: str) -> None:
        queue = self.queues.get(queue_name)
        if queue is None:
            return
        now = time.monotonic()
        while queue.ready:
            consumer = _next_consumer(queue)
            if consumer is None:
                return
            message = queue.pop_next()
            if message.expired(queue.message_ttl, now):
                self._dead_letter(queue, message, "expired")
                continue
            incoming = consumer.channel.deliver(consumer, message)
            if not consumer.no_ack:
                consumer.in_flight += 1
            task = asyncio.get_running_loop().create_task(consumer.callback(incoming))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def settle(
        self,
        queue_name: str,
        consumer: ConsumerState,
        message: StoredMessage,
        *,
        ack: bool,
        requeue: bool,
    ) -> None:
        consumer.in_flight -= 1
        queue = self.queues.get(queue_name)
        if not ack and queue is not None:
            if requeue:
                self._requeue(queue_name, message)
                return
            self._dead_letter(queue, message, "rejected")
        self.dispatch(queue_name)

    # -- inspection ---------------------------------------------------------

    def message_count(self, queue: str) -> int:
        return len(self.require_queue(queue).ready)

    def messages(self, queue: str) -> list[StoredMessage]:
        return list(self.require_queue(queue).ready)

    def bindings(self, exchange: str) -> set[tuple[str, str]]:
        return set(self.require_exchange(exchange).bindings)

    def consumer_count(self, queue: str) -> int:
        return len(self.require_queue(queue).consumers)


def _next_consumer(queue: QueueState) -> ConsumerState | None:
    count = len(queue.consumers)
    for i in range(count):
        index = (queue.rr + i) % count
        consumer = queue.consumers[index]
        if consumer.has_credit:
            queue.rr = (index + 1) % count
            return consumer
    return None


def _copy(message: StoredMessage) -> StoredMessage:
    return StoredMessage(
        body=message.body,
        exchange=message.exchange,
        routing_key=message.routing_key,
        headers=dict(message.headers),
        priority=message.priority,
        message_id=message.message_id,
        content_type=message.content_type,
        expiration_ms=message.expiration_ms,
        seq=message.seq,
    )
