"""Connection, channel, queue, exchange and message handles for the in-memory broker.

These mirror the parts of the aio-pika API used by
:mod:`rabbitmq_patterns.rabbitmq`. A channel-level broker error closes the
channel and a connection-level one closes the connection, as on a server.
"""

from __future__ import annotations

import itertools
import logging
from types import SimpleNamespace
from typing import TYPE_CHECKING, Any

from aio_pika.exceptions import (
    AMQPChannelError,
    ChannelClosed,
    ConnectionClosed,
)

from .broker import DEFAULT_EXCHANGE, ExchangeState, QueueState, StoredMessage

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .broker import ConsumerState, InMemoryBroker

logger = logging.getLogger("rabbitmq_patterns.memory")


class CallbackCollection:
    """Close callbacks called as ``callback(sender, exc)``."""

    def __init__(self, sender: Any) -> None:
        self._sender = sender
        self._callbacks: list[Callable[..., Any]] = []

    def add(self, callback: Callable[..., Any]) -> None:
        self._callbacks.append(callback)

    def discard(self, callback: Callable[..., Any]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def __len__(self) -> int:
        return len(self._callbacks)

    def fire(self, exc: BaseException | None) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._sender, exc)
            except Exception:
                logger.exception("Close callback failed")


def _expiration_ms(value: Any) -> int | None:
    if value in (None, ""):
        return None
    return int(value)


class InMemoryIncomingMessage:
    """A delivered message; settle it with ack, nack or reject."""

    def __init__(
        self,
        channel: InMemoryChannel,
        delivery_tag: int,
        message: StoredMessage,
        no_ack: bool,
    ) -> None:
        self.channel = channel
        self.delivery_tag = delivery_tag
        self.body = message.body
        self.headers = dict(message.headers)
        self.priority = message.priority
        self.message_id = message.message_id
        self.content_type = message.content_type
        self.exchange = message.exchange
        self.routing_key = message.routing_key
        self.redelivered = message.redelivered
        self._no_ack = no_ack
        self.processed = no_ack

    async def ack(self, multiple: bool = False) -> None:
        self._settle(ack=True, requeue=False)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self._settle(ack=False, requeue=requeue)

    async def reject(self, requeue: bool = False) -> None:
        self._settle(ack=False, requeue=requeue)

    def _settle(self, *, ack: bool, requeue: bool) -> None:
        if self._no_ack:
            raise AMQPChannelError("Message was delivered in no_ack mode")
        if self.processed:
            raise AMQPChannelError(f"Delivery {self.delivery_tag} already settled")
        self.processed = True
        self.channel.settle(self.delivery_tag, ack=ack, requeue=requeue)


class InMemoryExchange:
    def __init__(self, channel: InMemoryChannel, name: str) -> None:
        self.channel = channel
        self.name = name

    async def publish(self, message: Any, routing_key: str, **kwargs: Any) -> None:
        props = message.properties
        stored = StoredMessage(
            body=message.body,
            exchange=self.name,
            routing_key=routing_key,
            headers=dict(props.headers or {}),
            priority=props.priority or 0,
            message_id=props.message_id,
            content_type=props.content_type,
            expiration_ms=_expiration_ms(props.expiration),
        )
        self.channel.call(self.channel.broker.publish, stored)


class InMemoryQueue:
    def __init__(self, channel: InMemoryChannel, name: str) -> None:
        self.channel = channel
        self.name = name
        self.declaration_result = SimpleNamespace(message_count=0, consumer_count=0)

    def _refresh(self, state: QueueState) -> None:
        self.declaration_result = SimpleNamespace(
            message_count=len(state.ready), consumer_count=len(state.consumers)
        )

    async def bind(self, exchange: Any, routing_key: str | None = None, **kwargs: Any) -> None:
        name = getattr(exchange, "name", exchange)
        self.channel.call(self.channel.broker.bind, self.name, name, routing_key or "")

    async def unbind(self, exchange: Any, routing_key: str | None = None, **kwargs: Any) -> None:
        name = getattr(exchange, "name", exchange)
        self.channel.call(self.channel.broker.unbind, self.name, name, routing_key or "")

    async def consume(
        self,
        callback: Callable[[InMemoryIncomingMessage], Awaitable[Any]],
        no_ack: bool = False,
        exclusive: bool = False,
        **kwargs: Any,
    ) -> str:
        return self.channel.call(
            self.channel.broker.add_consumer, self.name, self.channel, callback, no_ack
        )

    async def cancel(self, consumer_tag: str, **kwargs: Any) -> None:
        self.channel.ensure_open()
        self.channel.broker.cancel_consumer(self.name, consumer_tag)

    async def purge(self, **kwargs: Any) -> SimpleNamespace:
        count = self.channel.call(self.channel.broker.purge, self.name)
        return SimpleNamespace(message_count=count)


class InMemoryChannel:
    def __init__(self, connection: InMemoryConnection, number: int) -> None:
        self.connection = connection
        self.broker: InMemoryBroker = connection.broker
        self.number = number
        self.prefetch_count = 0
        self.close_callbacks = CallbackCollection(self)
        self._closed = False
        self._tags = itertools.count(1)
        self._unacked: dict[int, tuple[str, ConsumerState, StoredMessage]] = {}
        self.default_exchange = InMemoryExchange(self, DEFAULT_EXCHANGE)

    @property
    def is_closed(self) -> bool:
        return self._closed or self.connection.is_closed

    def ensure_open(self) -> None:
        if self.is_closed:
            raise ChannelClosed(504, "CHANNEL_ERROR - channel is closed")

    def call(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a broker method, closing this channel or its connection on failure."""
        self.ensure_open()
        try:
            return fn(*args)
        except ConnectionClosed as e:
            self.connection.close_from_broker(e)
            raise
        except AMQPChannelError as e:
            self.close_from_broker(e)
            raise

    async def set_qos(self, prefetch_count: int = 0, **kwargs: Any) -> None:
        self.ensure_open()
        self.prefetch_count = prefetch_count

    async def declare_exchange(
        self,
        name: str,
        type: Any = "direct",
        *,
        durable: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> InMemoryExchange:
        state = ExchangeState(
            name=name,
            type=getattr(type, "value", type),
            durable=durable,
            auto_delete=auto_delete,
            arguments=dict(arguments or {}),
        )
        self.call(self.broker.declare_exchange, state)
        return InMemoryExchange(self, name)

    async def declare_queue(
        self,
        name: str | None = None,
        *,
        durable: bool = False,
        exclusive: bool = False,
        passive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> InMemoryQueue:
        request = QueueState(
            name=name or "",
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=dict(arguments or {}),
            owner=self.connection if exclusive else None,
        )
        state = self.call(self.broker.declare_queue, request, passive)
        queue = InMemoryQueue(self, state.name)
        queue._refresh(state)
        return queue

    async def get_queue(self, name: str, *, ensure: bool = True) -> InMemoryQueue:
        queue = InMemoryQueue(self, name)
        if ensure:
            queue._refresh(self.call(self.broker.require_queue, name))
        return queue

    async def get_exchange(self, name: str, *, ensure: bool = True) -> InMemoryExchange:
        if ensure:
            self.call(self.broker.require_exchange, name)
        return InMemoryExchange(self, name)

    async def queue_delete(
        self, queue_name: str, *, if_unused: bool = False, if_empty: bool = False, **kwargs: Any
    ) -> SimpleNamespace:
        count = self.call(self.broker.delete_queue, queue_name, if_unused, if_empty)
        return SimpleNamespace(message_count=count)

    async def exchange_delete(
        self, exchange_name: str, *, if_unused: bool = False, **kwargs: Any
    ) -> None:
        self.call(self.broker.delete_exchange, exchange_name, if_unused)

    def deliver(self, consumer: ConsumerState, message: StoredMessage) -> InMemoryIncomingMessage:
        tag = next(self._tags)
        if not consumer.no_ack:
            self._unacked[tag] = (consumer.queue, consumer, message)
        return InMemoryIncomingMessage(self, tag, message, consumer.no_ack)

    def settle(self, tag: int, *, ack: bool, requeue: bool) -> None:
        self.ensure_open()
        queue_name, consumer, message = self._unacked.pop(tag)
        self.broker.settle(queue_name, consumer, message, ack=ack, requeue=requeue)

    def take_unacked(self) -> list[tuple[str, ConsumerState, StoredMessage]]:
        pending = list(self._unacked.values())
        self._unacked.clear()
        return pending

    async def close(self, exc: BaseException | None = None) -> None:
        if self._closed:
            return
        self._mark_closed()
        self.close_callbacks.fire(exc)

    def close_from_broker(self, exc: BaseException) -> None:
        if self._closed:
            return
        self._mark_closed()
        self.close_callbacks.fire(exc)

    def _mark_closed(self) -> None:
        self._closed = True
        self.broker.channel_closed(self)


class InMemoryConnection:
    def __init__(
        self, broker: InMemoryBroker, client_properties: dict[str, Any] | None = None
    ) -> None:
        self.broker = broker
        self.client_properties = dict(client_properties or {})
        self.close_callbacks = CallbackCollection(self)
        self._closed = False
        self._channels: list[InMemoryChannel] = []
        self._numbers = itertools.count(1)

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def channel(self, **kwargs: Any) -> InMemoryChannel:
        if self._closed:
            raise ConnectionClosed(320, "CONNECTION_FORCED - connection is closed")
        channel = InMemoryChannel(self, next(self._numbers))
        self._channels.append(channel)
        return channel

    async def close(self, exc: BaseException | None = None) -> None:
        if self._closed:
            return
        self._shutdown(exc)

    def close_from_broker(self, exc: BaseException) -> None:
        if self._closed:
            return
        self._shutdown(exc)

    def _shutdown(self, exc: BaseException | None) -> None:
        self._closed = True
        for channel in self._channels:
            if not channel._closed:
                channel._closed = True
                self.broker.channel_closed(channel)
                channel.close_callbacks.fire(exc)
        self.broker.connection_closed(self)
        self.close_callbacks.fire(exc)
