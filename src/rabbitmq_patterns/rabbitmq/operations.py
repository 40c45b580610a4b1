"""QueueOperations: declare, bind, publish and consume on the shared channel."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import (
    ChannelNotFoundEntity,
    ChannelPreconditionFailed,
    DeliveryError,
)
from pydantic import BaseModel, ConfigDict, Field

from ..envelope import MessageEnvelope
from ..exceptions import MalformedEnvelopeError, TopologyConflictError
from ..results import QueueInfo
from ..serialization import EnvelopeSerializer
from ..topology import ExchangeKind
from .consumer import AckHandle, Consumer

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractExchange, AbstractIncomingMessage

    from .connection import RabbitMQConnectionManager

    Handler = Callable[[MessageEnvelope], Awaitable[None]]
    ManualHandler = Callable[[MessageEnvelope, AckHandle], Awaitable[None]]

logger = logging.getLogger("rabbitmq_patterns.operations")

DELAY_HEADER = "x-delay"


class PublishOptions(BaseModel):
    """Per-message publish settings."""

    model_config = ConfigDict(frozen=True)

    persistent: bool = True
    priority: int | None = Field(default=None, ge=0, le=255)
    expiration: int | None = Field(default=None, ge=0, description="TTL in ms")
    delay: int | None = Field(default=None, ge=0, description="x-delay in ms")
    headers: dict[str, Any] = Field(default_factory=dict)


class QueueOperations:
    """Core broker operations shared by every pattern service.

    Broker errors propagate unchanged, except PRECONDITION_FAILED on a
    declare, which is raised as :class:`TopologyConflictError`.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        serializer: EnvelopeSerializer | None = None,
    ) -> None:
        self._connection = connection
        self._serializer = serializer or EnvelopeSerializer()
        self._consumers: dict[str, Consumer] = {}

    @property
    def connection(self) -> RabbitMQConnectionManager:
        return self._connection

    @property
    def serializer(self) -> EnvelopeSerializer:
        return self._serializer

    @property
    def consumers(self) -> list[Consumer]:
        return list(self._consumers.values())

    # -- topology -----------------------------------------------------------

    async def declare_exchange(
        self,
        name: str,
        exchange_type: ExchangeKind | str = ExchangeKind.DIRECT,
        *,
        durable: bool = True,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """Declare an exchange if absent."""
        kind = ExchangeKind(exchange_type)
        channel = self._connection.get_channel()
        try:
            await channel.declare_exchange(
                name,
                kind.value,
                durable=durable,
                auto_delete=auto_delete,
                arguments=arguments or None,
            )
        except ChannelPreconditionFailed as e:
            raise TopologyConflictError(
                f"Exchange {name!r} exists with different options: {e}", entity=name
            ) from e
        logger.debug("Declared exchange %s (%s)", name, kind.value)

    async def declare_queue(
        self,
        name: str = "",
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> QueueInfo:
        """Declare a queue if absent. An empty name asks the broker for one."""
        channel = self._connection.get_channel()
        try:
            queue = await channel.declare_queue(
                name or None,
                durable=durable,
                exclusive=exclusive,
                auto_delete=auto_delete,
                arguments=arguments or None,
            )
        except ChannelPreconditionFailed as e:
            raise TopologyConflictError(
                f"Queue {name!r} exists with different options: {e}", entity=name
            ) from e
        result = queue.declaration_result
        logger.debug("Declared queue %s", queue.name)
        return QueueInfo(
            name=queue.name,
            message_count=result.message_count or 0,
            consumer_count=result.consumer_count or 0,
        )

    async def bind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        """Bind ``queue`` to ``exchange``; re-binding is a no-op on the broker."""
        channel = self._connection.get_channel()
        amqp_queue = await channel.get_queue(queue, ensure=False)
        await amqp_queue.bind(exchange, routing_key=routing_key)
        logger.debug("Bound %s to %s (%r)", queue, exchange, routing_key)

    async def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        await self._connection.unbind(queue, exchange, routing_key)

    # -- publishing ---------------------------------------------------------

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: Any,
        options: PublishOptions | None = None,
    ) -> bool:
        """Wrap ``payload`` and publish it.

        A :class:`MessageEnvelope` payload is sent unchanged. Returns False if
        the broker negatively confirmed the publish.
        """
        opts = options or PublishOptions()
        envelope = self._envelope_for(payload, opts)
        message = self._build_message(envelope, opts)
        target = await self._exchange(exchange)
        try:
            await target.publish(message, routing_key=routing_key)
        except DeliveryError as e:
            logger.error(
                "Broker refused message %s on %r/%r: %s",
                envelope.message_id,
                exchange,
                routing_key,
                e,
            )
            return False
        logger.debug(
            "Published %s to %r with key %r", envelope.message_id, exchange, routing_key
        )
        return True

    async def send_to_queue(
        self,
        queue: str,
        payload: Any,
        options: PublishOptions | None = None,
    ) -> bool:
        """Publish through the default exchange straight to ``queue``."""
        return await self.publish("", queue, payload, options)

    def _envelope_for(self, payload: Any, opts: PublishOptions) -> MessageEnvelope:
        if isinstance(payload, MessageEnvelope):
            return payload
        return self._serializer.wrap(
            payload, delay=opts.delay, priority=opts.priority, headers=opts.headers
        )

    def _build_message(
        self, envelope: MessageEnvelope, opts: PublishOptions
    ) -> aio_pika.Message:
        headers: dict[str, Any] = {**envelope.headers, **opts.headers}
        if opts.delay is not None:
            headers[DELAY_HEADER] = opts.delay
        priority = opts.priority if opts.priority is not None else envelope.priority
        return aio_pika.Message(
            body=self._serializer.serialize(envelope),
            content_type="application/json",
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if opts.persistent
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
            priority=priority,
            expiration=opts.expiration / 1000 if opts.expiration is not None else None,
            headers=headers,
            message_id=envelope.message_id,
            timestamp=datetime.fromtimestamp(envelope.timestamp / 1000, tz=timezone.utc),
        )

    async def _exchange(self, name: str) -> AbstractExchange:
        channel = self._connection.get_channel()
        if not name:
            return channel.default_exchange
        return await channel.get_exchange(name, ensure=False)

    # -- consuming ----------------------------------------------------------

    async def consume(
        self,
        queue: str,
        handler: Handler,
        *,
        no_ack: bool = False,
        prefetch: int | None = None,
        exclusive: bool = False,
        requeue_on_error: bool = True,
        temporary: bool = False,
        consumer_id: str | None = None,
    ) -> Consumer:
        """Run ``handler(envelope)`` for every delivery on ``queue``.

        Successful return acknowledges the delivery. A failing handler causes
        a nack with ``requeue=requeue_on_error``. Undecodable frames are
        rejected without requeue and never reach the handler. ``temporary``
        marks a queue that is deleted with its connection; such a consumer is
        dropped instead of resubscribed after a reconnect.
        """

        async def process(raw: AbstractIncomingMessage) -> None:
            envelope = await self._decode_or_reject(raw, queue, no_ack=no_ack)
            if envelope is None:
                return
            try:
                await handler(envelope)
            except Exception:
                logger.exception(
                    "Handler failed for message %s on %s", envelope.message_id, queue
                )
                if not no_ack:
                    await raw.nack(requeue=requeue_on_error)
                return
            if not no_ack:
                await raw.ack()

        return await self._start_consumer(
            queue,
            process,
            no_ack=no_ack,
            prefetch=prefetch,
            exclusive=exclusive,
            temporary=temporary,
            consumer_id=consumer_id,
        )

    async def consume_manual(
        self,
        queue: str,
        handler: ManualHandler,
        *,
        prefetch: int | None = None,
        exclusive: bool = False,
        consumer_id: str | None = None,
    ) -> Consumer:
        """Run ``handler(envelope, ack_handle)``; the handler settles each delivery.

        An exception escaping the handler nacks with requeue when the handle
        is still unsettled.
        """

        async def process(raw: AbstractIncomingMessage) -> None:
            envelope = await self._decode_or_reject(raw, queue, no_ack=False)
            if envelope is None:
                return
            handle = AckHandle(raw, envelope.message_id)
            try:
                await handler(envelope, handle)
            except Exception:
                logger.exception(
                    "Manual handler failed for message %s on %s",
                    envelope.message_id,
                    queue,
                )
                if not handle.settled:
                    await handle.nack(requeue=True)
                return
            if not handle.settled:
                logger.warning(
                    "Handler returned without settling message %s on %s",
                    envelope.message_id,
                    queue,
                )

        return await self._start_consumer(
            queue,
            process,
            no_ack=False,
            prefetch=prefetch,
            exclusive=exclusive,
            consumer_id=consumer_id,
        )

    async def _decode_or_reject(
        self, raw: AbstractIncomingMessage, queue: str, *, no_ack: bool
    ) -> MessageEnvelope | None:
        try:
            return self._serializer.decode(raw.body)
        except MalformedEnvelopeError as e:
            logger.error("Dropping malformed message on %s: %s", queue, e)
            if not no_ack:
                await raw.reject(requeue=False)
            return None

    async def _start_consumer(
        self,
        queue: str,
        process: Callable[[AbstractIncomingMessage], Awaitable[None]],
        **kwargs: Any,
    ) -> Consumer:
        consumer = Consumer(self._connection, queue, process, **kwargs)
        await consumer.start()
        self._consumers[consumer.consumer_id] = consumer
        return consumer

    async def resubscribe(self) -> list[Consumer]:
        """Re-register every live consumer on the current channel.

        Consumers whose queue no longer exists are stopped and returned:
        temporary queues that went away with the previous connection, and any
        queue the broker answers NOT_FOUND for. NOT_FOUND closes the channel,
        so the remaining consumers are resubscribed on the next reopen.
        """
        dropped: list[Consumer] = []
        for consumer in list(self._consumers.values()):
            if consumer.stale:
                logger.warning(
                    "Temporary queue %s went away with the connection; dropping consumer %s",
                    consumer.queue,
                    consumer.consumer_id,
                )
                dropped.append(consumer)
                continue
            try:
                await consumer.resubscribe()
            except ChannelNotFoundEntity:
                logger.warning(
                    "Queue %s no longer exists; dropping consumer %s",
                    consumer.queue,
                    consumer.consumer_id,
                )
                dropped.append(consumer)
                break
            except Exception:
                logger.exception(
                    "Failed to resubscribe consumer %s on %s",
                    consumer.consumer_id,
                    consumer.queue,
                )
        for consumer in dropped:
            self._consumers.pop(consumer.consumer_id, None)
            consumer.detach()
            await consumer.stop()
        return dropped

    async def stop_consumer(self, consumer: Consumer, timeout: float = 10.0) -> None:
        self._consumers.pop(consumer.consumer_id, None)
        await consumer.stop(timeout)

    async def stop_consuming(self, timeout: float = 10.0) -> None:
        """Stop every consumer concurrently, letting in-flight handlers finish."""
        consumers = list(self._consumers.values())
        self._consumers.clear()
        if consumers:
            await asyncio.gather(*(c.stop(timeout) for c in consumers))

    # -- administration -----------------------------------------------------

    async def queue_info(self, queue: str) -> QueueInfo:
        """Passive declare; fails if the queue does not exist."""
        channel = self._connection.get_channel()
        amqp_queue = await channel.declare_queue(queue, passive=True)
        result = amqp_queue.declaration_result
        return QueueInfo(
            name=queue,
            message_count=result.message_count or 0,
            consumer_count=result.consumer_count or 0,
        )

    async def purge_queue(self, queue: str) -> int:
        """Remove all ready messages; returns how many were purged."""
        channel = self._connection.get_channel()
        amqp_queue = await channel.get_queue(queue, ensure=False)
        result = await amqp_queue.purge()
        count = getattr(result, "message_count", 0) or 0
        logger.info("Purged %d messages from %s", count, queue)
        return count

    async def delete_queue(
        self, queue: str, *, if_unused: bool = False, if_empty: bool = False
    ) -> int:
        """Delete ``queue``; returns the number of messages deleted with it."""
        channel = self._connection.get_channel()
        result = await channel.queue_delete(
            queue, if_unused=if_unused, if_empty=if_empty
        )
        logger.info("Deleted queue %s", queue)
        return getattr(result, "message_count", 0) or 0

    async def delete_exchange(self, exchange: str, *, if_unused: bool = False) -> None:
        channel = self._connection.get_channel()
        await channel.exchange_delete(exchange, if_unused=if_unused)
        logger.info("Deleted exchange %s", exchange)
