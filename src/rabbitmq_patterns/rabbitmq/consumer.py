"""Consumer: one explicit asyncio task per broker subscription.

The broker callback only enqueues deliveries into a local inbox; the consumer
task reads the inbox and runs the processing coroutine one delivery at a time.
Stopping is cooperative and is checked between deliveries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from typing import TYPE_CHECKING

from ..exceptions import AckAlreadySettledError, MessagingConnectionError
from .connection import CONNECT_ERRORS

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractIncomingMessage

    from .connection import RabbitMQConnectionManager

    Processor = Callable[[AbstractIncomingMessage], Awaitable[None]]

logger = logging.getLogger("rabbitmq_patterns.consumer")


class AckHandle:
    """Per-delivery capability to settle a message exactly once.

    Exactly one of :meth:`ack`, :meth:`nack` or :meth:`reject` must be called.
    A delivery that is never settled stays unacknowledged and keeps its
    prefetch slot occupied.
    """

    def __init__(self, raw: AbstractIncomingMessage, message_id: str) -> None:
        self._raw = raw
        self._message_id = message_id
        self._action: str | None = None

    @property
    def message_id(self) -> str:
        return self._message_id

    @property
    def settled(self) -> bool:
        return self._action is not None

    @property
    def action(self) -> str | None:
        """``"ack"``, ``"nack"``, ``"reject"`` or None when unsettled."""
        return self._action

    def _claim(self, action: str) -> None:
        if self._action is not None:
            raise AckAlreadySettledError(
                f"Message {self._message_id} already settled with {self._action}"
            )
        self._action = action

    async def ack(self) -> None:
        """Acknowledge: the broker removes the message."""
        self._claim("ack")
        await self._raw.ack()
        logger.debug("ACK %s", self._message_id)

    async def nack(self, requeue: bool = True) -> None:
        """Negative-acknowledge, returning the message to the queue by default."""
        self._claim("nack")
        await self._raw.nack(requeue=requeue)
        logger.debug("NACK %s (requeue=%s)", self._message_id, requeue)

    async def reject(self, requeue: bool = False) -> None:
        """Reject; without requeue the broker dead-letters or drops the message."""
        self._claim("reject")
        await self._raw.reject(requeue=requeue)
        logger.debug("REJECT %s (requeue=%s)", self._message_id, requeue)


class Consumer:
    """A running subscription on one queue."""

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        queue: str,
        process: Processor,
        *,
        no_ack: bool = False,
        prefetch: int | None = None,
        exclusive: bool = False,
        temporary: bool = False,
        consumer_id: str | None = None,
    ) -> None:
        self._connection = connection
        self._queue = queue
        self._process = process
        self._no_ack = no_ack
        self._prefetch = prefetch
        self._exclusive = exclusive
        self._temporary = temporary
        self._generation = 0
        self.consumer_id = consumer_id or f"consumer-{uuid.uuid4().hex[:8]}"
        self._consumer_tag: str | None = None
        self._amqp_queue: object | None = None
        self._inbox: asyncio.Queue[AbstractIncomingMessage | None] = asyncio.Queue()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task[None] | None = None
        self.processed = 0

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def consumer_tag(self) -> str | None:
        return self._consumer_tag

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stale(self) -> bool:
        """True when the temporary queue consumed went away with an earlier connection."""
        return self._temporary and self._generation != self._connection.generation

    async def start(self) -> None:
        """Subscribe on the broker and launch the processing task."""
        await self._subscribe()
        self._task = asyncio.get_running_loop().create_task(
            self._run(), name=f"consumer:{self.consumer_id}"
        )
        logger.info("Consumer %s started on %s", self.consumer_id, self._queue)

    async def resubscribe(self) -> None:
        """Subscribe again on the current channel after a reconnect.

        Deliveries buffered from the previous channel are dropped; the broker
        redelivers them because they were never acknowledged there.
        """
        if self._stopping.is_set():
            return
        dropped = 0
        while not self._inbox.empty():
            self._inbox.get_nowait()
            dropped += 1
        if dropped:
            logger.debug("Dropped %d stale deliveries for %s", dropped, self.consumer_id)
        await self._subscribe()
        logger.info("Consumer %s resubscribed to %s", self.consumer_id, self._queue)

    async def stop(self, timeout: float = 10.0) -> None:
        """Stop accepting deliveries, let the in-flight one finish, requeue the rest."""
        if self._stopping.is_set():
            return
        self._stopping.set()
        await self._cancel_subscription()
        self._inbox.put_nowait(None)
        if self._task is not None:
            done, _ = await asyncio.wait({self._task}, timeout=timeout)
            if not done:
                logger.warning(
                    "Consumer %s did not finish within %.1fs; cancelling",
                    self.consumer_id,
                    timeout,
                )
                self._task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await self._task
        await self._requeue_pending()
        logger.info("Consumer %s stopped", self.consumer_id)

    def detach(self) -> None:
        """Forget the subscription and buffered deliveries of a dead channel."""
        self._amqp_queue = None
        self._consumer_tag = None
        while not self._inbox.empty():
            self._inbox.get_nowait()

    async def _subscribe(self) -> None:
        channel = self._connection.get_channel()
        async with self._connection.channel_lock:
            if self._prefetch is not None:
                await channel.set_qos(prefetch_count=self._prefetch)
            try:
                amqp_queue = await channel.get_queue(self._queue, ensure=False)
                self._consumer_tag = await amqp_queue.consume(
                    self._on_delivery,
                    no_ack=self._no_ack,
                    exclusive=self._exclusive,
                )
                self._amqp_queue = amqp_queue
                self._generation = self._connection.generation
            finally:
                if self._prefetch is not None and not channel.is_closed:
                    await channel.set_qos(
                        prefetch_count=self._connection.settings.prefetch_count
                    )

    async def _cancel_subscription(self) -> None:
        amqp_queue, tag = self._amqp_queue, self._consumer_tag
        if amqp_queue is None or tag is None:
            return
        try:
            await amqp_queue.cancel(tag)  # type: ignore[attr-defined]
        except (*CONNECT_ERRORS, MessagingConnectionError) as e:
            logger.warning("Could not cancel consumer %s: %s", self.consumer_id, e)

    async def _on_delivery(self, raw: AbstractIncomingMessage) -> None:
        await self._inbox.put(raw)

    async def _run(self) -> None:
        while not self._stopping.is_set():
            raw = await self._inbox.get()
            if raw is None:
                continue
            try:
                await self._process(raw)
            except Exception:
                logger.exception("Consumer %s failed to settle a delivery", self.consumer_id)
            self.processed += 1

    async def _requeue_pending(self) -> None:
        while not self._inbox.empty():
            raw = self._inbox.get_nowait()
            if raw is None or self._no_ack:
                continue
            try:
                await raw.nack(requeue=True)
            except CONNECT_ERRORS as e:
                logger.debug("Could not requeue buffered delivery: %s", e)
