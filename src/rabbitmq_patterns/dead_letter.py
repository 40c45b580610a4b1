"""DeadLetterService: bounded retry and dead-letter routing for protected queues.

Every protected queue ``<q>`` is paired with exchange ``dlx.<q>`` and queue
``dlq.<q>``, bound by the routing key ``<q>``. The protected queue carries
``x-dead-letter-exchange``/``x-dead-letter-routing-key`` arguments pointing at
that pair, so a nack without requeue moves the message to ``dlq.<q>``.

A message moves ``Pending -> Processing -> Completed`` on success. On failure
with retries left, a new envelope with ``retryCount + 1`` is published to the
same queue and the failed delivery is acknowledged (``Retrying -> Pending``).
Once retries are exhausted the delivery is nacked without requeue
(``DeadLettered``).
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import AckAlreadySettledError, DeadLetterError, MessagingError
from .rabbitmq.connection import CONNECT_ERRORS
from .results import DeadLetterStats
from .retry import RetryPolicy
from .topology import ExchangeKind

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine

    from .envelope import MessageEnvelope
    from .rabbitmq.consumer import AckHandle, Consumer
    from .rabbitmq.operations import QueueOperations

    Handler = Callable[[MessageEnvelope], Awaitable[None]]
    RetryHandler = Callable[[MessageEnvelope, "RetryAckHandle"], Awaitable[None]]
    Escalation = Callable[
        [MessageEnvelope, str, BaseException | None], Coroutine[Any, Any, None]
    ]

logger = logging.getLogger("rabbitmq_patterns.dead_letter")

DLX_PREFIX = "dlx"
DLQ_PREFIX = "dlq"


class DeadLetterOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=0)
    message_ttl: int | None = Field(default=None, ge=0, description="ms, protected queue")
    durable: bool = True
    dead_letter_exchange: str | None = None
    dead_letter_routing_key: str | None = None
    arguments: dict[str, Any] = Field(default_factory=dict)


class RetryAckHandle:
    """Manual settlement for a protected queue: ack, retry or dead-letter."""

    def __init__(
        self,
        handle: AckHandle,
        envelope: MessageEnvelope,
        retry: Callable[[MessageEnvelope], Awaitable[bool]],
        max_retries: int,
    ) -> None:
        self._handle = handle
        self._envelope = envelope
        self._retry = retry
        self._max_retries = max_retries

    @property
    def settled(self) -> bool:
        return self._handle.settled

    @property
    def action(self) -> str | None:
        return self._handle.action

    @property
    def retries_left(self) -> int:
        return max(self._max_retries - self._envelope.retry_count, 0)

    async def ack(self) -> None:
        await self._handle.ack()

    async def retry(self) -> bool:
        """Re-send as the next retry and ack this delivery.

        Dead-letters instead when retries are exhausted. Returns True if a
        retry was scheduled.
        """
        if self._handle.settled:
            raise AckAlreadySettledError(
                f"Message {self._envelope.message_id} already settled with {self._handle.action}"
            )
        if self.retries_left == 0:
            logger.warning(
                "Message %s has no retries left; dead-lettering", self._envelope.message_id
            )
            await self._handle.reject(requeue=False)
            return False
        if not await self._retry(self._envelope):
            await self._handle.nack(requeue=True)
            return False
        await self._handle.ack()
        return True

    async def dead_letter(self) -> None:
        await self._handle.reject(requeue=False)


class DeadLetterService:
    def __init__(
        self,
        operations: QueueOperations,
        *,
        policy: RetryPolicy | None = None,
        on_dead_letter_failure: Escalation | None = None,
    ) -> None:
        """Configure the service.

        Args:
            operations: Core operations on the shared channel.
            policy: Backoff for retry envelopes and the default retry limit.
            on_dead_letter_failure: Async callable ``(envelope, reason, exc)``
                invoked when a dead-letter handler fails.
        """
        self._operations = operations
        self._policy = policy or RetryPolicy()
        self._on_failure = on_dead_letter_failure
        self._limits: dict[str, int] = {}

    @staticmethod
    def dead_letter_exchange(queue: str) -> str:
        return f"{DLX_PREFIX}.{queue}"

    @staticmethod
    def dead_letter_queue(queue: str) -> str:
        return f"{DLQ_PREFIX}.{queue}"

    def max_retries(self, queue: str) -> int:
        return self._limits.get(queue, self._policy.max_retries)

    async def setup(self, queue: str, options: DeadLetterOptions | None = None) -> None:
        """Declare the DLX/DLQ pair, then the protected queue pointing at it."""
        opts = options or DeadLetterOptions()
        dlx = opts.dead_letter_exchange or self.dead_letter_exchange(queue)
        dlq = self.dead_letter_queue(queue)
        routing_key = opts.dead_letter_routing_key or queue

        await self._operations.declare_exchange(dlx, ExchangeKind.DIRECT, durable=True)
        await self._operations.declare_queue(dlq, durable=opts.durable)
        await self._operations.bind(dlq, dlx, routing_key)

        arguments: dict[str, Any] = {
            "x-dead-letter-exchange": dlx,
            "x-dead-letter-routing-key": routing_key,
        }
        if opts.message_ttl is not None:
            arguments["x-message-ttl"] = opts.message_ttl
        arguments.update(opts.arguments)
        await self._operations.declare_queue(queue, durable=opts.durable, arguments=arguments)
        self._limits[queue] = opts.max_retries
        logger.info("Dead-letter routing ready: %s -> %s", queue, dlq)

    async def setup_many(self, queues: dict[str, DeadLetterOptions | None]) -> None:
        for queue, options in queues.items():
            await self.setup(queue, options)
        logger.info("Dead-letter routing ready for %d queues", len(queues))

    async def _send_retry(self, queue: str, envelope: MessageEnvelope, limit: int) -> bool:
        retry = self._operations.serializer.next_retry_envelope(envelope, limit, self._policy)
        sent = await self._operations.send_to_queue(queue, retry)
        if sent:
            logger.info(
                "Retry %d/%d scheduled for %s (delay hint %sms)",
                retry.retry_count,
                limit,
                envelope.original_message_id,
                retry.delay,
            )
        return sent

    async def consume_with_retry(
        self,
        queue: str,
        handler: Handler,
        max_retries: int | None = None,
        *,
        prefetch: int | None = None,
    ) -> Consumer:
        """Consume ``queue``, retrying failed messages up to ``max_retries`` times."""
        limit = self.max_retries(queue) if max_retries is None else max_retries

        async def with_retry(envelope: MessageEnvelope) -> None:
            try:
                await handler(envelope)
            except Exception as e:
                logger.error(
                    "Message %s failed (attempt %d): %s",
                    envelope.message_id,
                    envelope.retry_count + 1,
                    e,
                )
                if envelope.retry_count >= limit:
                    logger.error(
                        "Message %s exceeded %d retries; dead-lettering",
                        envelope.original_message_id,
                        limit,
                    )
                    raise
                try:
                    sent = await self._send_retry(queue, envelope, limit)
                except (MessagingError, *CONNECT_ERRORS) as retry_error:
                    logger.error(
                        "Could not schedule retry for %s: %s", envelope.message_id, retry_error
                    )
                    raise e from retry_error
                if not sent:
                    logger.error("Broker refused retry for %s", envelope.message_id)
                    raise

        consumer = await self._operations.consume(
            queue, with_retry, prefetch=prefetch, requeue_on_error=False
        )
        logger.info("Consuming %s with up to %d retries", queue, limit)
        return consumer

    async def consume_dead_letter(
        self, queue: str, handler: Handler, *, prefetch: int | None = None
    ) -> Consumer:
        """Consume ``dlq.<queue>``. Failures are escalated, never retried."""
        dlq = self.dead_letter_queue(queue)

        async def terminal(envelope: MessageEnvelope) -> None:
            logger.warning("Processing dead letter %s from %s", envelope.message_id, dlq)
            try:
                await handler(envelope)
            except Exception as e:
                error = DeadLetterError(
                    f"Dead letter {envelope.message_id} could not be handled: {e}",
                    message_id=envelope.message_id,
                )
                error.__cause__ = e
                logger.error("%s; manual intervention required", error)
                await self._escalate(envelope, str(e), error)
                return
            logger.info("Dead letter %s handled", envelope.message_id)

        consumer = await self._operations.consume(
            dlq, terminal, prefetch=prefetch, requeue_on_error=False
        )
        logger.info("Consuming dead-letter queue %s", dlq)
        return consumer

    async def _escalate(
        self, envelope: MessageEnvelope, reason: str, exc: BaseException | None
    ) -> None:
        if self._on_failure is None:
            return
        try:
            await self._on_failure(envelope, reason, exc)
        except Exception:
            logger.exception("Dead-letter escalation failed for %s", envelope.message_id)

    async def consume_manual(
        self,
        queue: str,
        handler: RetryHandler,
        max_retries: int | None = None,
        *,
        prefetch: int | None = None,
    ) -> Consumer:
        """Consume ``queue``; the handler settles each message through a RetryAckHandle."""
        limit = self.max_retries(queue) if max_retries is None else max_retries

        async def manual(envelope: MessageEnvelope, handle: AckHandle) -> None:
            async def send_retry(original: MessageEnvelope) -> bool:
                return await self._send_retry(queue, original, limit)

            await handler(envelope, RetryAckHandle(handle, envelope, send_retry, limit))

        return await self._operations.consume_manual(queue, manual, prefetch=prefetch)

    async def stats(self, queue: str) -> DeadLetterStats:
        dlq = self.dead_letter_queue(queue)
        return DeadLetterStats(
            queue=queue,
            dead_letter_queue=dlq,
            queue_messages=await self._message_count(queue),
            dead_letter_messages=await self._message_count(dlq),
        )

    async def _message_count(self, queue: str) -> int | None:
        try:
            return (await self._operations.queue_info(queue)).message_count
        except (MessagingError, *CONNECT_ERRORS) as e:
            logger.debug("No queue info for %s: %s", queue, e)
            return None

    async def purge(self, queue: str) -> int:
        """Drop everything in ``dlq.<queue>``."""
        purged = await self._operations.purge_queue(self.dead_letter_queue(queue))
        logger.info("Purged %d dead letters for %s", purged, queue)
        return purged
