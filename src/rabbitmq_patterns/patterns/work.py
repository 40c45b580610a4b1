"""Work queue: competing consumers with fair dispatch."""

from __future__ import annotations

import logging
import time
import uuid
from typing import TYPE_CHECKING, Any

from .registry import QueueKind

if TYPE_CHECKING:
    from ..envelope import MessageEnvelope
    from ..rabbitmq.consumer import Consumer
    from ..rabbitmq.operations import PublishOptions, QueueOperations
    from .registry import Handler

logger = logging.getLogger("rabbitmq_patterns.patterns.work")

WORK_PREFIX = "work.queue"
IMAGE_PROCESSING_QUEUE = "image-processing"


class WorkQueueService:
    """Durable queue shared by N workers; the broker round-robins deliveries.

    Workers use prefetch=1 unless overridden so a busy worker is not handed
    more tasks than it can start.
    """

    kind = QueueKind.WORK

    def __init__(self, operations: QueueOperations, *, prefix: str = WORK_PREFIX) -> None:
        self._operations = operations
        self._prefix = prefix

    def queue_name(self, name: str) -> str:
        return f"{self._prefix}.{name}"

    async def setup(
        self,
        name: str,
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        full_name = self.queue_name(name)
        await self._operations.declare_queue(
            full_name,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
        )
        logger.info("Work queue ready: %s", full_name)

    async def send(
        self, name: str, payload: Any, options: PublishOptions | None = None
    ) -> bool:
        return await self._operations.send_to_queue(self.queue_name(name), payload, options)

    async def send_batch(
        self, name: str, payloads: list[Any], options: PublishOptions | None = None
    ) -> list[bool]:
        results = [await self.send(name, payload, options) for payload in payloads]
        logger.info("Sent %d tasks to %s", len(payloads), self.queue_name(name))
        return results

    async def consume(
        self,
        name: str,
        handler: Handler,
        *,
        worker_id: str | None = None,
        prefetch: int = 1,
    ) -> Consumer:
        """Start one worker on the queue."""
        wid = worker_id or f"worker-{uuid.uuid4().hex[:9]}"

        async def timed(envelope: MessageEnvelope) -> None:
            logger.debug("Worker %s processing %s", wid, envelope.message_id)
            started = time.perf_counter()
            try:
                await handler(envelope)
            except Exception as e:
                logger.error("Worker %s failed on %s: %s", wid, envelope.message_id, e)
                raise
            logger.debug(
                "Worker %s finished %s in %.1fms",
                wid,
                envelope.message_id,
                (time.perf_counter() - started) * 1000,
            )

        consumer = await self._operations.consume(
            self.queue_name(name), timed, prefetch=prefetch, consumer_id=wid
        )
        logger.info("Worker %s consuming %s", wid, self.queue_name(name))
        return consumer

    async def start_workers(
        self, name: str, handler: Handler, count: int = 3, *, prefetch: int = 1
    ) -> list[Consumer]:
        """Launch ``count`` independent consumers against the same queue."""
        if count < 1:
            raise ValueError("count must be >= 1")
        workers = [
            await self.consume(name, handler, worker_id=f"worker-{i + 1}", prefetch=prefetch)
            for i in range(count)
        ]
        logger.info("Started %d workers on %s", count, self.queue_name(name))
        return workers

    async def setup_image_processing_queue(self) -> None:
        await self.setup(IMAGE_PROCESSING_QUEUE)

    async def send_image_processing_task(
        self,
        image_url: str,
        operations: list[str],
        output_format: str,
        user_id: str,
    ) -> bool:
        return await self.send(
            IMAGE_PROCESSING_QUEUE,
            {
                "imageUrl": image_url,
                "operations": operations,
                "outputFormat": output_format,
                "userId": user_id,
            },
        )

    async def consume_image_processing_queue(
        self, handler: Handler, count: int = 2
    ) -> list[Consumer]:
        return await self.start_workers(IMAGE_PROCESSING_QUEUE, handler, count)
