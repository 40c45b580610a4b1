"""Fanout broadcast: every queue bound to the exchange receives a copy."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..topology import ExchangeKind
from .registry import QueueKind

if TYPE_CHECKING:
    from ..rabbitmq.consumer import Consumer
    from ..rabbitmq.operations import PublishOptions, QueueOperations
    from .registry import Handler

logger = logging.getLogger("rabbitmq_patterns.patterns.fanout")

FANOUT_PREFIX = "fanout.exchange"


@dataclass
class _TemporaryListener:
    exchange: str
    handler: Handler
    consumer: Consumer


class FanoutService:
    kind = QueueKind.FANOUT

    def __init__(self, operations: QueueOperations, *, prefix: str = FANOUT_PREFIX) -> None:
        self._operations = operations
        self._prefix = prefix
        self._temporary: list[_TemporaryListener] = []

    def exchange_name(self, name: str) -> str:
        return f"{self._prefix}.{name}"

    async def setup(self, exchange: str) -> None:
        full_name = self.exchange_name(exchange)
        await self._operations.declare_exchange(full_name, ExchangeKind.FANOUT, durable=True)
        logger.info("Fanout exchange ready: %s", full_name)

    async def bind(
        self,
        exchange: str,
        queue: str,
        *,
        durable: bool = True,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: dict[str, Any] | None = None,
    ) -> None:
        """Declare ``queue`` and bind it with an empty routing key."""
        await self._operations.declare_queue(
            queue,
            durable=durable,
            exclusive=exclusive,
            auto_delete=auto_delete,
            arguments=arguments,
        )
        await self._operations.bind(queue, self.exchange_name(exchange), "")
        logger.info("Bound %s to %s", queue, self.exchange_name(exchange))

    async def bind_many(self, exchange: str, queues: list[str], **options: Any) -> None:
        await self.setup(exchange)
        for queue in queues:
            await self.bind(exchange, queue, **options)

    async def unbind(self, exchange: str, queue: str) -> None:
        await self._operations.unbind(queue, self.exchange_name(exchange), "")
        logger.info("Unbound %s from %s", queue, self.exchange_name(exchange))

    async def broadcast(
        self, exchange: str, payload: Any, options: PublishOptions | None = None
    ) -> bool:
        return await self._operations.publish(
            self.exchange_name(exchange), "", payload, options
        )

    async def send(
        self, name: str, payload: Any, options: PublishOptions | None = None
    ) -> bool:
        return await self.broadcast(name, payload, options)

    async def consume(self, name: str, handler: Handler, **options: Any) -> Consumer:
        """Consume the bound queue ``name``."""
        return await self._operations.consume(name, handler, **options)

    async def create_temporary_queue(self, exchange: str, handler: Handler) -> str:
        """Declare a server-named exclusive queue, bind it and start consuming.

        The queue disappears with the connection; :meth:`restore_temporary_queues`
        declares a replacement after a reconnect. Returns its generated name.
        """
        consumer = await self._listen(exchange, handler)
        self._temporary.append(_TemporaryListener(exchange, handler, consumer))
        return consumer.queue

    async def restore_temporary_queues(self) -> dict[str, str]:
        """Replace temporary listeners whose consumer was dropped.

        Returns a mapping of old queue name to the new one.
        """
        renamed: dict[str, str] = {}
        for listener in self._temporary:
            if listener.consumer.running:
                continue
            old = listener.consumer.queue
            listener.consumer = await self._listen(listener.exchange, listener.handler)
            renamed[old] = listener.consumer.queue
            logger.info("Temporary listener %s replaced by %s", old, listener.consumer.queue)
        return renamed

    async def _listen(self, exchange: str, handler: Handler) -> Consumer:
        info = await self._operations.declare_queue(
            "", durable=False, exclusive=True, auto_delete=True
        )
        await self._operations.bind(info.name, self.exchange_name(exchange), "")
        consumer = await self._operations.consume(
            info.name, handler, exclusive=True, temporary=True
        )
        logger.info("Temporary listener %s on %s", info.name, self.exchange_name(exchange))
        return consumer
