"""TopologyRegistrar: declares the static exchange/queue/binding table."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from ..exceptions import MessagingError
from ..results import InitResult, TopologyStatus
from ..topology import DEFAULT_TOPOLOGY, QueueBinding, group_by_exchange
from .connection import CONNECT_ERRORS

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .operations import QueueOperations

logger = logging.getLogger("rabbitmq_patterns.registrar")


class TopologyRegistrar:
    """Idempotently declare every row of a topology table.

    Each exchange is declared once using the options of the first row that
    names it; then each row's queue is declared and bound. Broker declares are
    declare-if-absent, so running this again is safe.
    """

    def __init__(
        self,
        operations: QueueOperations,
        table: Sequence[QueueBinding] = DEFAULT_TOPOLOGY,
    ) -> None:
        self._operations = operations
        self._table = tuple(table)
        self._groups = group_by_exchange(self._table)
        self._initialized = False
        self._lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def table(self) -> tuple[QueueBinding, ...]:
        return self._table

    @property
    def queue_map(self) -> dict[str, QueueBinding]:
        """Row by queue name."""
        return {row.queue: row for row in self._table}

    @property
    def exchange_map(self) -> dict[str, list[QueueBinding]]:
        """Rows grouped by exchange name."""
        return {name: list(rows) for name, rows in self._groups.items()}

    async def initialize(self, force: bool = False) -> None:
        """Declare the table; a no-op after the first success unless ``force``.

        Raises:
            TopologyConflictError: when the broker already holds an entity
                with incompatible options.
        """
        async with self._lock:
            if self._initialized and not force:
                return
            logger.info(
                "Declaring topology: %d exchanges, %d queues",
                len(self._groups),
                len(self._table),
            )
            for exchange, rows in self._groups.items():
                head = rows[0]
                await self._operations.declare_exchange(
                    exchange,
                    head.exchange_type,
                    durable=head.exchange_options.durable,
                    auto_delete=head.exchange_options.auto_delete,
                    arguments=dict(head.exchange_options.arguments),
                )
                for row in rows:
                    options = row.queue_options
                    await self._operations.declare_queue(
                        row.queue,
                        durable=options.durable,
                        exclusive=options.exclusive,
                        auto_delete=options.auto_delete,
                        arguments=dict(options.arguments),
                    )
                    await self._operations.bind(
                        row.queue, exchange, row.effective_routing_key
                    )
            self._initialized = True
            logger.info("Topology initialized")

    async def manual_init(self) -> InitResult:
        """Force a re-declare and report the outcome instead of raising."""
        try:
            await self.initialize(force=True)
        except (MessagingError, *CONNECT_ERRORS) as e:
            logger.error("Topology initialization failed: %s", e)
            return InitResult(success=False, message=str(e))
        return InitResult(
            success=True,
            message="Topology initialized",
            queues=[row.queue for row in self._table],
        )

    def status(self) -> TopologyStatus:
        return TopologyStatus(
            initialized=self._initialized,
            queue_count=len({row.queue for row in self._table}),
            exchange_count=len(self._groups),
            queues=[row.queue for row in self._table],
        )
