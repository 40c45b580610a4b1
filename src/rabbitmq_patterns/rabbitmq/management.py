"""Health, statistics and bulk administration.

Queue listings and rates come from the RabbitMQ management HTTP API when
``management_url`` is configured; otherwise only AMQP-level counters from a
passive declare are available.
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

import httpx

from ..exceptions import MessagingError
from ..results import (
    CleanupReport,
    HealthReport,
    PurgeReport,
    QueueStats,
    SystemOverview,
)
from .connection import CONNECT_ERRORS

if TYPE_CHECKING:
    from .connection import RabbitMQConnectionManager
    from .operations import QueueOperations

logger = logging.getLogger("rabbitmq_patterns.management")

_ADMIN_ERRORS = (MessagingError, *CONNECT_ERRORS)
# transport failures, non-JSON bodies and unexpected payload shapes
_API_ERRORS = (httpx.HTTPError, ValueError)


def _rate(details: Any) -> float:
    if isinstance(details, dict):
        return float(details.get("rate", 0.0) or 0.0)
    return 0.0


def _stats_from_api(item: Any) -> QueueStats:
    if not isinstance(item, dict) or "name" not in item:
        raise ValueError(f"Unexpected queue entry from management API: {item!r}")
    message_stats = item.get("message_stats") or {}
    return QueueStats(
        name=item["name"],
        messages=item.get("messages", 0) or 0,
        messages_ready=item.get("messages_ready", 0) or 0,
        messages_unacknowledged=item.get("messages_unacknowledged", 0) or 0,
        consumers=item.get("consumers", 0) or 0,
        state=item.get("state"),
        publish_rate=_rate(message_stats.get("publish_details")),
        deliver_rate=_rate(message_stats.get("deliver_get_details")),
    )


class ManagementService:
    """Operational view over the broker for health checks and admin tooling."""

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        operations: QueueOperations,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Configure the service.

        Args:
            connection: Shared connection manager (settings come from it).
            operations: Core operations used for AMQP-level counters.
            transport: Optional httpx transport, e.g. ``httpx.MockTransport``.
        """
        self._connection = connection
        self._operations = operations
        self._transport = transport
        self._started = time.monotonic()

    @property
    def configured(self) -> bool:
        return bool(self._connection.settings.management_url)

    def _client(self) -> httpx.AsyncClient:
        settings = self._connection.settings
        return httpx.AsyncClient(
            base_url=(settings.management_url or "").rstrip("/"),
            auth=(settings.username, settings.password.get_secret_value()),
            timeout=settings.management_timeout,
            transport=self._transport,
        )

    async def _get(self, path: str) -> Any:
        async with self._client() as client:
            response = await client.get(path)
            response.raise_for_status()
            return response.json()

    async def all_queue_stats(self) -> list[QueueStats]:
        """Statistics for every queue in the vhost; ``[]`` when unconfigured."""
        if not self.configured:
            logger.warning("Management API URL not configured; no queue listing")
            return []
        vhost = self._connection.settings.management_vhost
        data = await self._get(f"/api/queues/{vhost}")
        if not isinstance(data, list):
            raise ValueError(f"Unexpected queue listing from management API: {data!r}")
        return [_stats_from_api(item) for item in data]

    async def queue_stats(self, name: str) -> QueueStats | None:
        """Statistics for one queue, or None if it cannot be read."""
        try:
            if self.configured:
                vhost = self._connection.settings.management_vhost
                data = await self._get(f"/api/queues/{vhost}/{quote(name, safe='')}")
                return _stats_from_api(data)
            info = await self._operations.queue_info(name)
        except (*_API_ERRORS, *_ADMIN_ERRORS) as e:
            logger.error("Failed to read statistics for queue %s: %s", name, e)
            return None
        return QueueStats(
            name=name,
            messages=info.message_count,
            messages_ready=info.message_count,
            consumers=info.consumer_count,
        )

    async def exchange_types(self) -> set[str] | None:
        """Exchange types the broker supports, or None without management access."""
        if not self.configured:
            return None
        try:
            overview = await self._get("/api/overview")
        except _API_ERRORS as e:
            logger.warning("Could not read broker overview: %s", e)
            return None
        if not isinstance(overview, dict):
            logger.warning("Unexpected broker overview: %r", overview)
            return None
        return {
            item["name"]
            for item in overview.get("exchange_types") or []
            if isinstance(item, dict) and "name" in item
        }

    async def health_check(self) -> HealthReport:
        errors: list[str] = []
        queues: list[QueueStats] = []
        connected = await self._connection.health_check()
        if not connected:
            errors.append("RabbitMQ connection is not available")
        try:
            queues = await self.all_queue_stats()
        except _API_ERRORS as e:
            errors.append(f"Management API check failed: {e}")
        return HealthReport(
            status="healthy" if not errors else "unhealthy",
            connected=connected,
            queues=queues,
            errors=errors,
        )

    async def system_overview(self) -> SystemOverview:
        errors: list[str] = []
        stats: list[QueueStats] = []
        try:
            stats = await self.all_queue_stats()
        except _API_ERRORS as e:
            logger.error("Management API overview failed: %s", e)
            errors.append(f"Management API check failed: {e}")
        return SystemOverview(
            total_queues=len(stats),
            total_messages=sum(s.messages for s in stats),
            total_consumers=sum(s.consumers for s in stats),
            connected=self._connection.is_ready(),
            uptime=time.monotonic() - self._started,
            errors=errors,
        )

    async def purge_queues(self, names: list[str]) -> PurgeReport:
        purged: dict[str, int] = {}
        errors: list[str] = []
        for name in names:
            try:
                purged[name] = await self._operations.purge_queue(name)
            except _ADMIN_ERRORS as e:
                errors.append(f"Failed to purge queue {name}: {e}")
        logger.info("Purged %d of %d queues", len(purged), len(names))
        return PurgeReport(purged=purged, errors=errors)

    async def cleanup_empty_queues(self, names: list[str]) -> CleanupReport:
        """Delete queues that hold no messages and have no consumers."""
        cleaned: list[str] = []
        errors: list[str] = []
        for name in names:
            try:
                info = await self._operations.queue_info(name)
                if info.message_count == 0 and info.consumer_count == 0:
                    await self._operations.delete_queue(name, if_empty=True)
                    cleaned.append(name)
            except _ADMIN_ERRORS as e:
                errors.append(f"Failed to clean up queue {name}: {e}")
        logger.info("Cleanup finished: %d queues deleted", len(cleaned))
        return CleanupReport(cleaned=cleaned, errors=errors)
