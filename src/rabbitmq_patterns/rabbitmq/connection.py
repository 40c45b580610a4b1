"""RabbitMQ connection lifecycle, linear-backoff reconnect, and readiness."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError
from pydantic import BaseModel, ConfigDict

from ..exceptions import BrokerNotReadyError, MessagingConnectionError
from ..settings import BrokerSettings

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from aio_pika.abc import AbstractChannel, AbstractConnection

    ConnectFactory = Callable[..., Awaitable[AbstractConnection]]
    ReconnectListener = Callable[[], Awaitable[None]]

logger = logging.getLogger("rabbitmq_patterns.connection")

CONNECT_ERRORS: tuple[type[BaseException], ...] = (
    AMQPError,
    ConnectionError,
    OSError,
    asyncio.TimeoutError,
)


async def _cancel(task: asyncio.Task[None] | None) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await task


class ConnectionState(BaseModel):
    """Point-in-time snapshot of the connection manager."""

    model_config = ConfigDict(frozen=True)

    connected: bool
    reconnect_attempts: int
    max_reconnect_attempts: int
    reconnect_delay: float


class RabbitMQConnectionManager:
    """Owns the single connection and operational channel to the broker.

    On an unexpected connection close a reconnect is scheduled after
    ``reconnect_delay * attempt`` seconds. After ``max_reconnect_attempts``
    consecutive failures no further attempt is scheduled and a critical log
    line is emitted; an operator restart is then required. A successful
    reconnect resets the attempt counter.

    Channel handles obtained before a reconnect are invalid afterwards.
    Components that cache them register a listener with
    :meth:`add_reconnect_listener`.
    """

    def __init__(
        self,
        settings: BrokerSettings | None = None,
        *,
        connect: ConnectFactory | None = None,
    ) -> None:
        """Configure the manager.

        Args:
            settings: Connection settings; read from the environment if omitted.
            connect: Coroutine factory ``(url, **kwargs) -> connection``;
                defaults to ``aio_pika.connect``.
        """
        self._settings = settings or BrokerSettings()
        self._connect = connect or aio_pika.connect
        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._connected = False
        self._closing = False
        self._reconnect_attempts = 0
        self._reconnect_task: asyncio.Task[None] | None = None
        self._reopen_task: asyncio.Task[None] | None = None
        self._generation = 0
        self._ready = asyncio.Event()
        self._listeners: list[ReconnectListener] = []
        self._channel_lock = asyncio.Lock()

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def generation(self) -> int:
        """Incremented every time a new connection is opened."""
        return self._generation

    @property
    def channel_lock(self) -> asyncio.Lock:
        """Lock serializing multi-frame sequences on the shared channel."""
        return self._channel_lock

    @property
    def state(self) -> ConnectionState:
        return ConnectionState(
            connected=self.is_ready(),
            reconnect_attempts=self._reconnect_attempts,
            max_reconnect_attempts=self._settings.max_reconnect_attempts,
            reconnect_delay=self._settings.reconnect_delay,
        )

    def add_reconnect_listener(self, listener: ReconnectListener) -> None:
        """Register an async callback run after every automatic recovery."""
        self._listeners.append(listener)

    async def connect(self) -> None:
        """Establish connection and channel. Idempotent if already connected.

        On failure a background reconnect is scheduled and
        :class:`MessagingConnectionError` is raised to the caller.
        """
        if self.is_ready():
            return
        self._closing = False
        await self._cancel_reconnect()
        logger.info("Connecting to RabbitMQ at %s", self._settings.safe_url)
        try:
            await self._open()
        except CONNECT_ERRORS as e:
            logger.error("RabbitMQ connection failed: %s", e)
            self._schedule_reconnect()
            raise MessagingConnectionError(str(e)) from e

    async def disconnect(self) -> None:
        """Close channel then connection; either may already be gone."""
        self._closing = True
        await self._cancel_reconnect()
        reopen, self._reopen_task = self._reopen_task, None
        await _cancel(reopen)
        channel, connection = self._channel, self._connection
        self._channel = None
        self._connection = None
        self._connected = False
        self._ready.clear()
        if channel is not None and not channel.is_closed:
            try:
                await channel.close()
            except CONNECT_ERRORS as e:
                logger.warning("Error closing RabbitMQ channel: %s", e)
        if connection is not None and not connection.is_closed:
            try:
                await connection.close()
            except CONNECT_ERRORS as e:
                logger.warning("Error closing RabbitMQ connection: %s", e)
        logger.info("RabbitMQ connection closed")

    def get_channel(self) -> AbstractChannel:
        """Return the active channel; raises if not connected."""
        if not self.is_ready() or self._channel is None:
            raise BrokerNotReadyError("RabbitMQ connection is not ready")
        return self._channel

    def is_ready(self) -> bool:
        return (
            self._connected
            and self._channel is not None
            and not self._channel.is_closed
            and self._connection is not None
            and not self._connection.is_closed
        )

    async def health_check(self) -> bool:
        """Return True if connection and channel are open."""
        return self.is_ready()

    async def wait_until_ready(self, timeout: float | None = None) -> bool:
        """Wait for connectivity; return False if ``timeout`` elapses first."""
        if self.is_ready():
            return True
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready()

    async def set_prefetch(self, count: int) -> None:
        """Apply ``basic.qos`` to consumers created afterwards on the channel."""
        await self.get_channel().set_qos(prefetch_count=count)

    async def unbind(self, queue: str, exchange: str, routing_key: str = "") -> None:
        """Remove the binding ``exchange --routing_key--> queue``."""
        channel = self.get_channel()
        amqp_queue = await channel.get_queue(queue, ensure=False)
        await amqp_queue.unbind(exchange, routing_key=routing_key)
        logger.debug("Unbound %s from %s (%r)", queue, exchange, routing_key)

    async def _open(self) -> None:
        connection = await self._connect(
            self._settings.url,
            heartbeat=self._settings.heartbeat,
            client_properties={"connection_name": self._settings.connection_name},
        )
        try:
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._settings.prefetch_count)
        except BaseException:
            with contextlib.suppress(*CONNECT_ERRORS):
                await connection.close()
            raise
        connection.close_callbacks.add(self._on_connection_close)
        channel.close_callbacks.add(self._on_channel_close)
        superseded, self._connection = self._connection, connection
        self._channel = channel
        self._connected = True
        self._generation += 1
        self._reconnect_attempts = 0
        self._ready.set()
        logger.info(
            "Connected to RabbitMQ (prefetch=%d)", self._settings.prefetch_count
        )
        if superseded is not None and not superseded.is_closed:
            with contextlib.suppress(*CONNECT_ERRORS):
                await superseded.close()

    def _on_connection_close(
        self, sender: Any, exc: BaseException | None = None
    ) -> None:
        if self._closing or sender is not self._connection:
            return
        self._connected = False
        self._ready.clear()
        self._channel = None
        self._connection = None
        if exc is not None:
            logger.error("RabbitMQ connection error: %s", exc)
        else:
            logger.warning("RabbitMQ connection closed unexpectedly")
        self._schedule_reconnect()

    def _on_channel_close(
        self, sender: Any, exc: BaseException | None = None
    ) -> None:
        if self._closing or sender is not self._channel:
            return
        if self._connection is None or self._connection.is_closed:
            return
        logger.warning("RabbitMQ channel closed: %s", exc)
        self._ready.clear()
        if self._reopen_task is not None and not self._reopen_task.done():
            return
        self._reopen_task = asyncio.get_running_loop().create_task(
            self._reopen_channel(), name="rabbitmq-reopen-channel"
        )
        self._reopen_task.add_done_callback(self._on_reopen_done)

    async def _reopen_channel(self) -> None:
        """Reopen the channel, repeating while listeners close it again.

        After ``max_reconnect_attempts`` consecutive reopenings the whole
        connection is dropped and the backoff reconnect takes over.
        """
        limit = self._settings.max_reconnect_attempts
        for attempt in range(1, limit + 1):
            connection = self._connection
            if self._closing or connection is None or connection.is_closed:
                return
            try:
                channel = await connection.channel()
                await channel.set_qos(prefetch_count=self._settings.prefetch_count)
            except CONNECT_ERRORS as e:
                logger.error("Failed to reopen RabbitMQ channel: %s", e)
                break
            channel.close_callbacks.add(self._on_channel_close)
            self._channel = channel
            self._ready.set()
            logger.info("RabbitMQ channel reopened (attempt %d/%d)", attempt, limit)
            await self._notify_listeners()
            if not channel.is_closed:
                return
        else:
            logger.error(
                "RabbitMQ channel closed during recovery %d times; reconnecting", limit
            )
        connection = self._connection
        if self._closing or connection is None:
            return
        self._connected = False
        self._ready.clear()
        self._connection = None
        self._channel = None
        with contextlib.suppress(*CONNECT_ERRORS):
            await connection.close()
        self._schedule_reconnect()

    def _on_reopen_done(self, task: asyncio.Task[None]) -> None:
        if self._reopen_task is task:
            self._reopen_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.error("Channel reopen failed", exc_info=task.exception())

    async def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        await _cancel(task)

    def _schedule_reconnect(self) -> None:
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        limit = self._settings.max_reconnect_attempts
        if self._reconnect_attempts >= limit:
            logger.critical(
                "Giving up on RabbitMQ after %d reconnect attempts; "
                "manual restart required",
                limit,
            )
            return
        self._reconnect_attempts += 1
        delay = self._settings.reconnect_delay * self._reconnect_attempts
        logger.info(
            "Reconnecting to RabbitMQ in %.1fs (attempt %d/%d)",
            delay,
            self._reconnect_attempts,
            limit,
        )
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing:
            return
        if self.is_ready():
            self._reconnect_task = None
            return
        try:
            await self._open()
        except CONNECT_ERRORS as e:
            logger.error("RabbitMQ reconnect failed: %s", e)
            self._reconnect_task = None
            self._schedule_reconnect()
            return
        logger.info("RabbitMQ reconnected")
        self._reconnect_task = None
        await self._notify_listeners()

    async def _notify_listeners(self) -> None:
        for listener in list(self._listeners):
            try:
                await listener()
            except Exception:
                logger.exception("Reconnect listener failed")
