"""RabbitMQ connection settings.

Environment variables use the ``RABBITMQ_`` prefix, e.g. ``RABBITMQ_HOST``,
``RABBITMQ_PREFETCH_COUNT`` or ``RABBITMQ_MANAGEMENT_URL``.
"""

from __future__ import annotations

from urllib.parse import quote

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrokerSettings(BaseSettings):
    """Broker connection, reconnection and management API settings."""

    model_config = SettingsConfigDict(
        env_prefix="RABBITMQ_",
        env_file=".env",
        extra="ignore",
    )

    host: str = Field(default="localhost", min_length=1, max_length=255)
    port: int = Field(default=5672, ge=1, le=65535)
    username: str = Field(default="guest", min_length=1)
    password: SecretStr = Field(default=SecretStr("guest"))
    vhost: str = Field(default="/", description="Virtual host")

    prefetch_count: int = Field(
        default=10,
        ge=0,
        le=65535,
        description="Channel-wide prefetch applied on every (re)connect.",
    )
    heartbeat: int = Field(default=60, ge=0, le=3600)
    connection_name: str = Field(default="rabbitmq-patterns", min_length=1)

    max_reconnect_attempts: int = Field(default=10, ge=0)
    reconnect_delay: float = Field(
        default=5.0,
        ge=0,
        description="Seconds; attempt N waits reconnect_delay * N.",
    )

    management_url: str | None = Field(
        default=None,
        description="Management API base URL, e.g. http://localhost:15672",
    )
    management_timeout: float = Field(default=10.0, gt=0)

    def _vhost_path(self) -> str:
        if self.vhost in ("", "/"):
            return "/"
        return "/" + quote(self.vhost.lstrip("/"), safe="")

    @property
    def url(self) -> str:
        """AMQP URL built from the component fields."""
        user = quote(self.username, safe="")
        password = quote(self.password.get_secret_value(), safe="")
        return f"amqp://{user}:{password}@{self.host}:{self.port}{self._vhost_path()}"

    @property
    def safe_url(self) -> str:
        """AMQP URL with the password masked, for logs."""
        user = quote(self.username, safe="")
        return f"amqp://{user}:***@{self.host}:{self.port}{self._vhost_path()}"

    @property
    def management_vhost(self) -> str:
        """Vhost as a management API path segment (``/`` becomes ``%2F``)."""
        return quote(self.vhost or "/", safe="")
