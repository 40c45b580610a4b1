"""RabbitMQ core: connection, queue operations, topology registrar, management."""

from __future__ import annotations

from .connection import ConnectionState, RabbitMQConnectionManager
from .consumer import AckHandle, Consumer
from .management import ManagementService
from .operations import PublishOptions, QueueOperations
from .registrar import TopologyRegistrar

__all__ = [
    "AckHandle",
    "ConnectionState",
    "Consumer",
    "ManagementService",
    "PublishOptions",
    "QueueOperations",
    "RabbitMQConnectionManager",
    "TopologyRegistrar",
]
