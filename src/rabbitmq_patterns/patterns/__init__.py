"""Pattern services built on the core queue operations."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .delay import DelayQueueService, DelayStrategy
from .fanout import FanoutService
from .priority import PriorityQueueService, PriorityTier, validate_priority
from .registry import PatternRegistry, QueueKind, QueuePattern
from .topic import TopicService, topic_matches
from .work import WorkQueueService

if TYPE_CHECKING:
    from ..rabbitmq.management import ManagementService
    from ..rabbitmq.operations import QueueOperations


def default_registry(
    operations: QueueOperations,
    *,
    management: ManagementService | None = None,
    delay_strategy: DelayStrategy | str = DelayStrategy.AUTO,
) -> PatternRegistry:
    """One service per :class:`QueueKind`, sharing ``operations``."""
    return PatternRegistry(
        [
            WorkQueueService(operations),
            PriorityQueueService(operations),
            DelayQueueService(operations, strategy=delay_strategy, management=management),
            FanoutService(operations),
            TopicService(operations),
        ]
    )


__all__ = [
    "DelayQueueService",
    "DelayStrategy",
    "FanoutService",
    "PatternRegistry",
    "PriorityQueueService",
    "PriorityTier",
    "QueueKind",
    "QueuePattern",
    "TopicService",
    "WorkQueueService",
    "default_registry",
    "topic_matches",
]
