"""RabbitMQ messaging patterns: work, priority, delay, fanout, topic and dead-letter queues."""

from __future__ import annotations

from .dead_letter import DeadLetterOptions, DeadLetterService, RetryAckHandle
from .envelope import MessageEnvelope
from .exceptions import (
    AckAlreadySettledError,
    BrokerNotReadyError,
    DeadLetterError,
    InvalidPriorityError,
    InvalidScheduleError,
    MalformedEnvelopeError,
    MessageValidationError,
    MessagingConnectionError,
    MessagingError,
    MessagingSerializationError,
    RetryLimitExceededError,
    TopologyConfigurationError,
    TopologyConflictError,
    UnsupportedOperationError,
)
from .patterns import (
    DelayQueueService,
    DelayStrategy,
    FanoutService,
    PatternRegistry,
    PriorityQueueService,
    PriorityTier,
    QueueKind,
    QueuePattern,
    TopicService,
    WorkQueueService,
)
from .rabbitmq import (
    AckHandle,
    Consumer,
    ManagementService,
    PublishOptions,
    QueueOperations,
    RabbitMQConnectionManager,
    TopologyRegistrar,
)
from .retry import RetryPolicy
from .serialization import EnvelopeSerializer
from .service import MessagingService
from .settings import BrokerSettings
from .topology import DEFAULT_TOPOLOGY, ExchangeKind, QueueBinding, topic_matches

__all__ = [
    "DEFAULT_TOPOLOGY",
    "AckAlreadySettledError",
    "AckHandle",
    "BrokerNotReadyError",
    "BrokerSettings",
    "Consumer",
    "DeadLetterError",
    "DeadLetterOptions",
    "DeadLetterService",
    "DelayQueueService",
    "DelayStrategy",
    "EnvelopeSerializer",
    "ExchangeKind",
    "FanoutService",
    "InvalidPriorityError",
    "InvalidScheduleError",
    "MalformedEnvelopeError",
    "ManagementService",
    "MessageEnvelope",
    "MessageValidationError",
    "MessagingConnectionError",
    "MessagingError",
    "MessagingSerializationError",
    "MessagingService",
    "PatternRegistry",
    "PriorityQueueService",
    "PriorityTier",
    "PublishOptions",
    "QueueBinding",
    "QueueKind",
    "QueueOperations",
    "QueuePattern",
    "RabbitMQConnectionManager",
    "RetryAckHandle",
    "RetryLimitExceededError",
    "RetryPolicy",
    "TopicService",
    "TopologyConfigurationError",
    "TopologyConflictError",
    "TopologyRegistrar",
    "UnsupportedOperationError",
    "WorkQueueService",
    "topic_matches",
]
