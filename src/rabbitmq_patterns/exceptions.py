"""Messaging-specific exceptions for rabbitmq-patterns."""

from __future__ import annotations


class MessagingError(Exception):
    """Base class for all messaging-related errors."""


class MessagingConnectionError(MessagingError):
    """Raised when connectivity to the message broker fails."""


class BrokerNotReadyError(MessagingConnectionError):
    """Raised when a channel is requested while no connection is established."""


class TopologyConflictError(MessagingError):
    """Raised when an exchange or queue is re-declared with incompatible options."""

    def __init__(self, message: str, entity: str | None = None) -> None:
        self.entity = entity
        super().__init__(message)


class TopologyConfigurationError(MessagingError):
    """Raised when the static topology table contradicts itself."""


class MessagingSerializationError(MessagingError):
    """Raised when message serialization or deserialization fails."""


class MalformedEnvelopeError(MessagingSerializationError):
    """Raised when an inbound frame is not a valid envelope.

    Not retryable: redelivering a corrupt frame cannot fix it.
    """


class RetryLimitExceededError(MessagingError):
    """Raised when a retry envelope would exceed the configured maximum."""

    def __init__(
        self, message: str, message_id: str | None = None, retry_count: int = 0
    ) -> None:
        self.message_id = message_id
        self.retry_count = retry_count
        super().__init__(message)


class MessageValidationError(MessagingError):
    """Raised when a send is rejected at the call site; nothing is enqueued."""


class InvalidPriorityError(MessageValidationError):
    """Raised when a priority falls outside 0..255."""


class InvalidScheduleError(MessageValidationError):
    """Raised when a scheduled execution time is not in the future."""


class AckAlreadySettledError(MessagingError):
    """Raised when a second terminal action is invoked on one delivery."""


class UnsupportedOperationError(MessagingError):
    """Raised for operations the broker offers no reliable primitive for."""


class DeadLetterError(MessagingError):
    """Raised when a dead-lettered message could not be handled."""

    def __init__(self, message: str, message_id: str | None = None) -> None:
        self.message_id = message_id
        super().__init__(message)
