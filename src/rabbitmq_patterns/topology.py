"""Static exchange/queue/binding table and its validation."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from .exceptions import TopologyConfigurationError


class ExchangeKind(str, Enum):
    """Exchange types understood by the broker."""

    DIRECT = "direct"
    TOPIC = "topic"
    FANOUT = "fanout"
    HEADERS = "headers"
    DELAYED = "x-delayed-message"


class QueueOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    durable: bool = True
    exclusive: bool = False
    auto_delete: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class ExchangeOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    durable: bool = True
    auto_delete: bool = False
    arguments: dict[str, Any] = Field(default_factory=dict)


class QueueBinding(BaseModel):
    """One row of the static topology table.

    Rows sharing an exchange must agree on its type and options.
    """

    model_config = ConfigDict(frozen=True)

    queue: str = Field(..., min_length=1)
    exchange: str = Field(..., min_length=1)
    exchange_type: ExchangeKind
    routing_key: str | None = None
    queue_options: QueueOptions = Field(default_factory=QueueOptions)
    exchange_options: ExchangeOptions = Field(default_factory=ExchangeOptions)

    @property
    def effective_routing_key(self) -> str:
        """Routing key used for the binding; always empty for fanout."""
        if self.exchange_type is ExchangeKind.FANOUT:
            return ""
        return self.routing_key or ""


def group_by_exchange(
    table: tuple[QueueBinding, ...] | list[QueueBinding],
) -> dict[str, list[QueueBinding]]:
    """Group rows by exchange name, preserving table order.

    Raises:
        TopologyConfigurationError: if two rows declare the same exchange with
            a different type or different options.
    """
    groups: dict[str, list[QueueBinding]] = {}
    for row in table:
        group = groups.setdefault(row.exchange, [])
        if group:
            first = group[0]
            if first.exchange_type is not row.exchange_type:
                raise TopologyConfigurationError(
                    f"Exchange {row.exchange!r} declared as both "
                    f"{first.exchange_type.value!r} and {row.exchange_type.value!r}"
                )
            if first.exchange_options != row.exchange_options:
                raise TopologyConfigurationError(
                    f"Exchange {row.exchange!r} declared with conflicting options "
                    f"(queue {first.queue!r} vs {row.queue!r})"
                )
        group.append(row)
    return groups


def _row(
    queue: str,
    exchange: str,
    exchange_type: ExchangeKind,
    routing_key: str | None = None,
    **queue_arguments: Any,
) -> QueueBinding:
    return QueueBinding(
        queue=queue,
        exchange=exchange,
        exchange_type=exchange_type,
        routing_key=routing_key,
        queue_options=QueueOptions(arguments=queue_arguments),
    )


DEFAULT_TOPOLOGY: tuple[QueueBinding, ...] = (
    # work tasks
    _row("email-tasks", "work-exchange", ExchangeKind.DIRECT, "email"),
    _row("sms-tasks", "work-exchange", ExchangeKind.DIRECT, "sms"),
    _row("image-processing", "work-exchange", ExchangeKind.DIRECT, "image"),
    # domain events
    _row("events.user", "events-exchange", ExchangeKind.TOPIC, "user.*"),
    _row("events.order", "events-exchange", ExchangeKind.TOPIC, "order.*"),
    _row("events.payment", "events-exchange", ExchangeKind.TOPIC, "payment.*"),
    _row("events.all", "events-exchange", ExchangeKind.TOPIC, "#"),
    # logs
    _row("logs.error", "logs-exchange", ExchangeKind.TOPIC, "*.error"),
    _row("logs.warning", "logs-exchange", ExchangeKind.TOPIC, "*.warning"),
    _row("logs.all", "logs-exchange", ExchangeKind.TOPIC, "#"),
    # notifications
    _row("notifications.web", "notifications-exchange", ExchangeKind.FANOUT),
    _row("notifications.mobile", "notifications-exchange", ExchangeKind.FANOUT),
    _row("notifications.email", "notifications-exchange", ExchangeKind.FANOUT),
    # priority
    _row(
        "urgent-tasks",
        "priority-exchange",
        ExchangeKind.DIRECT,
        "urgent",
        **{"x-max-priority": 10},
    ),
)


def topic_matches(pattern: str, routing_key: str) -> bool:
    """Whether ``routing_key`` matches a topic binding ``pattern``.

    Words are dot-separated; ``*`` matches exactly one word and ``#`` matches
    zero or more words.
    """
    return _match_words(pattern.split("."), routing_key.split("."))


def _match_words(pattern: list[str], words: list[str]) -> bool:
    if not pattern:
        return not words
    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match_words(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    return head in ("*", words[0]) and _match_words(rest, words[1:])
