"""Tests for the static topology table, grouping and topic matching."""

from __future__ import annotations

import pytest

from rabbitmq_patterns.exceptions import TopologyConfigurationError
from rabbitmq_patterns.topology import (
    DEFAULT_TOPOLOGY,
    ExchangeKind,
    ExchangeOptions,
    QueueBinding,
    group_by_exchange,
    topic_matches,
)


def test_default_table_groups_by_exchange() -> None:
    groups = group_by_exchange(DEFAULT_TOPOLOGY)
    assert list(groups) == [
        "work-exchange",
        "events-exchange",
        "logs-exchange",
        "notifications-exchange",
        "priority-exchange",
    ]
    assert [r.queue for r in groups["work-exchange"]] == [
        "email-tasks",
        "sms-tasks",
        "image-processing",
    ]
    assert len(groups["events-exchange"]) == 4


def test_priority_row_carries_max_priority() -> None:
    row = next(r for r in DEFAULT_TOPOLOGY if r.queue == "urgent-tasks")
    assert row.queue_options.arguments == {"x-max-priority": 10}
    assert row.effective_routing_key == "urgent"


def test_fanout_routing_key_is_ignored() -> None:
    row = QueueBinding(
        queue="q", exchange="ex", exchange_type=ExchangeKind.FANOUT, routing_key="ignored"
    )
    assert row.effective_routing_key == ""


def test_conflicting_exchange_type_rejected() -> None:
    table = [
        QueueBinding(queue="a", exchange="ex", exchange_type=ExchangeKind.DIRECT),
        QueueBinding(queue="b", exchange="ex", exchange_type=ExchangeKind.TOPIC),
    ]
    with pytest.raises(TopologyConfigurationError, match="ex"):
        group_by_exchange(table)


def test_conflicting_exchange_options_rejected() -> None:
    table = [
        QueueBinding(queue="a", exchange="ex", exchange_type=ExchangeKind.DIRECT),
        QueueBinding(
            queue="b",
            exchange="ex",
            exchange_type=ExchangeKind.DIRECT,
            exchange_options=ExchangeOptions(durable=False),
        ),
    ]
    with pytest.raises(TopologyConfigurationError):
        group_by_exchange(table)


@pytest.mark.parametrize(
    ("pattern", "key", "expected"),
    [
        ("user.*", "user.created", True),
        ("user.*", "user.created.v2", False),
        ("user.*", "user", False),
        ("*.error", "billing.error", True),
        ("*.error.*", "app.error.db", True),
        ("#", "anything.at.all", True),
        ("#", "", True),
        ("app.#", "app", True),
        ("app.#", "app.a.b.c", True),
        ("#.deleted", "order.item.deleted", True),
        ("#.deleted", "order.created", False),
        ("a.#.z", "a.z", True),
        ("a.#.z", "a.b.c.z", True),
        ("order.created", "order.created", True),
        ("order.created", "order.deleted", False),
    ],
)
def test_topic_matches(pattern: str, key: str, expected: bool) -> None:
    assert topic_matches(pattern, key) is expected
