import pytest
from pytest_archon import archrule

CORE_MODULES = [
    "rabbitmq_patterns.envelope",
    "rabbitmq_patterns.exceptions",
    "rabbitmq_patterns.results",
    "rabbitmq_patterns.retry",
    "rabbitmq_patterns.serialization",
    "rabbitmq_patterns.settings",
    "rabbitmq_patterns.topology",
]


@pytest.mark.parametrize("module", CORE_MODULES)
def test_core_is_broker_agnostic(module: str) -> None:
    """
    Envelope, serialization, retry and topology modules are pure data and
    rules. They must not reach into the broker client or any layer above it.
    """
    (
        archrule(f"core_independence[{module}]")
        .match(module)
        .should_not_import("rabbitmq_patterns.rabbitmq*")
        .should_not_import("rabbitmq_patterns.patterns*")
        .should_not_import("rabbitmq_patterns.memory*")
        .should_not_import("rabbitmq_patterns.dead_letter")
        .should_not_import("rabbitmq_patterns.service")
        .should_not_import("aio_pika*")
        .should_not_import("httpx*")
        .check("rabbitmq_patterns", only_direct_imports=True)
    )


def test_rabbitmq_layering() -> None:
    """
    The broker layer knows nothing about the pattern services, dead-letter
    handling or the facade built on top of it.
    """
    (
        archrule("rabbitmq_layering")
        .match("rabbitmq_patterns.rabbitmq*")
        .should_not_import("rabbitmq_patterns.patterns*")
        .should_not_import("rabbitmq_patterns.dead_letter")
        .should_not_import("rabbitmq_patterns.service")
        .should_not_import("rabbitmq_patterns.memory*")
        .check("rabbitmq_patterns", only_direct_imports=True)
    )


def test_memory_broker_isolation() -> None:
    """
    The in-memory broker stands in for the server, so it may only share the
    topology rules with the client side.
    """
    (
        archrule("memory_isolation")
        .match("rabbitmq_patterns.memory*")
        .should_not_import("rabbitmq_patterns.rabbitmq*")
        .should_not_import("rabbitmq_patterns.patterns*")
        .should_not_import("rabbitmq_patterns.dead_letter")
        .should_not_import("rabbitmq_patterns.service")
        .check("rabbitmq_patterns", only_direct_imports=True)
    )


def test_patterns_go_through_operations() -> None:
    """
    Pattern services talk to the broker only through QueueOperations.
    """
    (
        archrule("patterns_layering")
        .match("rabbitmq_patterns.patterns*")
        .should_not_import("aio_pika*")
        .should_not_import("rabbitmq_patterns.memory*")
        .should_not_import("rabbitmq_patterns.dead_letter")
        .should_not_import("rabbitmq_patterns.service")
        .check("rabbitmq_patterns", only_direct_imports=True)
    )
