"""Pattern registry: queue kind -> service implementing setup/send/consume."""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from ..envelope import MessageEnvelope
    from ..rabbitmq.consumer import Consumer

    Handler = Callable[[MessageEnvelope], Awaitable[None]]


class QueueKind(str, Enum):
    WORK = "work"
    PRIORITY = "priority"
    DELAY = "delay"
    FANOUT = "fanout"
    TOPIC = "topic"


@runtime_checkable
class QueuePattern(Protocol):
    """Uniform contract every pattern service implements.

    ``name`` is the pattern's logical name: a queue for work, priority and
    delay; an exchange for fanout and topic on ``setup``/``send``. Pattern
    specific arguments (priority, delay, routing key) are keyword options.
    """

    kind: QueueKind

    async def setup(self, name: str, **options: Any) -> None: ...

    async def send(self, name: str, payload: Any, **options: Any) -> bool: ...

    async def consume(self, name: str, handler: Handler, **options: Any) -> Consumer: ...


class PatternRegistry:
    """Static mapping from :class:`QueueKind` to its pattern service."""

    def __init__(self, patterns: Iterable[QueuePattern] = ()) -> None:
        self._patterns: dict[QueueKind, QueuePattern] = {}
        for pattern in patterns:
            self.register(pattern)

    def register(self, pattern: QueuePattern) -> None:
        if not isinstance(pattern, QueuePattern):
            raise TypeError(f"{type(pattern).__name__} does not implement QueuePattern")
        self._patterns[pattern.kind] = pattern

    def get(self, kind: QueueKind | str) -> QueuePattern:
        try:
            return self._patterns[QueueKind(kind)]
        except KeyError:
            raise KeyError(f"No pattern registered for {kind!r}") from None

    def __contains__(self, kind: object) -> bool:
        try:
            return QueueKind(kind) in self._patterns
        except ValueError:
            return False

    @property
    def kinds(self) -> list[QueueKind]:
        return list(self._patterns)
