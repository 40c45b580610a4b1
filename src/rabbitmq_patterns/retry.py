"""Retry policy: how many times to retry and how long to back off between tries."""

from __future__ import annotations

import random
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable


class RetryPolicy:
    """Configurable retry with exponential backoff.

    ``retry_count`` is the number of retries already performed, so the first
    delivery has ``retry_count == 0``. The default backoff is
    ``base_delay * 2 ** retry_count`` seconds.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float | None = None,
        jitter: bool = False,
        backoff: Callable[[int], float] | None = None,
    ) -> None:
        """Configure retry behavior.

        Args:
            max_retries: Maximum number of retries after the first delivery.
            base_delay: Multiplier in seconds for the exponential backoff.
            max_delay: Optional cap on delay in seconds.
            jitter: If True, multiply delays by a random factor in [0.5, 1.5].
            backoff: Custom ``retry_count -> seconds`` function replacing the
                exponential formula.
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if base_delay < 0 or (max_delay is not None and max_delay < 0):
            raise ValueError("base_delay and max_delay must be >= 0")
        if max_delay is not None and base_delay > max_delay:
            raise ValueError("base_delay must be <= max_delay")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._backoff = backoff

    def should_retry(self, retry_count: int) -> bool:
        """Return True if a message already retried ``retry_count`` times may retry again."""
        return 0 <= retry_count < self.max_retries

    def delay_for(self, retry_count: int) -> float:
        """Return the delay in seconds before retry number ``retry_count``."""
        if retry_count < 0:
            return 0.0
        if self._backoff is not None:
            delay = float(self._backoff(retry_count))
        else:
            delay = self.base_delay * (2**retry_count)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        if self.jitter:
            delay = delay * (0.5 + random.random())  # noqa: S311
        return float(max(0.0, delay))

    def delay_ms(self, retry_count: int) -> int:
        """Same as :meth:`delay_for`, in whole milliseconds."""
        return int(self.delay_for(retry_count) * 1000)
