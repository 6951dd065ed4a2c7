"""Retry strategies for instance store writes.

The run loop never retries on its own; the host decides how often a failed
``create`` is retried by injecting a strategy into the materializer. Only
failures that may succeed on a second attempt are retried: an
``UpkeepError`` answers for itself through ``retryable`` (a recurrence key
collision never does), anything foreign is treated as a transient store
fault.

Example:
    >>> from upkeep.core.retry import ConstantBackoff, RetryContext
    >>>
    >>> ctx = RetryContext(ConstantBackoff(max_retries=2, delay=0.1))
    >>> await ctx.run_async(store.create, instance)
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, TypeVar

from upkeep.core.errors import UpkeepError, is_retryable

T = TypeVar("T")

OnRetry = Callable[[int, Exception, float], None]


def _error_allows_retry(error: Exception | None) -> bool:
    if isinstance(error, UpkeepError):
        return is_retryable(error)
    return True


@dataclass
class RetryStrategy:
    """Base strategy: a retry budget plus a delay schedule.

    ``attempt`` is 1-based and counts calls already made, so
    ``should_retry(max_retries, err)`` is the last one that answers True.
    """

    max_retries: int = 3

    def next_delay(self, attempt: int) -> float:
        """Seconds to wait before retry number ``attempt`` (0-based)."""
        return 0.0

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        return attempt <= self.max_retries and _error_allows_retry(error)


@dataclass
class NoRetry(RetryStrategy):
    """Fail on the first error."""

    max_retries: int = 0


@dataclass
class ConstantBackoff(RetryStrategy):
    delay: float = 1.0

    def next_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class ExponentialBackoff(RetryStrategy):
    """``min(base_delay * multiplier**attempt, max_delay)``, +/- jitter_range."""

    base_delay: float = 1.0
    max_delay: float = 60.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * self.multiplier**attempt, self.max_delay)
        if self.jitter:
            spread = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay


@dataclass(frozen=True)
class FailedAttempt:
    attempt: int
    error: Exception
    at: datetime


@dataclass
class RetryContext:
    """Runs one call under a strategy and keeps its failure history.

    A context is single-use: the materializer creates one per instance so
    ``attempts`` can be reported in the resulting error.
    """

    strategy: RetryStrategy
    on_retry: OnRetry | None = None
    errors: list[FailedAttempt] = field(default_factory=list, init=False)
    _calls: int = field(default=0, init=False, repr=False)

    @property
    def attempts(self) -> int:
        return self._calls

    @property
    def last_error(self) -> Exception | None:
        return self.errors[-1].error if self.errors else None

    async def run_async(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
        """Await ``func(*args, **kwargs)`` until it succeeds or the strategy gives up.

        Raises:
            The last error, unchanged, once no retry is allowed
        """
        while True:
            self._calls += 1
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                self.errors.append(FailedAttempt(self._calls, e, datetime.now(UTC)))
                if not self.strategy.should_retry(self._calls, e):
                    raise
                delay = self.strategy.next_delay(self._calls - 1)
                if self.on_retry is not None:
                    self.on_retry(self._calls, e, delay)
                await asyncio.sleep(delay)
