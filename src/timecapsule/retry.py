"""Fixed-delay retry for the two retried steps of the capsule lifecycle.

Only two operations are ever retried: putting a prematurely popped entry
back, and removing a delivered one. Both use a fixed attempt count and a
fixed delay, never exponential backoff.

Example:
    >>> strategy = ConstantBackoff(max_attempts=100, delay=0.01)
    >>> ctx = RetryContext(strategy)
    >>> ctx.run(lambda: client.zrem("jobs", member))
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

T = TypeVar("T")


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            attempt: Number of attempts made so far

        Returns:
            Delay in seconds before next attempt
        """
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Determine if another attempt should be made.

        Args:
            attempt: Number of attempts made so far
            error: The exception that caused the failure

        Returns:
            True if should retry, False otherwise
        """
        ...


@dataclass
class ConstantBackoff(RetryStrategy):
    """Constant delay between attempts.

    ``max_attempts`` counts every call, the first one included, so
    ``ConstantBackoff(max_attempts=1)`` never retries.
    """

    max_attempts: int = 100
    delay: float = 0.01
    retryable: Callable[[Exception], bool] | None = None

    def next_delay(self, attempt: int) -> float:
        """Return constant delay."""
        return self.delay

    def should_retry(self, attempt: int, error: Exception | None = None) -> bool:
        """Check if retry should be attempted."""
        if attempt >= self.max_attempts:
            return False

        if error is not None and self.retryable is not None:
            return self.retryable(error)

        return True


@dataclass
class RetryContext:
    """Context tracking retry state.

    Example:
        >>> ctx = RetryContext(ConstantBackoff(max_attempts=3, delay=0.01))
        >>> result = ctx.run(lambda: call_redis())
        >>> ctx.attempts
        1
    """

    strategy: RetryStrategy
    on_retry: Callable[[int, Exception, float], None] | None = None
    sleep: Callable[[float], Any] = time.sleep
    attempt: int = field(default=0, init=False)

    @property
    def attempts(self) -> int:
        """Number of attempts made."""
        return self.attempt

    def run(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute function with retry logic.

        Args:
            func: Function to execute
            *args: Positional arguments for func
            **kwargs: Keyword arguments for func

        Returns:
            Result from successful function call

        Raises:
            Last exception if all attempts are exhausted
        """
        while True:
            self.attempt += 1
            try:
                return func(*args, **kwargs)
            except Exception as e:
                if not self.strategy.should_retry(self.attempt, e):
                    raise

                delay = self.strategy.next_delay(self.attempt)

                if self.on_retry:
                    self.on_retry(self.attempt, e, delay)

                self.sleep(delay)


__all__ = [
    "RetryStrategy",
    "ConstantBackoff",
    "RetryContext",
]
