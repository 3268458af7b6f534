"""Deadline enforcement for blocking store calls.

Redis commands block on the network. The digger bounds every ``dig`` and
``destroy`` with a deadline so a hung connection cannot stall a poller
forever; the call runs on a worker thread while the caller waits on the
future with a timeout.

Architecture:
    ::

        ┌────────────────────────────────────────────────────────────────┐
        │ DeadlineRunner(max_workers=1)                                  │
        │                                                                │
        │   run(store.dig, timeout=60.0, operation="dig")               │
        │        │                                                       │
        │        ▼                                                       │
        │   executor.submit(...) ── future.result(timeout) ──► result    │
        │                                  │                             │
        │                                  └─► OperationTimeoutError     │
        └────────────────────────────────────────────────────────────────┘

Guardrails:
    - A timed-out call keeps running on its worker thread; Python cannot
      kill a thread. The runner stops waiting, it does not cancel.
    - One runner per digger, shut down by ``Digger.stop()``.

Tags:
    timeout, deadline, resilience, timecapsule

Doc-Types:
    api-reference
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from timecapsule.errors import OperationTimeoutError

T = TypeVar("T")


class DeadlineRunner:
    """Run callables on a private thread pool with a per-call deadline.

    Example:
        >>> runner = DeadlineRunner(name="digger")
        >>> capsule = runner.run(store.dig, timeout_seconds=60.0, operation="dig")
        >>> runner.shutdown()
    """

    def __init__(self, *, max_workers: int = 1, name: str = "timecapsule") -> None:
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=name,
        )
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def run(
        self,
        func: Callable[..., T],
        timeout_seconds: float,
        operation: str | None = None,
        args: tuple[Any, ...] | None = None,
        kwargs: dict[str, Any] | None = None,
    ) -> T:
        """Run ``func`` and wait at most ``timeout_seconds`` for it.

        Raises:
            OperationTimeoutError: If execution exceeds the deadline
            RuntimeError: If the runner was shut down
            Exception: Any exception raised by func
        """
        if timeout_seconds <= 0:
            raise ValueError(f"Timeout must be positive, got {timeout_seconds}")

        with self._lock:
            if self._closed:
                raise RuntimeError("DeadlineRunner is shut down")
            future = self._executor.submit(func, *(args or ()), **(kwargs or {}))

        start = time.monotonic()
        try:
            return future.result(timeout=timeout_seconds)
        except concurrent.futures.TimeoutError:
            raise OperationTimeoutError(
                operation or getattr(func, "__name__", "unknown"),
                timeout=timeout_seconds,
                elapsed=time.monotonic() - start,
            ) from None

    def shutdown(self) -> None:
        """Stop accepting work. Does not wait for a call still running."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._executor.shutdown(wait=False, cancel_futures=True)


__all__ = ["DeadlineRunner"]
