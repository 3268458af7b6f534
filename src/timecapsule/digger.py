"""Polling engine that digs up due capsules and hands them to a handler.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DIGGER                                                                       │
│                                                                               │
│   start()                                                                     │
│      │                                                                        │
│      ▼                                                                        │
│   ┌─────────────────────────────────────────────────────────────────┐        │
│   │              Daemon Thread (loop)                               │        │
│   │                                                                 │        │
│   │   while not stop_event.wait(interval):                          │        │
│   │       capsule = deadline(store.dig)          ◄── errors logged  │        │
│   │       if capsule:                                               │        │
│   │           handler(digger, capsule)                              │        │
│   │           deadline(store.destroy)  (fixed-delay retry)          │        │
│   │                                                                 │        │
│   └─────────────────────────────────────────────────────────────────┘        │
│                                                                               │
│   stop()                                                                      │
│      │                                                                        │
│      ▼                                                                        │
│   stop_event.set()            ◄── wakes the wait immediately                 │
│   thread.join(timeout=stop_timeout)                                           │
│   deadline runner shut down                                                   │
│                                                                               │
│  Ticks never queue up: a slow handler or a slow store simply makes the       │
│  next wait start later.                                                       │
│                                                                               │
│  Delivery is at-least-once. A destroy that keeps failing leaves the entry    │
│  in the store and it will be dug up again.                                   │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from timecapsule.capsule import Capsule
from timecapsule.errors import DiggerError, OperationTimeoutError, TimeCapsuleError, is_retryable
from timecapsule.logging import CapsuleLogger, as_capsule_logger, get_logger
from timecapsule.retry import ConstantBackoff, RetryContext
from timecapsule.stores.protocol import Store
from timecapsule.timeout import DeadlineRunner

P = TypeVar("P")

HandlerFunc = Callable[["Digger[P]", Capsule[P]], None]

DEFAULT_RETRY_LIMIT = 100
DEFAULT_RETRY_INTERVAL = 0.5
DEFAULT_OPERATION_TIMEOUT = 60.0
DEFAULT_STOP_TIMEOUT = 5.0

_fallback_logger = logging.getLogger(__name__)


@dataclass
class DiggerOptions:
    """Digger configuration.

    Attributes:
        retry_limit: Attempts for destroying a delivered capsule. Only
            retryable errors the store has not already retried count;
            exhausted store retries and deadline overruns are final.
        retry_interval: Seconds between those attempts
        logger: Where failed ticks are reported. stdlib loggers are
            adapted with :func:`as_capsule_logger`.
    """

    retry_limit: int = DEFAULT_RETRY_LIMIT
    retry_interval: float = DEFAULT_RETRY_INTERVAL
    logger: CapsuleLogger | None = None


def default_digger_options() -> DiggerOptions:
    """Return the default options, logging through structlog."""
    return DiggerOptions(
        retry_limit=DEFAULT_RETRY_LIMIT,
        retry_interval=DEFAULT_RETRY_INTERVAL,
        logger=get_logger("timecapsule.digger"),
    )


def merge_digger_options(original: DiggerOptions, *options: DiggerOptions | None) -> DiggerOptions:
    """Overlay ``options`` on ``original``.

    Only positive limits and intervals and non-None loggers override.
    """
    merged = replace(original)
    for option in options:
        if option is None:
            continue
        if option.retry_limit > 0:
            merged.retry_limit = option.retry_limit
        if option.retry_interval > 0:
            merged.retry_interval = option.retry_interval
        if option.logger is not None:
            merged.logger = as_capsule_logger(option.logger)
    return merged


@dataclass
class DiggerStats:
    """Counters describing what a digger has done so far."""

    ticks: int = 0
    dug: int = 0
    handled: int = 0
    destroyed: int = 0
    dig_errors: int = 0
    handler_errors: int = 0
    destroy_errors: int = 0
    last_tick: datetime | None = None
    started_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticks": self.ticks,
            "dug": self.dug,
            "handled": self.handled,
            "destroyed": self.destroyed,
            "dig_errors": self.dig_errors,
            "handler_errors": self.handler_errors,
            "destroy_errors": self.destroy_errors,
            "last_tick": self.last_tick.isoformat() if self.last_tick else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


def _seconds(value: timedelta | float) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class Digger(Generic[P]):
    """Keep digging capsules out of a store once ``start()`` is called.

    Example:
        >>> store = RedisStore("jobs:delayed", redis.Redis())
        >>> digger = Digger(store, timedelta(milliseconds=250))
        >>>
        >>> def handle(digger, capsule):
        ...     print("dug up", capsule.payload)
        ...
        >>> digger.set_handler(handle)
        >>> digger.start()
        >>> digger.bury_for("hello", timedelta(seconds=1))
        >>> # ... later ...
        >>> digger.stop()
    """

    def __init__(
        self,
        store: Store[P],
        dig_interval: timedelta | float,
        options: DiggerOptions | None = None,
        *,
        operation_timeout: timedelta | float = DEFAULT_OPERATION_TIMEOUT,
        stop_timeout: timedelta | float = DEFAULT_STOP_TIMEOUT,
    ) -> None:
        interval = _seconds(dig_interval)
        if interval <= 0:
            raise DiggerError(f"dig_interval must be positive, got {interval}")

        self._store = store
        self._interval = interval
        self._options = merge_digger_options(default_digger_options(), options)
        self._operation_timeout = _seconds(operation_timeout)
        self._stop_timeout = _seconds(stop_timeout)

        self._handler: HandlerFunc[P] | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._runner = DeadlineRunner(name="timecapsule-dig")
        self._started = False
        self._lock = threading.Lock()
        self._stats = DiggerStats()

    def __repr__(self) -> str:
        return f"Digger(store={self._store.type!r}, interval={self._interval}s)"

    # ---- configuration ----

    @property
    def store(self) -> Store[P]:
        return self._store

    @property
    def options(self) -> DiggerOptions:
        return self._options

    @property
    def interval(self) -> float:
        return self._interval

    @property
    def logger(self) -> CapsuleLogger:
        return self._options.logger

    def set_handler(self, handler: HandlerFunc[P]) -> None:
        """Register the callback that receives each dug capsule.

        Raises:
            DiggerError: If a handler was already set
        """
        if self._handler is not None:
            raise DiggerError("handler already set")
        self._handler = handler

    # ---- pass-throughs ----

    def bury_for(self, payload: P, duration: timedelta | float) -> Capsule[P]:
        """Bury a capsule for a period of time."""
        return self._store.bury_for(payload, duration)

    def bury_until(self, payload: P, due_at_ms: int) -> Capsule[P]:
        """Bury a capsule until an epoch-ms timestamp."""
        return self._store.bury_until(payload, due_at_ms)

    # ---- one tick ----

    def run_once(self) -> Capsule[P] | None:
        """Dig once, dispatch and destroy. Returns the dug capsule, if any.

        Never raises for store or handler failures; they are logged.
        """
        return self._tick(from_loop=False)

    def _tick(self, *, from_loop: bool) -> Capsule[P] | None:
        with self._lock:
            self._stats.ticks += 1
            self._stats.last_tick = datetime.now(UTC)

        capsule = self._dig()
        if capsule is None:
            return None

        # stop() may have given up waiting for this dig.
        if from_loop and self._stop_event.is_set():
            self._rebury(capsule)
            return None

        with self._lock:
            self._stats.dug += 1
        self.logger.debug(
            "capsule_dug",
            store=self._store.type,
            due_at=capsule.due_at,
            dug_out_at=capsule.dug_out_at,
        )

        if self._handler is not None:
            try:
                self._handler(self, capsule)
            except Exception as e:
                with self._lock:
                    self._stats.handler_errors += 1
                self.logger.error(
                    "capsule_handler_failed",
                    store=self._store.type,
                    error=str(e),
                    exc_info=True,
                )
                return capsule

            with self._lock:
                self._stats.handled += 1

        self._destroy(capsule)
        return capsule

    def _dig(self) -> Capsule[P] | None:
        try:
            return self._runner.run(self._store.dig, self._operation_timeout, "dig")
        except Exception as e:
            with self._lock:
                self._stats.dig_errors += 1
            self.logger.error("capsule_dig_failed", **_error_fields(e, store=self._store.type))
            return None

    def _rebury(self, capsule: Capsule[P]) -> None:
        """Put back a capsule dug after stop(); it gets a fresh buried_at."""
        try:
            self._store.bury_until(capsule.payload, capsule.due_at)
        except Exception as e:
            self.logger.error("capsule_rebury_failed", **_error_fields(e, store=self._store.type))
            return
        self.logger.info("capsule_reburied_after_stop", store=self._store.type, due_at=capsule.due_at)

    def _destroy(self, capsule: Capsule[P]) -> None:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            self.logger.warning(
                "capsule_destroy_retry",
                store=self._store.type,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        ctx = RetryContext(
            ConstantBackoff(
                max_attempts=self._options.retry_limit,
                delay=self._options.retry_interval,
                retryable=self._should_retry_destroy,
            ),
            on_retry=on_retry,
            sleep=self._stop_event.wait,
        )

        try:
            ctx.run(
                self._runner.run,
                self._store.destroy,
                self._operation_timeout,
                "destroy",
                (capsule,),
            )
        except Exception as e:
            with self._lock:
                self._stats.destroy_errors += 1
            self.logger.error(
                "capsule_destroy_failed",
                **_error_fields(e, store=self._store.type, destroy_attempts=ctx.attempts),
            )
            return

        with self._lock:
            self._stats.destroyed += 1
        self.logger.debug("capsule_burned", store=self._store.type)

    def _should_retry_destroy(self, error: Exception) -> bool:
        if isinstance(error, OperationTimeoutError):
            return False
        return is_retryable(error) and not self._stop_event.is_set()

    # ---- lifecycle ----

    def start(self) -> None:
        """Start polling on a daemon thread.

        A second call while running is ignored with a warning.
        """
        with self._lock:
            if self._started:
                self.logger.warning("digger_already_started", store=self._store.type)
                return

            self._stop_event.clear()
            if self._runner.closed:
                self._runner = DeadlineRunner(name="timecapsule-dig")

            self._thread = threading.Thread(
                target=self._loop,
                daemon=True,
                name=f"timecapsule-digger-{self._store.type}",
            )
            self._started = True
            self._stats.started_at = datetime.now(UTC)

        self._thread.start()

    def _loop(self) -> None:
        self.logger.info("digger_started", store=self._store.type, interval_seconds=self._interval)

        while not self._stop_event.wait(self._interval):
            try:
                self._tick(from_loop=True)
            except Exception as e:
                self._report_tick_failure(e)

        self.logger.info("digger_stopped", store=self._store.type)

    def _report_tick_failure(self, error: Exception) -> None:
        try:
            self.logger.error(
                "digger_tick_failed",
                store=self._store.type,
                error=str(error),
                exc_info=True,
            )
        except Exception:
            _fallback_logger.exception("digger_tick_failed store=%s", self._store.type)

    def stop(self) -> None:
        """Stop polling.

        Safe to call more than once. Waits up to ``stop_timeout`` for a
        tick in progress; no new tick starts after this returns. A dig
        that outlives the wait does not reach the handler: its capsule
        is buried again at the same due time.
        """
        with self._lock:
            if not self._started:
                return
            self._started = False
            self._stop_event.set()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self._stop_timeout)
            if thread.is_alive():
                self.logger.warning(
                    "digger_stop_timeout",
                    store=self._store.type,
                    stop_timeout=self._stop_timeout,
                )

        self._runner.shutdown()

    # ---- health ----

    @property
    def is_running(self) -> bool:
        return self._started and self._thread is not None and self._thread.is_alive()

    @property
    def stats(self) -> DiggerStats:
        with self._lock:
            return replace(self._stats)

    def health(self) -> dict[str, Any]:
        """Return digger health status.

        Returns:
            dict with healthy, backend, interval_seconds and the counters
            from :class:`DiggerStats`
        """
        return {
            "healthy": self.is_running,
            "backend": self._store.type,
            "interval_seconds": self._interval,
            **self.stats.to_dict(),
        }


def _error_fields(error: Exception, **fields: Any) -> dict[str, Any]:
    """Log fields for ``error``; its own context wins over ``fields``."""
    result = dict(fields)
    result["error"] = str(error)
    result["error_type"] = error.__class__.__name__
    if isinstance(error, TimeCapsuleError):
        result["retryable"] = error.retryable
        result.update(error.context.to_dict())
    return result


__all__ = [
    "Digger",
    "DiggerOptions",
    "DiggerStats",
    "HandlerFunc",
    "default_digger_options",
    "merge_digger_options",
]
