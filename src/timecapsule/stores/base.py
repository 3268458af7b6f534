"""Capsule lifecycle over a sorted set.

The bury / dig / destroy state machine is written once here against six
sorted-set primitives. Adapters only say how to send those primitives to
their client.

┌──────────────────────────────────────────────────────────────────────────────┐
│  DIG STATE MACHINE                                                            │
│                                                                               │
│   Empty ──(range 0..now has members)──► CandidateFound                       │
│     ▲                                         │                               │
│     │ nothing / nil reply                ZPOPMIN 1                            │
│     │                                         │                               │
│     │                    ┌────────────────────┴──────────────────┐           │
│     │                    ▼                                       ▼           │
│     │            PoppedPremature                            PoppedDue        │
│     └── requeue at original score                 decode, stamp, return      │
│                                                                               │
│  The range check and the pop are two commands. Between them another          │
│  digger may take the due entry, leaving us to pop one that is not yet        │
│  due. That is not an error: the entry goes back with its original score.     │
└──────────────────────────────────────────────────────────────────────────────┘

Known race: two diggers that both pop-and-requeue in quick succession can
briefly leave duplicate entries for one capsule. Nothing here defends
against that beyond the requeue retry itself.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from datetime import timedelta
from typing import Any, Generic, TypeVar

from redis.exceptions import RedisError

from timecapsule.capsule import Capsule, CapsuleCodec, unix_millis
from timecapsule.errors import (
    CapsuleDecodeError,
    DestroyExhaustedError,
    RequeueExhaustedError,
    StoreError,
    StoreTransportError,
)
from timecapsule.logging import get_logger
from timecapsule.retry import ConstantBackoff, RetryContext

P = TypeVar("P")
T = TypeVar("T")

logger = get_logger(__name__)

DEFAULT_RETRY_LIMIT = 100
DEFAULT_RETRY_INTERVAL = 0.01


def to_millis(duration: timedelta | float) -> int:
    """Convert a timedelta or a number of seconds to whole milliseconds."""
    if isinstance(duration, timedelta):
        return round(duration.total_seconds() * 1000)
    return round(float(duration) * 1000)


def to_text(value: str | bytes) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return value


class SortedSetStore(ABC, Generic[P]):
    """Store backed by one sorted-set key.

    Args:
        sorted_set_key: Key holding the capsules
        client: Store client handle, owned by the caller
        codec: Capsule codec; built from ``payload_type`` when omitted
        payload_type: Payload type for the default codec
        retry_limit: Attempts for requeue and destroy
        retry_interval: Seconds between those attempts
    """

    name: str = "sorted-set"
    transport_errors: tuple[type[Exception], ...] = (RedisError, OSError)

    def __init__(
        self,
        sorted_set_key: str,
        client: Any,
        *,
        codec: CapsuleCodec[P] | None = None,
        payload_type: Any = Any,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
    ) -> None:
        if not sorted_set_key:
            raise ValueError("sorted_set_key is required")
        if retry_limit <= 0:
            raise ValueError(f"retry_limit must be positive, got {retry_limit}")
        if retry_interval < 0:
            raise ValueError(f"retry_interval must be non-negative, got {retry_interval}")

        self._key = sorted_set_key
        self._client = client
        self._codec: CapsuleCodec[P] = codec or CapsuleCodec(payload_type)
        self._retry_limit = retry_limit
        self._retry_interval = retry_interval
        self._sleep: Callable[[float], Any] = time.sleep

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(key={self._key!r})"

    @property
    def type(self) -> str:
        return self.name

    @property
    def key(self) -> str:
        return self._key

    @property
    def client(self) -> Any:
        return self._client

    @property
    def codec(self) -> CapsuleCodec[P]:
        return self._codec

    # ---- primitives ----

    @abstractmethod
    def _zadd(self, score: int, member: str | bytes) -> None:
        """Insert-or-update ``member`` at ``score``."""

    @abstractmethod
    def _zrangebyscore(self, min_score: int, max_score: int) -> Sequence[Any]:
        """Members whose score lies in ``[min_score, max_score]`` (at least one if any)."""

    @abstractmethod
    def _zpopmin(self, count: int) -> list[tuple[str | bytes, float]]:
        """Atomically remove and return the ``count`` lowest-scored entries.

        Members come back exactly as the client returned them; only the
        codec turns them into text.
        """

    @abstractmethod
    def _zrem(self, member: str) -> int:
        """Remove ``member``; return how many entries were removed."""

    @abstractmethod
    def _clear(self) -> None:
        """Remove the whole key."""

    @abstractmethod
    def _zcard(self) -> int:
        """Number of entries under the key."""

    def _call(self, operation: str, func: Callable[..., T], *args: Any) -> T:
        try:
            return func(*args)
        except self.transport_errors as e:
            raise StoreTransportError(
                f"{self.name} {operation} failed: {e}", cause=e
            ).with_context(store=self.name, key=self._key, operation=operation) from e

    def _retry(self, operation: str) -> RetryContext:
        def on_retry(attempt: int, error: Exception, delay: float) -> None:
            logger.debug(
                "store_retry",
                store=self.name,
                key=self._key,
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )

        return RetryContext(
            ConstantBackoff(max_attempts=self._retry_limit, delay=self._retry_interval),
            on_retry=on_retry,
            sleep=self._sleep,
        )

    # ---- lifecycle ----

    def bury_for(self, payload: P, duration: timedelta | float) -> Capsule[P]:
        """Bury ``payload`` for ``duration`` (a timedelta or seconds).

        Equivalent to redis command:

            ZADD sortedSetKey <now ms + duration> <capsule>
        """
        return self.bury_until(payload, unix_millis() + to_millis(duration))

    def bury_until(self, payload: P, due_at_ms: int) -> Capsule[P]:
        """Bury ``payload`` until the epoch-ms timestamp ``due_at_ms``.

        Equivalent to redis command:

            ZADD sortedSetKey <due_at_ms> <capsule>

        Returns the buried capsule; passing it to ``destroy`` before it
        is due cancels it.
        """
        capsule = self._codec.new_capsule(payload)
        member = self._codec.encode(capsule)
        self._call("bury", self._zadd, int(due_at_ms), member)
        capsule.due_at = int(due_at_ms)

        logger.debug("capsule_buried", store=self.name, key=self._key, due_at=int(due_at_ms))
        return capsule

    def dig(self) -> Capsule[P] | None:
        """Pop the earliest due capsule.

        Equivalent to redis command flow:

            ZRANGEBYSCORE sortedSetKey 0 <now>
                      │
                got elements? ── no ──► None
                      │
            ZPOPMIN sortedSetKey 1
                      │
                due to execute? ── no ──► ZADD back at original score ──► None
                      │
                return Capsule

        Raises:
            StoreTransportError: The range check or the pop failed
            CapsuleDecodeError: The popped member is malformed; it is dropped
            RequeueExhaustedError: A premature pop could not be put back
        """
        now = unix_millis()

        members = self._call("dig", self._zrangebyscore, 0, now)
        if not members:
            return None

        popped = self._call("dig", self._zpopmin, 1)
        if not popped:
            return None

        member, score = popped[0]
        due_at = int(score)

        if due_at > now:
            self._requeue(member, due_at)
            return None

        try:
            capsule = self._codec.decode(member)
        except CapsuleDecodeError as e:
            e.with_context(store=self.name, key=self._key, operation="dig", due_at=due_at)
            raise

        capsule.dug_out_at = now
        capsule.due_at = due_at
        return capsule

    def _requeue(self, member: str | bytes, due_at: int) -> None:
        self._sleep(self._retry_interval)

        ctx = self._retry("requeue")
        try:
            ctx.run(self._call, "requeue", self._zadd, due_at, member)
        except StoreError as e:
            raise RequeueExhaustedError(
                f"could not requeue premature capsule after {ctx.attempts} attempts",
                cause=e,
            ).with_context(
                store=self.name,
                key=self._key,
                operation="requeue",
                attempts=ctx.attempts,
                due_at=due_at,
            ) from e

        logger.debug("capsule_requeued", store=self.name, key=self._key, due_at=due_at)

    def destroy(self, capsule: Capsule[P]) -> None:
        """Remove ``capsule`` from the store.

        Equivalent to redis command:

            ZREM sortedSetKey <capsule>

        A member that is already gone counts as removed.

        Raises:
            DestroyExhaustedError: Every attempt failed; the entry remains
        """
        member = self._codec.encode(capsule)

        ctx = self._retry("destroy")
        try:
            removed = ctx.run(self._call, "destroy", self._zrem, member)
        except StoreError as e:
            raise DestroyExhaustedError(
                f"could not destroy capsule after {ctx.attempts} attempts",
                cause=e,
            ).with_context(
                store=self.name,
                key=self._key,
                operation="destroy",
                attempts=ctx.attempts,
            ) from e

        logger.debug("capsule_destroyed", store=self.name, key=self._key, removed=removed)

    def destroy_all(self) -> None:
        """Remove every entry under the key.

        Equivalent to redis command:

            DEL sortedSetKey
        """
        self._call("destroy_all", self._clear)
        logger.info("capsules_destroyed_all", store=self.name, key=self._key)

    def size(self) -> int:
        """Number of capsules currently buried under the key."""
        return int(self._call("size", self._zcard))
