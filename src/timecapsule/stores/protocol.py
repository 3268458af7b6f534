"""Store protocol.

┌──────────────────────────────────────────────────────────────────────────────┐
│  STORE PROTOCOL                                                               │
│                                                                               │
│  A store owns one sorted-set key. Scores are due-times in epoch ms,          │
│  members are encoded capsules.                                                │
│                                                                               │
│   producer ──bury_for/bury_until──► ZADD key <due> <capsule>                 │
│                                                                               │
│   digger ──dig──► ZRANGEBYSCORE key 0 <now>                                   │
│                          │                                                    │
│                    got elements? ── no ──► None                               │
│                          │ yes                                                │
│                   ZPOPMIN key 1                                               │
│                          │                                                    │
│                   due (score <= now)?                                         │
│                   │                 │                                         │
│                  yes                no                                        │
│                   │                 │                                         │
│          decode, stamp       ZADD key <original score> <capsule>             │
│          dug_out_at          (fixed-delay retry) ──► None                    │
│          return capsule                                                       │
│                                                                               │
│   digger ──destroy──► ZREM key <capsule>       (absent member is success)    │
│   teardown ──destroy_all──► DEL key                                           │
│                                                                               │
│  Implementations:                                                             │
│  - RedisStore:        redis-py typed command API                              │
│  - RedisCommandStore: raw RESP commands via execute_command                  │
└──────────────────────────────────────────────────────────────────────────────┘
"""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol, TypeVar, runtime_checkable

from timecapsule.capsule import Capsule

P = TypeVar("P")


@runtime_checkable
class Store(Protocol[P]):
    """Capability interface every store adapter satisfies.

    Example (custom adapter):
        >>> class MyStore:
        ...     type = "custom"
        ...
        ...     def bury_for(self, payload, duration): ...
        ...     def bury_until(self, payload, due_at_ms): ...
        ...     def dig(self): ...
        ...     def destroy(self, capsule): ...
        ...     def destroy_all(self): ...
    """

    @property
    def type(self) -> str:
        """Diagnostic name of the backend adapter."""
        ...

    def bury_for(self, payload: P, duration: timedelta | float) -> Capsule[P]:
        """Bury ``payload`` until now + ``duration``."""
        ...

    def bury_until(self, payload: P, due_at_ms: int) -> Capsule[P]:
        """Bury ``payload`` until the epoch-ms timestamp ``due_at_ms``."""
        ...

    def dig(self) -> Capsule[P] | None:
        """Pop the earliest due capsule, or return None if nothing is due."""
        ...

    def destroy(self, capsule: Capsule[P]) -> None:
        """Remove a capsule's member from the store."""
        ...

    def destroy_all(self) -> None:
        """Remove every entry under the store's key."""
        ...
