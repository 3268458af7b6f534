"""
Redis store using redis-py's typed command API.

Requires: ``pip install redis``

Tags:
    timecapsule, store, redis, sorted-set

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypeVar

import redis

from timecapsule.stores.base import SortedSetStore

P = TypeVar("P")

__all__ = ["RedisStore"]


class RedisStore(SortedSetStore[P]):
    """Store backed by a ``redis.Redis`` client.

    The client is injected and may be shared by any number of stores and
    diggers; the store never closes it.

    Example::

        client = redis.Redis.from_url("redis://localhost:6379/0")
        store = RedisStore("jobs:delayed", client, payload_type=str)
        store.bury_for("hello", 1.0)
    """

    name = "Redis"

    def __init__(self, sorted_set_key: str, client: redis.Redis, **kwargs: Any) -> None:
        super().__init__(sorted_set_key, client, **kwargs)

    def _zadd(self, score: int, member: str | bytes) -> None:
        self._client.zadd(self._key, {member: score})

    def _zrangebyscore(self, min_score: int, max_score: int) -> Sequence[Any]:
        return self._client.zrangebyscore(self._key, min_score, max_score, start=0, num=1)

    def _zpopmin(self, count: int) -> list[tuple[str | bytes, float]]:
        popped = self._client.zpopmin(self._key, count)
        return [(member, float(score)) for member, score in popped or []]

    def _zrem(self, member: str) -> int:
        return int(self._client.zrem(self._key, member) or 0)

    def _clear(self) -> None:
        self._client.delete(self._key)

    def _zcard(self) -> int:
        return int(self._client.zcard(self._key) or 0)
