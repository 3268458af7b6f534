"""
Store issuing raw RESP commands through ``execute_command``.

Any client exposing ``execute_command(*args)`` works: ``redis.Redis``,
``redis.cluster.RedisCluster`` or a RESP-compatible fork. Replies are
taken as they come off the wire, so both RESP2 flat arrays and RESP3
nested pairs are understood.

Tags:
    timecapsule, store, redis, resp, sorted-set

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any, TypeVar

from timecapsule.stores.base import SortedSetStore, to_text

P = TypeVar("P")

__all__ = ["RedisCommandStore", "score_pairs"]


def score_pairs(reply: Sequence[Any] | None) -> list[tuple[str | bytes, float]]:
    """Normalize a ZPOPMIN reply to ``[(member, score), ...]``.

    Members are left as they came off the wire.

    RESP2 returns ``[member, score, member, score]``; RESP3 returns
    ``[[member, score], ...]``.
    """
    if not reply:
        return []

    if isinstance(reply[0], (list, tuple)):
        pairs = [(item[0], item[1]) for item in reply]
    else:
        pairs = list(zip(reply[::2], reply[1::2], strict=True))

    return [(member, float(to_text(score))) for member, score in pairs]


class RedisCommandStore(SortedSetStore[P]):
    """Store built on the command primitive of a RESP client.

    Example::

        client = redis.Redis.from_url("redis://localhost:6379/0")
        store = RedisCommandStore("jobs:delayed", client)
        capsule = store.dig()
    """

    name = "RedisCommand"

    def _zadd(self, score: int, member: str | bytes) -> None:
        self._client.execute_command("ZADD", self._key, score, member)

    def _zrangebyscore(self, min_score: int, max_score: int) -> Sequence[Any]:
        reply = self._client.execute_command(
            "ZRANGEBYSCORE", self._key, min_score, max_score, "LIMIT", 0, 1
        )
        return reply or []

    def _zpopmin(self, count: int) -> list[tuple[str | bytes, float]]:
        return score_pairs(self._client.execute_command("ZPOPMIN", self._key, count))

    def _zrem(self, member: str) -> int:
        return int(self._client.execute_command("ZREM", self._key, member) or 0)

    def _clear(self) -> None:
        self._client.execute_command("DEL", self._key)

    def _zcard(self) -> int:
        return int(self._client.execute_command("ZCARD", self._key) or 0)
