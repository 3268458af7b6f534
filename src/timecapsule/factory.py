"""
Factory functions that create stores and diggers from settings.

Features:
    - ``create_redis_client()``: redis-py client from ``redis_url``
    - ``create_store()``: RedisStore / RedisCommandStore by ``store_backend``
    - ``create_digger()``: Digger wired to a store, handler optional

Tags:
    timecapsule, configuration, factory-pattern, redis

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import redis

from timecapsule.digger import Digger, DiggerOptions, HandlerFunc
from timecapsule.errors import ConfigError
from timecapsule.settings import StoreBackend
from timecapsule.stores import RedisCommandStore, RedisStore, SortedSetStore

if TYPE_CHECKING:
    from timecapsule.settings import TimeCapsuleSettings


def create_redis_client(settings: TimeCapsuleSettings) -> redis.Redis:
    """Create a redis-py client for *settings.redis_url*.

    The caller owns the client; stores and diggers never close it.
    """
    return redis.from_url(settings.redis_url)


def create_store(
    settings: TimeCapsuleSettings,
    client: Any = None,
    payload_type: Any = Any,
) -> SortedSetStore[Any]:
    """Create a store adapter based on *settings.store_backend*.

    A client is created from *settings.redis_url* when none is passed.
    """
    if client is None:
        client = create_redis_client(settings)

    kwargs: dict[str, Any] = {
        "payload_type": payload_type,
        "retry_limit": settings.store_retry_limit,
        "retry_interval": settings.store_retry_interval_seconds,
    }

    match settings.store_backend:
        case StoreBackend.REDIS:
            return RedisStore(settings.sorted_set_key, client, **kwargs)
        case StoreBackend.REDIS_COMMAND:
            return RedisCommandStore(settings.sorted_set_key, client, **kwargs)

    raise ConfigError(f"unsupported store backend: {settings.store_backend!r}")


def create_digger(
    settings: TimeCapsuleSettings,
    store: SortedSetStore[Any] | None = None,
    handler: HandlerFunc[Any] | None = None,
) -> Digger[Any]:
    """Create a digger polling *store* (or a store built from settings).

    The digger is returned unstarted.
    """
    if store is None:
        store = create_store(settings)

    digger: Digger[Any] = Digger(
        store,
        settings.dig_interval,
        DiggerOptions(
            retry_limit=settings.retry_limit,
            retry_interval=settings.retry_interval_seconds,
        ),
        operation_timeout=settings.operation_timeout_seconds,
        stop_timeout=settings.stop_timeout_seconds,
    )
    if handler is not None:
        digger.set_handler(handler)
    return digger


__all__ = ["create_digger", "create_redis_client", "create_store"]
