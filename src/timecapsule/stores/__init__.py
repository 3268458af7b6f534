"""Store adapters for timecapsule.

Backends:
    • RedisStore       : redis-py typed command API (default)
    • RedisCommandStore: raw RESP commands via ``execute_command``

Both run the same bury / dig / destroy state machine from
:class:`~timecapsule.stores.base.SortedSetStore`.
"""

from __future__ import annotations

from .base import SortedSetStore
from .command import RedisCommandStore
from .protocol import Store
from .redis import RedisStore

__all__ = [
    "Store",
    "SortedSetStore",
    "RedisStore",
    "RedisCommandStore",
]
