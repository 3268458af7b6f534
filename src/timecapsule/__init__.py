"""
timecapsule - delayed tasks over a sorted set.

Bury a payload with a due time; any number of diggers poll the set, dig
up due capsules, hand them to a handler and destroy them.

    store = RedisStore("mailer:delayed", redis.Redis())
    digger = Digger(store, timedelta(milliseconds=250))
    digger.set_handler(lambda d, capsule: send(capsule.payload))
    digger.start()
    digger.bury_for({"to": "a@b.c"}, timedelta(minutes=5))
"""

__version__ = "0.1.0"

from timecapsule.capsule import Capsule, CapsuleCodec, unix_millis
from timecapsule.digger import (
    Digger,
    DiggerOptions,
    DiggerStats,
    HandlerFunc,
    default_digger_options,
    merge_digger_options,
)
from timecapsule.errors import (
    CapsuleDecodeError,
    ConfigError,
    DestroyExhaustedError,
    DiggerError,
    ErrorCategory,
    OperationTimeoutError,
    RequeueExhaustedError,
    StoreError,
    StoreTransportError,
    TimeCapsuleError,
)
from timecapsule.logging import CapsuleLogger, as_capsule_logger, configure_logging, get_logger
from timecapsule.stores import RedisCommandStore, RedisStore, SortedSetStore, Store

__all__ = [
    "__version__",
    # capsule
    "Capsule",
    "CapsuleCodec",
    "unix_millis",
    # stores
    "Store",
    "SortedSetStore",
    "RedisStore",
    "RedisCommandStore",
    # digger
    "Digger",
    "DiggerOptions",
    "DiggerStats",
    "HandlerFunc",
    "default_digger_options",
    "merge_digger_options",
    # errors
    "TimeCapsuleError",
    "ErrorCategory",
    "StoreError",
    "StoreTransportError",
    "RequeueExhaustedError",
    "DestroyExhaustedError",
    "CapsuleDecodeError",
    "OperationTimeoutError",
    "DiggerError",
    "ConfigError",
    # logging
    "CapsuleLogger",
    "as_capsule_logger",
    "configure_logging",
    "get_logger",
]
