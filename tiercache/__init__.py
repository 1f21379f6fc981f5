"""In-memory expiring and tiered caches."""

from tiercache.events import EventEmitter
from tiercache.exceptions import (
    ConfigurationError,
    SchedulerError,
    TierCacheException,
    UnknownTierError,
)
from tiercache.expire import ExpireCache
from tiercache.expire_timeout import ExpireTimeoutCache
from tiercache.interfaces import AnyCache, AsyncCache, Cache
from tiercache.logging_map import TRACE, MapLogger
from tiercache.strategies import JsonTierStrategy
from tiercache.tiered import TierEntry, TieredCache, TierStatus, TierStrategy

__all__ = [
    "AnyCache",
    "AsyncCache",
    "Cache",
    "ConfigurationError",
    "EventEmitter",
    "ExpireCache",
    "ExpireTimeoutCache",
    "JsonTierStrategy",
    "MapLogger",
    "SchedulerError",
    "TRACE",
    "TierCacheException",
    "TierEntry",
    "TierStatus",
    "TierStrategy",
    "TieredCache",
    "UnknownTierError",
]
