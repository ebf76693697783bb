"""
Cache — explicit TTL caches with invalidate-on-write.

    from tally import cache as C

    tier = C.LocalTier(max_size=1000, ttl=timedelta(seconds=30))
    levels = C.cache(key_fn, fetch_fn).tier(tier).build()

    result = await levels.get(stock_key)
    await levels.invalidate(stock_key)   # after every write to that key
"""

from __future__ import annotations

from tally.cache._types import (
    Tier,
    LocalTier,
    CacheResult,
)
from tally.cache._builder import cache, Cache, CacheExecutor

__all__ = (
    "Tier",
    "LocalTier",
    "CacheResult",
    "cache",
    "Cache",
    "CacheExecutor",
)
