"""
Cache types.
"""

from __future__ import annotations

import fnmatch
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol

# ═══════════════════════════════════════════════════════════════════════════════
# Tier Protocol — Backends Implement This
# ═══════════════════════════════════════════════════════════════════════════════


class Tier[T](Protocol):
    """
    Cache tier protocol.

    Implement this for shared backends (Redis, Memcached) when several
    server instances must see the same invalidations.

    Example:
        class RedisTier[T]:
            def __init__(self, client: Redis, ttl: int | None = None):
                self.client = client
                self.ttl = ttl

            @property
            def name(self) -> str:
                return "redis"

            async def get(self, key: str) -> T | None:
                data = await self.client.get(key)
                return pickle.loads(data) if data else None

            async def set(self, key: str, value: T) -> None:
                await self.client.set(key, pickle.dumps(value), ex=self.ttl)

            async def delete(self, key: str) -> bool:
                return await self.client.delete(key) > 0

            async def delete_pattern(self, pattern: str) -> int:
                keys = await self.client.keys(pattern)
                return await self.client.delete(*keys) if keys else 0
    """

    @property
    def name(self) -> str:
        """Tier name for debugging."""
        ...

    async def get(self, key: str) -> T | None:
        """Get value. Returns None on miss or expiry."""
        ...

    async def set(self, key: str, value: T) -> None:
        """Set value."""
        ...

    async def delete(self, key: str) -> bool:
        """Delete key. Returns True if existed."""
        ...

    async def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern. Returns count."""
        ...


# ═══════════════════════════════════════════════════════════════════════════════
# Local Tier — In-Memory LRU with TTL
# ═══════════════════════════════════════════════════════════════════════════════


class LocalTier[T]:
    """
    In-memory LRU tier with an optional time-to-live.

    The clock is injectable so tests can move time forward without sleeping.

    Example:
        tier = LocalTier[StockLevel](max_size=1000, ttl=timedelta(seconds=30))
    """

    def __init__(
        self,
        max_size: int = 1000,
        ttl: timedelta | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._max_size = max_size
        self._ttl = ttl.total_seconds() if ttl else None
        self._clock = clock
        self._entries: OrderedDict[str, tuple[T, float | None]] = OrderedDict()

    @property
    def name(self) -> str:
        return "local"

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        self._entries.move_to_end(key)
        return value

    async def set(self, key: str, value: T) -> None:
        expires_at = self._clock() + self._ttl if self._ttl is not None else None
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self._max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (value, expires_at)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        doomed = [k for k in self._entries if fnmatch.fnmatchcase(k, pattern)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Result
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class CacheResult[T]:
    """Cache lookup result with metadata."""

    value: T
    hit: bool
    tier: str | None


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Tier",
    "LocalTier",
    "CacheResult",
)
