"""
Cache builder — fluent API.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field

import structlog
from kungfu import LazyCoroResult, Result, Ok, Error

from tally.cache._types import Tier, CacheResult

logger = structlog.get_logger(__name__)

# ═══════════════════════════════════════════════════════════════════════════════
# Key Function Type
# ═══════════════════════════════════════════════════════════════════════════════

type KeyFn[K] = Callable[[K], str]


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Builder
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(slots=True, frozen=True)
class Cache[K, T, E]:
    """
    Fluent cache builder.

    Type parameters:
        K: Key input type
        T: Value type
        E: Error type from fetch

    Example:
        stock_cache = (
            cache(stock_key, fetch_level)
            .tier(LocalTier(ttl=timedelta(seconds=30)))
            .build()
        )
    """

    _key_fn: KeyFn[K]
    _fetch: Callable[[K], LazyCoroResult[T, E]]
    _tiers: tuple[Tier[T], ...]

    def tier(self, t: Tier[T]) -> Cache[K, T, E]:
        """Add cache tier. Tiers are read in the order they are added."""
        return Cache(
            _key_fn=self._key_fn,
            _fetch=self._fetch,
            _tiers=(*self._tiers, t),
        )

    def build(self) -> CacheExecutor[K, T, E]:
        """Build executable cache."""
        return CacheExecutor(
            key_fn=self._key_fn,
            tiers=self._tiers,
            fetch=self._fetch,
        )


# ═══════════════════════════════════════════════════════════════════════════════
# Cache Executor
# ═══════════════════════════════════════════════════════════════════════════════


class _Generations:
    """
    Invalidation counters: one per invalidated key, plus an epoch that every
    pattern invalidation advances.

    A fetch snapshots (epoch, key generation) before it starts; a different
    snapshot afterwards means the fetched value may already be stale.
    """

    __slots__ = ("epoch", "keys")

    def __init__(self) -> None:
        self.epoch = 0
        self.keys: dict[str, int] = {}

    def snapshot(self, cache_key: str) -> tuple[int, int]:
        return self.epoch, self.keys.get(cache_key, 0)

    def bump(self, cache_key: str) -> None:
        self.keys[cache_key] = self.keys.get(cache_key, 0) + 1

    def bump_all(self) -> None:
        self.epoch += 1


@dataclass(slots=True, frozen=True)
class CacheExecutor[K, T, E]:
    """
    Compiled cache executor.

    A failing tier never fails the lookup: the error is logged and the next
    tier (then the fetch) is tried. Fetch errors are returned untouched and
    never cached, and neither is a value whose key was invalidated while it
    was being fetched.
    """

    key_fn: KeyFn[K]
    tiers: tuple[Tier[T], ...]
    fetch: Callable[[K], LazyCoroResult[T, E]]
    _generations: _Generations = field(default_factory=_Generations)

    def get(self, key: K) -> LazyCoroResult[CacheResult[T], E]:
        """
        Get value from cache.

        Tries tiers in order, then falls back to fetch.
        On fetch success, populates all tiers.
        """
        cache_key = self.key_fn(key)
        tiers = self.tiers
        fetch_fn = self.fetch
        generations = self._generations

        async def execute() -> Result[CacheResult[T], E]:
            for t in tiers:
                try:
                    value = await t.get(cache_key)
                except Exception as exc:
                    logger.warning("Cache tier read failed", tier=t.name, key=cache_key, error=str(exc))
                    continue
                if value is not None:
                    return Ok(CacheResult(value=value, hit=True, tier=t.name))

            before = generations.snapshot(cache_key)
            result = await fetch_fn(key)
            match result:
                case Ok(value) if generations.snapshot(cache_key) != before:
                    logger.debug("Cache fill skipped, invalidated during fetch", key=cache_key)
                    return Ok(CacheResult(value=value, hit=False, tier=None))
                case Ok(value):
                    for t in tiers:
                        try:
                            await t.set(cache_key, value)
                        except Exception as exc:
                            logger.warning("Cache tier write failed", tier=t.name, key=cache_key, error=str(exc))
                    return Ok(CacheResult(value=value, hit=False, tier=None))
                case Error(e):
                    return Error(e)

        return LazyCoroResult(execute)

    async def invalidate(self, key: K) -> bool:
        """Invalidate key in all tiers. Returns True if any tier held it."""
        cache_key = self.key_fn(key)
        self._generations.bump(cache_key)
        deleted = False
        for t in self.tiers:
            try:
                if await t.delete(cache_key):
                    deleted = True
            except Exception as exc:
                logger.error("Cache invalidation failed", tier=t.name, key=cache_key, error=str(exc))
        return deleted

    async def invalidate_pattern(self, pattern: str) -> int:
        """Invalidate keys matching a glob pattern in all tiers."""
        self._generations.bump_all()
        total = 0
        for t in self.tiers:
            try:
                total += await t.delete_pattern(pattern)
            except Exception as exc:
                logger.error("Cache invalidation failed", tier=t.name, pattern=pattern, error=str(exc))
        return total


# ═══════════════════════════════════════════════════════════════════════════════
# cache() — Entry Point
# ═══════════════════════════════════════════════════════════════════════════════


def cache[K, T, E](
    key: KeyFn[K],
    fetch: Callable[[K], LazyCoroResult[T, E]],
) -> Cache[K, T, E]:
    """
    Create cache builder with key function and fetch.

    Example:
        from tally import cache as C

        def promo_key(code: str) -> str:
            return f"promo:{code.lower()}"

        promo_cache = (
            C.cache(promo_key, fetch_promo)
            .tier(C.LocalTier(max_size=100))
            .build()
        )

        result = await promo_cache.get("SUMMER10")
    """
    return Cache(
        _key_fn=key,
        _fetch=fetch,
        _tiers=(),
    )


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = ("Cache", "CacheExecutor", "cache")
