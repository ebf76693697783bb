from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest
from combinators import lift as L

from tally import Error, Ok
from tally import cache as C


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class BrokenTier:
    name = "broken"

    async def get(self, key):
        raise ConnectionError("down")

    async def set(self, key, value):
        raise ConnectionError("down")

    async def delete(self, key):
        raise ConnectionError("down")

    async def delete_pattern(self, pattern):
        raise ConnectionError("down")


async def read(levels, key: str):
    return await levels.get(key)


def counting_fetch(calls: list[str]):
    def fetch(key: str):
        async def load() -> str:
            calls.append(key)
            return f"value:{key}"

        return L.catching_async(load, on_error=lambda e: str(e))

    return fetch


def test_local_tier_expires_entries(run) -> None:
    clock = FakeClock()
    tier = C.LocalTier[str](ttl=timedelta(seconds=30), clock=clock)

    async def main() -> None:
        await tier.set("k", "v")
        clock.now = 29.9
        assert await tier.get("k") == "v"
        clock.now = 30.0
        assert await tier.get("k") is None
        assert len(tier) == 0

    run(main)


def test_local_tier_evicts_least_recently_used(run) -> None:
    tier = C.LocalTier[int](max_size=2)

    async def main() -> None:
        await tier.set("a", 1)
        await tier.set("b", 2)
        await tier.get("a")
        await tier.set("c", 3)
        assert await tier.get("b") is None
        assert await tier.get("a") == 1
        assert await tier.get("c") == 3

    run(main)


def test_local_tier_rejects_non_positive_size() -> None:
    with pytest.raises(ValueError):
        C.LocalTier(max_size=0)


def test_delete_pattern(run) -> None:
    tier = C.LocalTier[int]()

    async def main() -> None:
        await tier.set("promo:a", 1)
        await tier.set("promo:b", 2)
        await tier.set("stock:a", 3)
        assert await tier.delete_pattern("promo:*") == 2
        assert await tier.get("stock:a") == 3

    run(main)


def test_executor_fetches_once_then_hits(run) -> None:
    calls: list[str] = []
    levels = C.cache(lambda k: f"key:{k}", counting_fetch(calls)).tier(C.LocalTier[str]()).build()

    async def main() -> None:
        match await levels.get("x"):
            case Ok(first):
                assert first.value == "value:x"
                assert not first.hit
            case Error(e):
                pytest.fail(str(e))

        match await levels.get("x"):
            case Ok(second):
                assert second.hit
                assert second.tier == "local"
            case Error(e):
                pytest.fail(str(e))

        assert calls == ["x"]

    run(main)


def test_invalidate_forces_refetch(run) -> None:
    calls: list[str] = []
    levels = C.cache(lambda k: k, counting_fetch(calls)).tier(C.LocalTier[str]()).build()

    async def main() -> None:
        await levels.get("x")
        assert await levels.invalidate("x") is True
        assert await levels.invalidate("x") is False
        await levels.get("x")
        assert calls == ["x", "x"]

    run(main)


def test_fetch_errors_are_returned_and_not_cached(run) -> None:
    attempts: list[int] = []

    def fetch(key: str):
        async def load() -> str:
            attempts.append(1)
            raise RuntimeError("db down")

        return L.catching_async(load, on_error=lambda e: str(e))

    levels = C.cache(lambda k: k, fetch).tier(C.LocalTier[str]()).build()

    async def main() -> None:
        match await levels.get("x"):
            case Error(e):
                assert e == "db down"
            case Ok(_):
                pytest.fail("expected an error")
        await levels.get("x")
        assert len(attempts) == 2

    run(main)


def test_broken_tier_falls_through_to_fetch(run) -> None:
    calls: list[str] = []
    levels = C.cache(lambda k: k, counting_fetch(calls)).tier(BrokenTier()).build()

    async def main() -> None:
        match await levels.get("x"):
            case Ok(result):
                assert result.value == "value:x"
            case Error(e):
                pytest.fail(str(e))
        assert await levels.invalidate("x") is False

    run(main)


def test_value_invalidated_during_fetch_is_not_cached(run) -> None:
    calls: list[str] = []
    started = asyncio.Event()
    release = asyncio.Event()

    def fetch(key: str):
        async def load() -> str:
            calls.append(key)
            if len(calls) == 1:
                started.set()
                await release.wait()
                return "stale"
            return "fresh"

        return L.catching_async(load, on_error=lambda e: str(e))

    levels = C.cache(lambda k: k, fetch).tier(C.LocalTier[str]()).build()

    async def main() -> None:
        reader = asyncio.create_task(read(levels, "x"))
        await started.wait()
        await levels.invalidate("x")  # a write committed while the read was in flight
        release.set()

        match await reader:
            case Ok(first):
                assert first.value == "stale"
            case Error(e):
                pytest.fail(str(e))

        match await levels.get("x"):
            case Ok(second):
                assert second.value == "fresh"
                assert not second.hit
            case Error(e):
                pytest.fail(str(e))

    run(main)


def test_pattern_invalidation_during_fetch_skips_the_fill(run) -> None:
    calls: list[str] = []
    started = asyncio.Event()
    release = asyncio.Event()

    def fetch(key: str):
        async def load() -> str:
            calls.append(key)
            started.set()
            await release.wait()
            return f"value:{key}"

        return L.catching_async(load, on_error=lambda e: str(e))

    levels = C.cache(lambda k: f"promo:{k}", fetch).tier(C.LocalTier[str]()).build()

    async def main() -> None:
        reader = asyncio.create_task(read(levels, "a"))
        await started.wait()
        await levels.invalidate_pattern("promo:*")
        release.set()
        await reader

        await levels.get("a")
        assert calls == ["a", "a"]

    run(main)
