"""
Tests — Layer Cache
====================
Unit tests for :class:`~raster_query.cache.LayerCache`. Async methods are
driven with ``asyncio.run`` from plain synchronous tests.
"""

from __future__ import annotations

import asyncio

import pytest

from raster_query.cache import LayerCache
from raster_query.grid import LayerData, RasterGrid
from raster_query.shared.exceptions import FetchError


class CountingSource:
    """Layer source that counts fetches and can fail on demand."""

    def __init__(self, raster: RasterGrid, failures: int = 0, delay: float = 0.01) -> None:
        self.raster = raster
        self.failures = failures
        self.delay = delay
        self.calls: list[str] = []

    async def get(self, key: str, bounds_hint: str | None = None) -> LayerData:
        self.calls.append(key)
        await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise FetchError(key, "connection reset")
        return LayerData(self.raster, self.raster.metadata)


# ---------------------------------------------------------------------------
# In-flight deduplication
# ---------------------------------------------------------------------------


class TestDeduplication:
    def test_concurrent_gets_fetch_once(self, ramp: RasterGrid) -> None:
        source = CountingSource(ramp)
        cache = LayerCache(source)

        async def scenario() -> tuple[LayerData, LayerData]:
            return await asyncio.gather(cache.get("burn"), cache.get("burn"))

        first, second = asyncio.run(scenario())
        assert source.calls == ["burn"]
        assert first is second

    def test_different_keys_fetch_separately(self, ramp: RasterGrid) -> None:
        source = CountingSource(ramp)
        cache = LayerCache(source)

        async def scenario() -> None:
            await asyncio.gather(cache.get("a"), cache.get("b"))

        asyncio.run(scenario())
        assert sorted(source.calls) == ["a", "b"]

    def test_cached_value_served_without_fetch(self, ramp: RasterGrid) -> None:
        source = CountingSource(ramp)
        cache = LayerCache(source)

        async def scenario() -> None:
            await cache.get("burn")
            await cache.get("burn")

        asyncio.run(scenario())
        assert source.calls == ["burn"]
        assert cache.has("burn")

    def test_failure_reaches_every_waiter_and_is_not_cached(self, ramp: RasterGrid) -> None:
        source = CountingSource(ramp, failures=1)
        cache = LayerCache(source)

        async def scenario() -> list[object]:
            return await asyncio.gather(cache.get("burn"), cache.get("burn"), return_exceptions=True)

        results = asyncio.run(scenario())
        assert all(isinstance(r, FetchError) for r in results)
        assert source.calls == ["burn"]
        assert not cache.has("burn")

        asyncio.run(cache.get("burn"))
        assert source.calls == ["burn", "burn"]
        assert cache.has("burn")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_delete_and_clear(self, ramp: RasterGrid) -> None:
        cache = LayerCache(CountingSource(ramp, delay=0))
        asyncio.run(cache.get("a"))
        asyncio.run(cache.get("b"))
        assert len(cache) == 2
        assert cache.get_cached("a") is not None

        cache.delete("a")
        assert cache.get_cached("a") is None
        cache.clear()
        assert len(cache) == 0

    def test_closed_cache_refuses_requests(self, ramp: RasterGrid) -> None:
        cache = LayerCache(CountingSource(ramp, delay=0))
        cache.close()
        with pytest.raises(RuntimeError):
            asyncio.run(cache.get("a"))
