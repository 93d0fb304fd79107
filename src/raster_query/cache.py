"""
Raster Query — Layer Cache
===========================
Caches :class:`~raster_query.grid.LayerData` by key in front of a
:class:`~raster_query.data_source.LayerSource` and guarantees at most one
in-flight fetch per key: concurrent callers for the same key await the same
task.

Usage::

    cache = LayerCache(InMemoryLayerSource())
    layer = await cache.get("burn_probability")
    cache.clear()
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from raster_query.grid import LayerData

if TYPE_CHECKING:
    from raster_query.data_source import LayerSource

logger = logging.getLogger("rasterquery.cache")


class LayerCache:
    """Per-key cache with in-flight fetch deduplication.

    Args:
        source: Where cache misses are fetched from.
    """

    def __init__(self, source: LayerSource) -> None:
        self.source = source
        self._entries: dict[str, LayerData] = {}
        self._in_flight: dict[str, asyncio.Task[LayerData]] = {}
        self._closed = False
        self.fetch_count = 0

    async def get(self, key: str, bounds_hint: str | None = None) -> LayerData:
        """Return the layer for *key*, fetching it if needed.

        Raises:
            RuntimeError: If the cache has been closed.
            FetchError: Propagated from the source to every waiter.
        """
        if self._closed:
            raise RuntimeError("LayerCache is closed")

        cached = self._entries.get(key)
        if cached is not None:
            logger.debug("Cache hit: %s", key)
            return cached

        task = self._in_flight.get(key)
        if task is None:
            logger.debug("Cache miss: %s", key)
            task = asyncio.ensure_future(self._fetch(key, bounds_hint))
            self._in_flight[key] = task
        else:
            logger.debug("Awaiting in-flight fetch: %s", key)
        # shield so one cancelled waiter does not cancel the shared fetch
        return await asyncio.shield(task)

    async def _fetch(self, key: str, bounds_hint: str | None) -> LayerData:
        self.fetch_count += 1
        try:
            data = await self.source.get(key, bounds_hint)
        finally:
            self._in_flight.pop(key, None)
        self._entries[key] = data
        return data

    def has(self, key: str) -> bool:
        return key in self._entries

    def get_cached(self, key: str) -> LayerData | None:
        return self._entries.get(key)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every cached entry. In-flight fetches are left to finish."""
        self._entries.clear()

    def close(self) -> None:
        """Cancel in-flight fetches and refuse further requests."""
        for task in self._in_flight.values():
            task.cancel()
        self._in_flight.clear()
        self._entries.clear()
        self._closed = True

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(entries={len(self._entries)}, "
            f"in_flight={len(self._in_flight)})"
        )
