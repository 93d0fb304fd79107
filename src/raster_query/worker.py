"""
Raster Query — Rasterization Worker Pool
=========================================
Runs CPU-bound rasterizations off the event loop on a
:class:`~concurrent.futures.ThreadPoolExecutor`. Every submission gets a
monotonically increasing request id, results are matched back to their
request by id, and a semaphore bounds how many requests may be pending at
once.

Usage::

    async with RasterizeWorkerPool(max_workers=4) as pool:
        raster = await pool.submit("mask", features, grid)
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from concurrent.futures import Future, ThreadPoolExecutor

import geopandas as gpd

from raster_query.grid import GridMetadata, RasterGrid, VectorFeatureSet
from raster_query.rasterize import rasterize
from raster_query.shared.exceptions import QueryCancelledError

logger = logging.getLogger("rasterquery.worker")


class RasterizeWorkerPool:
    """Bounded, cancellable pool of rasterization workers.

    Args:
        max_workers: Worker threads.
        max_pending: Requests allowed in flight before :meth:`submit` waits.
    """

    def __init__(self, max_workers: int = 4, max_pending: int = 16) -> None:
        if max_workers < 1 or max_pending < 1:
            raise ValueError("max_workers and max_pending must be at least 1")
        self.max_workers = max_workers
        self.max_pending = max_pending
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rasterize"
        )
        self._ids = itertools.count(1)
        self._pending: dict[int, Future[RasterGrid]] = {}
        self._cancelled: set[int] = set()
        self._semaphore: asyncio.Semaphore | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    def _bound(self) -> asyncio.Semaphore:
        # one semaphore per event loop
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_pending)
            self._loop = loop
        return self._semaphore

    async def submit(
        self,
        fn: str,
        features: VectorFeatureSet | gpd.GeoDataFrame,
        grid: GridMetadata,
        attribute_field: str | None = None,
        buffer_distance: float | None = None,
    ) -> RasterGrid:
        """Rasterize on a worker thread and return the result.

        Raises:
            RasterizeError: Propagated from :func:`~raster_query.rasterize.rasterize`.
            QueryCancelledError: If the request was cancelled via :meth:`cancel`.
            RuntimeError: If the pool is closed.
        """
        if self._closed:
            raise RuntimeError("RasterizeWorkerPool is closed")

        async with self._bound():
            request_id = next(self._ids)
            future = self._executor.submit(
                rasterize, fn, features, grid, attribute_field, buffer_distance
            )
            self._pending[request_id] = future
            logger.debug("Request %d: %s queued (%d pending)", request_id, fn, len(self._pending))
            try:
                return await asyncio.wrap_future(future)
            except asyncio.CancelledError:
                if request_id in self._cancelled:
                    raise QueryCancelledError(
                        f"Rasterization request {request_id} ({fn}) was cancelled."
                    ) from None
                raise
            finally:
                self._pending.pop(request_id, None)
                self._cancelled.discard(request_id)
                logger.debug("Request %d: %s settled", request_id, fn)

    def cancel(self) -> int:
        """Cancel every request that has not started yet; return how many."""
        cancelled = 0
        for request_id, future in list(self._pending.items()):
            if future.cancel():
                self._cancelled.add(request_id)
                cancelled += 1
        if cancelled:
            logger.debug("Cancelled %d pending rasterization request(s)", cancelled)
        return cancelled

    def close(self) -> None:
        """Cancel pending work and shut the executor down."""
        if self._closed:
            return
        self.cancel()
        self._executor.shutdown(wait=True, cancel_futures=True)
        self._closed = True

    async def __aenter__(self) -> RasterizeWorkerPool:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    def __enter__(self) -> RasterizeWorkerPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(max_workers={self.max_workers}, "
            f"max_pending={self.max_pending}, pending={self.pending})"
        )
