"""
Raster Query — Raster Reprojection
===================================
Nearest-neighbour reprojection of a single-band raster onto a target grid.

For every target pixel centre the target-CRS coordinate is transformed
into the source CRS with :mod:`pyproj`, and the source pixel is found by
floor division on the source origin and resolution. Target pixels that fall
outside the source, or land on source no-data, receive the output no-data
value.
"""

from __future__ import annotations

import logging
import time

import numpy as np

from raster_query.grid import (
    GridMetadata,
    RasterGrid,
    crs_equal,
    get_transformer,
    is_nodata,
    pixel_centres,
    raster_with_array,
)
from raster_query.shared.exceptions import BindError, CRSError

logger = logging.getLogger("rasterquery.reproject")


def reproject_raster(
    raster: RasterGrid,
    target: GridMetadata | RasterGrid,
    nodata: float | None = None,
) -> RasterGrid:
    """Resample *raster* onto the *target* grid.

    Args:
        raster: Source raster.
        target: Grid (or raster whose grid) to resample onto.
        nodata: Output no-data value; defaults to the source's.

    Returns:
        *raster* itself when both CRSs are the same, otherwise a new raster
        with the target's width, height, origin, resolution and CRS.

    Raises:
        BindError: If either CRS has no definition.
    """
    grid = target.metadata if isinstance(target, RasterGrid) else target
    source = raster.metadata
    try:
        if crs_equal(source.crs, grid.crs):
            return raster
        transformer = get_transformer(grid.crs, source.crs)
    except CRSError as exc:
        raise BindError(
            f"CRS definitions missing for reprojection {source.crs} -> {grid.crs}: {exc.message}"
        ) from exc

    t0 = time.perf_counter()
    out_nodata = raster.nodata if nodata is None else nodata

    xs, ys = pixel_centres(grid)
    src_x, src_y = transformer.transform(xs.reshape(-1), ys.reshape(-1))
    src_x = np.asarray(src_x, dtype=np.float64)
    src_y = np.asarray(src_y, dtype=np.float64)

    origin_x, origin_y = source.origin
    with np.errstate(invalid="ignore"):
        col_f = np.floor((src_x - origin_x) / source.resolution.x)
        row_f = np.floor((origin_y - src_y) / source.resolution.y)
    in_bounds = (
        np.isfinite(col_f) & np.isfinite(row_f)
        & (col_f >= 0) & (col_f < raster.width)
        & (row_f >= 0) & (row_f < raster.height)
    )

    cols = np.where(in_bounds, col_f, 0).astype(np.int64)
    rows = np.where(in_bounds, row_f, 0).astype(np.int64)
    sampled = raster.array[rows * raster.width + cols]
    valid = in_bounds & ~is_nodata(sampled, raster.nodata)
    out = np.where(valid, sampled, np.float32(out_nodata)).astype(np.float32)

    if valid.any():
        target_cols = np.tile(np.arange(grid.width), grid.height)
        target_rows = np.repeat(np.arange(grid.height), grid.width)
        dx = cols[valid] - target_cols[valid]
        dy = rows[valid] - target_rows[valid]
        logger.debug(
            "Reprojection offsets: x [%d, %d], y [%d, %d]",
            dx.min(), dx.max(), dy.min(), dy.max(),
        )
    logger.debug(
        "Reprojected %s -> %s (%dx%d -> %dx%d): %d valid samples in %.3fs",
        source.crs, grid.crs, raster.width, raster.height, grid.width, grid.height,
        int(valid.sum()), time.perf_counter() - t0,
    )
    return raster_with_array(raster, out, nodata=out_nodata, metadata=grid)
