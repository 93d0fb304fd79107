"""
Raster Query — Area of Interest Masking
========================================
Clips an evaluated raster to a circle given as a WGS-84 centre and a
radius in metres.

The centre is projected into the raster CRS and every pixel centre further
than the radius becomes no-data. In Web Mercator the map scale grows with
``1 / cos(latitude)``, so the radius is stretched by that factor; in a
geographic CRS degree offsets are converted to metres first.
"""

from __future__ import annotations

import logging
import math

import numpy as np

from raster_query.config import GEOGRAPHIC_CRS
from raster_query.evaluator import EvaluationResult
from raster_query.grid import RasterGrid, crs_equal, get_transformer, parse_crs, pixel_centres, raster_with_array
from raster_query.shared.exceptions import InputValidationError

logger = logging.getLogger("rasterquery.aoi")

WEB_MERCATOR_CRS = "EPSG:3857"

# Metres per degree on WGS-84, used for geographic rasters.
METRES_PER_DEGREE_LAT = 110_574.0
METRES_PER_DEGREE_LON = 111_320.0


def mask_to_circle(
    raster: RasterGrid | EvaluationResult,
    center: tuple[float, float],
    radius_m: float,
) -> EvaluationResult:
    """Set every pixel outside the circle to no-data.

    Args:
        raster: Raster (or evaluation result) to clip.
        center: ``(lat, lon)`` of the circle centre in EPSG:4326.
        radius_m: Radius in metres.

    Returns:
        A new :class:`EvaluationResult`; pixels inside the circle are
        unchanged and stats are recomputed without the masked pixels.

    Raises:
        InputValidationError: If *radius_m* is negative or the centre is
            not a valid latitude / longitude.
    """
    grid = raster.raster if isinstance(raster, EvaluationResult) else raster
    lat, lon = center
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        raise InputValidationError(f"AOI centre ({lat}, {lon}) is not a valid latitude/longitude.")
    if radius_m < 0:
        raise InputValidationError(f"AOI radius must be non-negative, got {radius_m}.")

    meta = grid.metadata
    cx, cy = get_transformer(GEOGRAPHIC_CRS, meta.crs).transform(lon, lat)
    xs, ys = pixel_centres(meta)
    dx = xs - cx
    dy = ys - cy

    radius = float(radius_m)
    if crs_equal(meta.crs, WEB_MERCATOR_CRS):
        radius /= math.cos(math.radians(lat))
    elif parse_crs(meta.crs).is_geographic:
        dx = dx * METRES_PER_DEGREE_LON * math.cos(math.radians(lat))
        dy = dy * METRES_PER_DEGREE_LAT

    outside = (dx * dx + dy * dy > radius * radius).reshape(-1)
    out = grid.array.copy()
    out[outside] = grid.nodata
    masked = raster_with_array(grid, out)

    logger.debug(
        "AOI mask (%.5f, %.5f) r=%.1fm: %d of %d pixels outside",
        lat, lon, radius_m, int(outside.sum()), outside.size,
    )
    return EvaluationResult(masked, masked.metadata)
