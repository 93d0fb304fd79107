"""
Raster Query — GeoTIFF Export
==============================
Writes an evaluation result to a single-band float32 GeoTIFF.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path

import rasterio
from rasterio.errors import RasterioError
from rasterio.transform import from_origin

from raster_query.evaluator import EvaluationResult
from raster_query.grid import RasterGrid
from raster_query.shared.exceptions import OutputWriteError

logger = logging.getLogger("rasterquery.export")


def write_geotiff(result: EvaluationResult | RasterGrid, path: str | Path) -> Path:
    """Write *result* to *path* as a deflate-compressed GeoTIFF.

    The affine transform is built from the grid origin and resolution; the
    expression that produced the raster (if any) is stored as a tag.

    Raises:
        OutputWriteError: If the file cannot be written.
    """
    raster = result.raster if isinstance(result, EvaluationResult) else result
    meta = raster.metadata
    path = Path(path)

    profile = {
        "driver": "GTiff",
        "height": raster.height,
        "width": raster.width,
        "count": 1,
        "dtype": "float32",
        "crs": meta.crs,
        "transform": from_origin(meta.origin[0], meta.origin[1], meta.resolution.x, meta.resolution.y),
        "nodata": raster.nodata,
        "compress": "deflate",
    }
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(raster.as_2d(), 1)
            if meta.tags:
                dst.update_tags(**meta.tags)
    except (OSError, RasterioError) as exc:
        raise OutputWriteError(str(path), str(exc)) from exc

    valid = meta.stats.valid_count if meta.stats else "?"
    nodata = "nan" if math.isnan(raster.nodata) else f"{raster.nodata:g}"
    logger.info("Wrote %s (%dx%d, nodata=%s, %s valid pixels)", path, raster.width, raster.height, nodata, valid)
    return path
