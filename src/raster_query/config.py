"""
Raster Query — Configuration
=============================
Configuration bundle shared by the binder, evaluator, AOI masker and the
command-line tool.

Usage::

    from raster_query.config import QueryConfig

    cfg = QueryConfig(output_nodata=-9999.0, aoi_center=(39.1, -120.7), aoi_radius_m=5000)
"""

from __future__ import annotations

import math
from dataclasses import dataclass

# Fixed defaults carried over from the layer services.
DEFAULT_NODATA: float = -9999.0
DEFAULT_RESOLUTION: float = 30.0
DEFAULT_CRS: str = "EPSG:3857"
GEOGRAPHIC_CRS: str = "EPSG:4326"


@dataclass
class QueryConfig:
    """Configuration for one query evaluation.

    Attributes:
        output_nodata: Value written wherever the expression has no defined
            result. ``NaN`` by default.
        default_nodata: No-data sentinel assumed for raster files that declare
            none. Reprojection keeps each source's own no-data.
        fetch_attempts: Total attempts per layer fetch for transient failures.
        fetch_retry_delay: Seconds to wait between fetch attempts.
        bounds_hint: Opaque hint forwarded to the layer source with every
            fetch (the source decides which extent to return).
        rasterize_workers: Threads in the rasterization pool.
        max_pending_rasterizations: Upper bound on queued rasterization
            requests before submitters wait.
        chunk_rows: Rows per evaluation block.
        eval_workers: Threads used to evaluate row blocks. ``1`` evaluates
            blocks in the calling thread.
        aoi_center: Optional ``(lat, lon)`` of a circular area of interest.
        aoi_radius_m: Radius of the area of interest in metres.
    """

    output_nodata: float = math.nan
    default_nodata: float = DEFAULT_NODATA
    fetch_attempts: int = 2
    fetch_retry_delay: float = 0.5
    bounds_hint: str | None = "aoiBufferBounds"
    rasterize_workers: int = 4
    max_pending_rasterizations: int = 16
    chunk_rows: int = 256
    eval_workers: int = 1
    aoi_center: tuple[float, float] | None = None
    aoi_radius_m: float | None = None

    @property
    def has_aoi(self) -> bool:
        """``True`` when both the AOI centre and radius are set."""
        return self.aoi_center is not None and self.aoi_radius_m is not None
