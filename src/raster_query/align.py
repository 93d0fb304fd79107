"""
Raster Query — Reference Grid Selection and Alignment
======================================================
Puts every raster layer of a query onto one pixel grid:

1. :func:`select_reference_grid` picks the raster with the fewest pixels.
2. Rasters in another CRS are reprojected onto it
   (:func:`~raster_query.reproject.reproject_raster`).
3. :func:`align_to_reference` crops rasters that are off by at most one
   pixel and rejects anything else that does not line up.

After :func:`align_layers` every raster shares CRS, resolution, width,
height and origin with the reference.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Mapping

import numpy as np

from raster_query.grid import GridMetadata, LayerPayload, RasterGrid, crs_equal, raster_with_array
from raster_query.reproject import reproject_raster
from raster_query.shared.exceptions import BindError, RasterError
from raster_query.shared.validators import Validators

logger = logging.getLogger("rasterquery.align")

# Tolerance for resolution and origin comparisons, as a fraction of a pixel.
EPSILON: float = 1e-6

# Largest per-axis size difference that is cropped rather than rejected.
MAX_AUTO_CROP_PIXELS: int = 1


def select_reference_grid(layers: Mapping[str, LayerPayload]) -> tuple[str, RasterGrid]:
    """Return ``(name, raster)`` of the raster with the smallest pixel count.

    Ties go to the first raster in *layers*.

    Raises:
        BindError: If *layers* holds no raster.
    """
    best: tuple[str, RasterGrid] | None = None
    for name, payload in layers.items():
        if not isinstance(payload, RasterGrid):
            continue
        if best is None or payload.width * payload.height < best[1].width * best[1].height:
            best = (name, payload)
    if best is None:
        raise BindError("No raster layers found to establish a reference grid.")
    logger.debug("Reference grid: %s %r", best[0], best[1])
    return best


def is_geospatially_aligned(a: GridMetadata, b: GridMetadata) -> bool:
    """``True`` when *a* and *b* share CRS, resolution and origin."""
    if not crs_equal(a.crs, b.crs):
        return False
    for res_a, res_b in ((a.resolution.x, b.resolution.x), (a.resolution.y, b.resolution.y)):
        if not math.isclose(res_a, res_b, rel_tol=EPSILON):
            return False
    tol_x = EPSILON * b.resolution.x
    tol_y = EPSILON * b.resolution.y
    return abs(a.origin[0] - b.origin[0]) <= tol_x and abs(a.origin[1] - b.origin[1]) <= tol_y


def align_to_reference(raster: RasterGrid, reference: RasterGrid, name: str = "layer") -> RasterGrid:
    """Make *raster* pixel-for-pixel congruent with *reference*.

    *raster* must already be in the reference CRS. Identical grids are
    returned unchanged; a size mismatch of at most one pixel per axis is
    resolved by keeping the top-left block (padding with no-data where the
    raster is the smaller one) and adopting the reference bounds.

    Raises:
        BindError: If resolution or origin differ, or the size mismatch is
            larger than one pixel.
    """
    ref = reference.metadata
    if not is_geospatially_aligned(raster.metadata, ref):
        raise BindError(
            f"Layer '{name}' is not aligned with reference grid "
            f"({raster.metadata.crs} res=({raster.metadata.resolution.x:g},"
            f"{raster.metadata.resolution.y:g}) origin={raster.metadata.origin} vs "
            f"{ref.crs} res=({ref.resolution.x:g},{ref.resolution.y:g}) origin={ref.origin})."
        )
    if raster.width == reference.width and raster.height == reference.height:
        return raster

    dw = abs(raster.width - reference.width)
    dh = abs(raster.height - reference.height)
    if dw > MAX_AUTO_CROP_PIXELS or dh > MAX_AUTO_CROP_PIXELS:
        raise BindError(
            f"Layer '{name}' is {raster.width}x{raster.height} but the reference grid is "
            f"{reference.width}x{reference.height}: dimension mismatch too large to auto-crop."
        )

    logger.warning(
        "Auto-cropping %s from %dx%d to %dx%d",
        name, raster.width, raster.height, reference.width, reference.height,
    )
    rows = min(raster.height, reference.height)
    cols = min(raster.width, reference.width)
    out = np.full((reference.height, reference.width), raster.nodata, dtype=np.float32)
    out[:rows, :cols] = raster.as_2d()[:rows, :cols]
    metadata = replace(ref, nodata=raster.nodata, tags=dict(raster.metadata.tags))
    return raster_with_array(raster, out.reshape(-1), metadata=metadata)


def align_layers(
    layers: Mapping[str, LayerPayload],
    reference: RasterGrid | None = None,
) -> tuple[RasterGrid, dict[str, LayerPayload]]:
    """Reproject and align every raster in *layers* onto one grid.

    Args:
        layers: Layer name → payload. Vector payloads pass through untouched.
        reference: Grid to align onto; chosen with
            :func:`select_reference_grid` when omitted.

    Returns:
        ``(reference, aligned_layers)``.

    Raises:
        BindError: If there is no raster, a CRS is unknown, or a raster
            has malformed metadata or cannot be aligned.
    """
    if reference is None:
        _, reference = select_reference_grid(layers)

    aligned: dict[str, LayerPayload] = {}
    for name, payload in layers.items():
        if not isinstance(payload, RasterGrid):
            aligned[name] = payload
            continue
        raster = payload
        try:
            Validators.assert_grid_metadata_valid(raster.metadata)
        except RasterError as exc:
            raise BindError(f"Layer '{name}' has malformed grid metadata: {exc.message}") from exc
        if not crs_equal(raster.metadata.crs, reference.metadata.crs):
            logger.debug("Reprojecting %s from %s", name, raster.metadata.crs)
            raster = reproject_raster(raster, reference)
        aligned[name] = align_to_reference(raster, reference, name)
    return reference, aligned
