"""
Raster Query — Grid Data Model
===============================
Containers for single-band rasters, the metadata describing their pixel
grid, vector feature sets and layer cache entries.

Classes:
    Resolution        Pixel size in CRS units.
    Projection        Source CRS plus the top-left grid origin.
    GridStats         Summary statistics over valid pixels.
    GridMetadata      Full description of a pixel grid.
    RasterGrid        Flat float32 pixel buffer + its grid metadata.
    VectorFeatureSet  GeoDataFrame of features + the grid they rasterize onto.
    LayerData         ``{data, metadata}`` pair returned by layer sources.

Rasters are stored row-major in a 1-D ``float32`` array of length
``width * height``; :meth:`RasterGrid.as_2d` gives a ``(height, width)`` view.
No-data and ``NaN`` are equivalent "absent" states everywhere.
"""

from __future__ import annotations

import functools
import math
from dataclasses import dataclass, field, replace
from typing import Any, Union

import geopandas as gpd
import numpy as np
import numpy.typing as npt
from pyproj import CRS, Transformer
from pyproj.exceptions import CRSError as ProjCRSError

from raster_query.config import DEFAULT_CRS, DEFAULT_NODATA, DEFAULT_RESOLUTION, GEOGRAPHIC_CRS
from raster_query.shared.exceptions import CRSError, RasterError

Bounds = tuple[float, float, float, float]


# ---------------------------------------------------------------------------
# Metadata data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Resolution:
    """Pixel size in CRS units along x and y (both positive)."""

    x: float
    y: float


@dataclass(frozen=True)
class Projection:
    """Grid CRS and the ``(x, y)`` coordinate of its top-left corner."""

    source_crs: str
    origin: tuple[float, float]


@dataclass(frozen=True)
class GridStats:
    """Statistics over the valid (finite, non-no-data) pixels of a raster."""

    min: float
    max: float
    mean: float
    total_pixels: int
    valid_count: int
    zero_count: int
    nodata_count: int


@dataclass(frozen=True)
class GridMetadata:
    """Description of a pixel grid.

    Attributes:
        width: Columns.
        height: Rows.
        nodata: No-data sentinel for rasters on this grid.
        resolution: Pixel size in CRS units.
        projection: CRS and top-left origin.
        raw_bounds: ``(min_x, min_y, max_x, max_y)`` in the grid CRS.
        geographic_bounds: ``(west, south, east, north)`` in EPSG:4326.
        stats: Statistics of the raster carrying this metadata, if computed.
        tags: Free-form annotations (e.g. the expression that produced it).
    """

    width: int
    height: int
    nodata: float
    resolution: Resolution
    projection: Projection
    raw_bounds: Bounds
    geographic_bounds: Bounds
    stats: GridStats | None = None
    tags: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def crs(self) -> str:
        return self.projection.source_crs

    @property
    def origin(self) -> tuple[float, float]:
        return self.projection.origin

    def with_stats(self, stats: GridStats) -> GridMetadata:
        return replace(self, stats=stats)


# ---------------------------------------------------------------------------
# Raster / vector containers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class RasterGrid:
    """A single-band raster on a described pixel grid.

    Attributes:
        array: Row-major float32 pixel values, length ``width * height``.
        width: Columns.
        height: Rows.
        nodata: No-data sentinel (``NaN`` is always treated as no-data too).
        metadata: Grid description.
    """

    array: npt.NDArray[np.float32]
    width: int
    height: int
    nodata: float
    metadata: GridMetadata

    def __post_init__(self) -> None:
        if self.array.ndim != 1 or self.array.size != self.width * self.height:
            raise RasterError(
                f"Raster buffer holds {self.array.size} values but the grid is "
                f"{self.width}x{self.height}."
            )

    def as_2d(self) -> npt.NDArray[np.float32]:
        """Return a ``(height, width)`` view of :attr:`array`."""
        return self.array.reshape(self.height, self.width)

    def nodata_mask(self) -> npt.NDArray[np.bool_]:
        """Boolean mask of pixels holding no-data or ``NaN``."""
        return is_nodata(self.array, self.nodata)

    def __repr__(self) -> str:
        return (
            f"<RasterGrid {self.width}x{self.height} crs={self.metadata.crs} "
            f"res=({self.metadata.resolution.x:g},{self.metadata.resolution.y:g})>"
        )


@dataclass(frozen=True, eq=False)
class VectorFeatureSet:
    """A vector layer: features plus the grid description it came with.

    ``features`` is a GeoDataFrame; a frame without a CRS is taken to be
    EPSG:4326 (GeoJSON convention).
    """

    features: gpd.GeoDataFrame
    metadata: GridMetadata | None = None

    def __len__(self) -> int:
        return len(self.features)

    def __repr__(self) -> str:
        return f"<VectorFeatureSet features={len(self.features)} crs={self.features.crs}>"


LayerPayload = Union[RasterGrid, VectorFeatureSet]


@dataclass(frozen=True, eq=False)
class LayerData:
    """Cache entry: the layer payload and its grid metadata."""

    data: LayerPayload
    metadata: GridMetadata | None

    @property
    def is_raster(self) -> bool:
        return isinstance(self.data, RasterGrid)


# ---------------------------------------------------------------------------
# CRS helpers
# ---------------------------------------------------------------------------


@functools.lru_cache(maxsize=64)
def parse_crs(crs_string: str) -> CRS:
    """Parse *crs_string* with pyproj, caching the result.

    Raises:
        CRSError: If pyproj has no definition for it.
    """
    try:
        return CRS.from_user_input(crs_string)
    except ProjCRSError as exc:
        raise CRSError(crs_string) from exc


@functools.lru_cache(maxsize=256)
def crs_equal(crs_a: str, crs_b: str) -> bool:
    """``True`` when both strings name the same CRS."""
    if crs_a == crs_b:
        return True
    return parse_crs(crs_a) == parse_crs(crs_b)


@functools.lru_cache(maxsize=64)
def get_transformer(from_crs: str, to_crs: str) -> Transformer:
    """Cached ``always_xy`` transformer between two CRS strings."""
    return Transformer.from_crs(parse_crs(from_crs), parse_crs(to_crs), always_xy=True)


def geographic_bounds_for(raw_bounds: Bounds, crs: str) -> Bounds:
    """Project *raw_bounds* in *crs* to a ``(west, south, east, north)`` box."""
    if crs_equal(crs, GEOGRAPHIC_CRS):
        return tuple(float(v) for v in raw_bounds)  # type: ignore[return-value]
    transformer = get_transformer(crs, GEOGRAPHIC_CRS)
    west, south, east, north = transformer.transform_bounds(*raw_bounds)
    return (float(west), float(south), float(east), float(north))


# ---------------------------------------------------------------------------
# Array helpers
# ---------------------------------------------------------------------------


def is_nodata(array: npt.NDArray[Any], nodata: float | None) -> npt.NDArray[np.bool_]:
    """Mask of entries that are ``NaN``, infinite, or equal to *nodata*."""
    mask = ~np.isfinite(array)
    if nodata is not None and not math.isnan(nodata):
        mask |= array == nodata
    return mask


def compute_stats(array: npt.NDArray[Any], nodata: float | None) -> GridStats:
    """Compute :class:`GridStats` over *array*, skipping no-data and ``NaN``."""
    invalid = is_nodata(array, nodata)
    valid = array[~invalid]
    total = int(array.size)
    if valid.size == 0:
        return GridStats(
            min=math.nan,
            max=math.nan,
            mean=math.nan,
            total_pixels=total,
            valid_count=0,
            zero_count=0,
            nodata_count=total,
        )
    return GridStats(
        min=float(valid.min()),
        max=float(valid.max()),
        mean=float(valid.mean(dtype=np.float64)),
        total_pixels=total,
        valid_count=int(valid.size),
        zero_count=int(np.count_nonzero(valid == 0)),
        nodata_count=int(invalid.sum()),
    )


# ---------------------------------------------------------------------------
# Constructors
# ---------------------------------------------------------------------------


def build_grid_metadata(
    raw_bounds: Bounds,
    resolution: float = DEFAULT_RESOLUTION,
    crs: str = DEFAULT_CRS,
    nodata: float = DEFAULT_NODATA,
) -> GridMetadata:
    """Describe the grid covering *raw_bounds* at a square *resolution*.

    Width and height are rounded up so the grid fully covers the bounds;
    the origin is the top-left corner ``(min_x, max_y)``.
    """
    min_x, min_y, max_x, max_y = raw_bounds
    width = math.ceil((max_x - min_x) / resolution)
    height = math.ceil((max_y - min_y) / resolution)
    return GridMetadata(
        width=width,
        height=height,
        nodata=nodata,
        resolution=Resolution(resolution, resolution),
        projection=Projection(crs, (min_x, max_y)),
        raw_bounds=(min_x, min_y, max_x, max_y),
        geographic_bounds=geographic_bounds_for(raw_bounds, crs),
    )


def grid_from_array(
    array: npt.ArrayLike,
    raw_bounds: Bounds,
    crs: str = DEFAULT_CRS,
    nodata: float = DEFAULT_NODATA,
) -> RasterGrid:
    """Wrap a 2-D array covering *raw_bounds* into a :class:`RasterGrid`.

    Resolution is derived from the bounds and the array shape; stats are
    computed from the data.
    """
    data = np.asarray(array, dtype=np.float32)
    if data.ndim != 2:
        raise RasterError(f"Expected a 2-D array, got shape {data.shape}.")
    height, width = data.shape
    min_x, min_y, max_x, max_y = raw_bounds
    flat = np.ascontiguousarray(data).reshape(-1)
    metadata = GridMetadata(
        width=width,
        height=height,
        nodata=nodata,
        resolution=Resolution((max_x - min_x) / width, (max_y - min_y) / height),
        projection=Projection(crs, (min_x, max_y)),
        raw_bounds=(min_x, min_y, max_x, max_y),
        geographic_bounds=geographic_bounds_for(raw_bounds, crs),
        stats=compute_stats(flat, nodata),
    )
    return RasterGrid(flat, width, height, nodata, metadata)


def raster_with_array(
    source: RasterGrid,
    array: npt.NDArray[np.float32],
    *,
    nodata: float | None = None,
    metadata: GridMetadata | None = None,
) -> RasterGrid:
    """Copy *source* with a new pixel buffer, recomputing the stats."""
    nd = source.nodata if nodata is None else nodata
    base = metadata or source.metadata
    base = replace(base, nodata=nd, stats=compute_stats(array, nd))
    return RasterGrid(array, base.width, base.height, nd, base)


def pixel_centres(grid: GridMetadata) -> tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Return ``(height, width)`` arrays of pixel-centre x and y coordinates."""
    origin_x, origin_y = grid.origin
    cols = origin_x + (np.arange(grid.width) + 0.5) * grid.resolution.x
    rows = origin_y - (np.arange(grid.height) + 0.5) * grid.resolution.y
    xs, ys = np.meshgrid(cols, rows)
    return xs, ys
