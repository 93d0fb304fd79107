"""
Raster Query — Layer Data Sources
==================================
A layer source returns ``LayerData(data, metadata)`` for a key. Two
implementations are bundled:

* :class:`InMemoryLayerSource` — grids and feature sets registered up front.
* :class:`FileLayerSource` — GeoTIFFs read with :mod:`rasterio` and vector
  files (GeoJSON, Shapefile, GeoPackage) read with :mod:`geopandas`.

Errors follow one convention: :class:`~raster_query.shared.exceptions.LayerNotFoundError`
when nothing exists for the key (permanent), :class:`~raster_query.shared.exceptions.FetchError`
for everything else (transient, retried by the binder).
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import geopandas as gpd
import numpy as np
import rasterio
from rasterio.errors import RasterioError

from raster_query.config import DEFAULT_CRS, DEFAULT_NODATA, DEFAULT_RESOLUTION, GEOGRAPHIC_CRS
from raster_query.grid import (
    GridMetadata,
    LayerData,
    Projection,
    RasterGrid,
    Resolution,
    VectorFeatureSet,
    build_grid_metadata,
    compute_stats,
    geographic_bounds_for,
)
from raster_query.shared.exceptions import FetchError, LayerNotFoundError

logger = logging.getLogger("rasterquery.data_source")

RASTER_EXTENSIONS = (".tif", ".tiff")
VECTOR_EXTENSIONS = (".geojson", ".json", ".shp", ".gpkg")


@runtime_checkable
class LayerSource(Protocol):
    """Anything that can fetch a layer by key."""

    async def get(self, key: str, bounds_hint: str | None = None) -> LayerData:
        ...


# ---------------------------------------------------------------------------
# In-memory source
# ---------------------------------------------------------------------------


class InMemoryLayerSource:
    """Layer source backed by a dict of pre-registered layers.

    Example::

        source = InMemoryLayerSource()
        source.add_raster("slope", slope_grid)
        source.add_vector("roads", roads_gdf, metadata=slope_grid.metadata)
    """

    def __init__(self) -> None:
        self._layers: dict[str, LayerData] = {}
        self.requests: list[tuple[str, str | None]] = []

    def add_raster(self, key: str, raster: RasterGrid) -> None:
        self._layers[key] = LayerData(raster, raster.metadata)

    def add_vector(
        self,
        key: str,
        features: gpd.GeoDataFrame,
        metadata: GridMetadata | None = None,
    ) -> None:
        if features.crs is None:
            features = features.set_crs(GEOGRAPHIC_CRS)
        self._layers[key] = LayerData(VectorFeatureSet(features, metadata), metadata)

    def remove(self, key: str) -> None:
        self._layers.pop(key, None)

    async def get(self, key: str, bounds_hint: str | None = None) -> LayerData:
        self.requests.append((key, bounds_hint))
        try:
            return self._layers[key]
        except KeyError:
            raise LayerNotFoundError(key) from None

    def __contains__(self, key: str) -> bool:
        return key in self._layers


# ---------------------------------------------------------------------------
# File source
# ---------------------------------------------------------------------------


class FileLayerSource:
    """Layer source reading files from disk, one path per key.

    Args:
        paths: Mapping of layer key → file path.
        vector_resolution: Pixel size used for the default grid of vector
            layers (in ``vector_crs`` units).
        vector_crs: CRS of the default grid of vector layers.
        default_nodata: No-data assumed for rasters that declare none.
    """

    def __init__(
        self,
        paths: dict[str, str | Path],
        *,
        vector_resolution: float = DEFAULT_RESOLUTION,
        vector_crs: str = DEFAULT_CRS,
        default_nodata: float = DEFAULT_NODATA,
    ) -> None:
        self.paths = {key: Path(p) for key, p in paths.items()}
        self.vector_resolution = vector_resolution
        self.vector_crs = vector_crs
        self.default_nodata = default_nodata

    async def get(self, key: str, bounds_hint: str | None = None) -> LayerData:
        path = self.paths.get(key)
        if path is None or not path.exists():
            raise LayerNotFoundError(key)
        if path.suffix.lower() in RASTER_EXTENSIONS:
            return await asyncio.to_thread(self._read_raster, key, path)
        return await asyncio.to_thread(self._read_vector, key, path)

    def _read_raster(self, key: str, path: Path) -> LayerData:
        try:
            with rasterio.open(path) as src:
                band = src.read(1).astype(np.float32)
                nodata = src.nodata if src.nodata is not None else self.default_nodata
                crs = src.crs.to_string() if src.crs else DEFAULT_CRS
                transform = src.transform
                bounds = tuple(float(v) for v in src.bounds)
        except RasterioError as exc:
            raise FetchError(key, str(exc)) from exc

        height, width = band.shape
        flat = np.ascontiguousarray(band).reshape(-1)
        metadata = GridMetadata(
            width=width,
            height=height,
            nodata=float(nodata),
            resolution=Resolution(abs(transform.a), abs(transform.e)),
            projection=Projection(crs, (transform.c, transform.f)),
            raw_bounds=bounds,  # type: ignore[arg-type]
            geographic_bounds=geographic_bounds_for(bounds, crs),  # type: ignore[arg-type]
            stats=compute_stats(flat, nodata),
        )
        logger.debug("Read raster %s: %dx%d %s from %s", key, width, height, crs, path.name)
        return LayerData(RasterGrid(flat, width, height, float(nodata), metadata), metadata)

    def _read_vector(self, key: str, path: Path) -> LayerData:
        try:
            gdf = gpd.read_file(path)
        except Exception as exc:  # noqa: BLE001  (pyogrio and fiona raise their own types)
            raise FetchError(key, str(exc)) from exc

        if gdf.crs is None:
            gdf = gdf.set_crs(GEOGRAPHIC_CRS)
        metadata = None
        if not gdf.empty:
            bounds = tuple(gdf.to_crs(self.vector_crs).total_bounds)
            metadata = build_grid_metadata(
                bounds,  # type: ignore[arg-type]
                resolution=self.vector_resolution,
                crs=self.vector_crs,
            )
        logger.debug("Read %d features for %s from %s", len(gdf), key, path.name)
        return LayerData(VectorFeatureSet(gdf, metadata), metadata)
