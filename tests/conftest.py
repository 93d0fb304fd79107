"""
Shared fixtures for the raster query test suite.

Rasters are built in memory with numpy on small EPSG:3857 grids near
(0, 0); vector layers are GeoDataFrames in the same CRS unless a test
needs otherwise.
"""

from __future__ import annotations

from typing import Callable

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import box

from raster_query.data_source import InMemoryLayerSource
from raster_query.grid import RasterGrid, grid_from_array

# 100 x 100 pixels of 30 m
BOUNDS = (0.0, 0.0, 3000.0, 3000.0)
CRS = "EPSG:3857"
NODATA = -9999.0

RasterFactory = Callable[..., RasterGrid]


def _make_raster(
    values: np.ndarray | float,
    bounds: tuple[float, float, float, float] = BOUNDS,
    crs: str = CRS,
    nodata: float = NODATA,
    shape: tuple[int, int] = (100, 100),
) -> RasterGrid:
    if np.isscalar(values):
        values = np.full(shape, values, dtype=np.float32)
    return grid_from_array(np.asarray(values, dtype=np.float32), bounds, crs, nodata)


@pytest.fixture()
def make_raster() -> RasterFactory:
    """Factory: ``make_raster(values_2d_or_scalar, bounds=..., crs=..., nodata=...)``."""
    return _make_raster


@pytest.fixture()
def ramp() -> RasterGrid:
    """100 x 100 raster whose value is its column index / 100 (0.00 … 0.99)."""
    values = np.tile(np.arange(100, dtype=np.float32) / 100.0, (100, 1))
    return _make_raster(values)


@pytest.fixture()
def slope() -> RasterGrid:
    """100 x 100 raster whose value is its row index (0 … 99)."""
    values = np.repeat(np.arange(100, dtype=np.float32)[:, None], 100, axis=1)
    return _make_raster(values)


@pytest.fixture()
def west_half() -> gpd.GeoDataFrame:
    """One polygon covering the western half (columns 0-49) of the default grid."""
    return gpd.GeoDataFrame({"id": [7]}, geometry=[box(0, 0, 1500, 3000)], crs=CRS)


@pytest.fixture()
def source(ramp: RasterGrid, slope: RasterGrid, west_half: gpd.GeoDataFrame) -> InMemoryLayerSource:
    src = InMemoryLayerSource()
    src.add_raster("burn", ramp)
    src.add_raster("slope", slope)
    src.add_vector("fire", west_half, metadata=ramp.metadata)
    return src
