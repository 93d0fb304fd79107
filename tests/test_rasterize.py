"""
Tests — Vector Rasterization
=============================
Unit tests for :func:`~raster_query.rasterize.rasterize` on a 10 x 10 grid
of 30 m pixels in EPSG:3857.
"""

from __future__ import annotations

import geopandas as gpd
import numpy as np
import pytest
from shapely.geometry import LineString, Point, Polygon, box

from raster_query.grid import GridMetadata, VectorFeatureSet, build_grid_metadata
from raster_query.rasterize import RASTERIZE_NODATA, rasterize
from raster_query.shared.exceptions import RasterizeError

CRS = "EPSG:3857"


@pytest.fixture()
def grid() -> GridMetadata:
    return build_grid_metadata((0.0, 0.0, 300.0, 300.0), resolution=30.0, crs=CRS)


def _frame(geoms: list, crs: str | None = CRS, **columns: list) -> gpd.GeoDataFrame:
    return gpd.GeoDataFrame(columns, geometry=geoms, crs=crs)


# ---------------------------------------------------------------------------
# mask / within / intersect / buffer
# ---------------------------------------------------------------------------


class TestBinaryMasks:
    def test_polygon_covering_grid_gives_all_ones(self, grid: GridMetadata) -> None:
        result = rasterize("mask", _frame([box(-100, -100, 400, 400)]), grid)
        assert result.width == 10 and result.height == 10
        assert np.all(result.array == 1.0)
        assert result.metadata.stats.valid_count == 100

    def test_empty_feature_set_gives_all_zeros(self, grid: GridMetadata) -> None:
        result = rasterize("mask", _frame([]), grid)
        assert np.all(result.array == 0.0)
        assert result.metadata.stats.zero_count == 100

    def test_half_cover(self, grid: GridMetadata) -> None:
        result = rasterize("within", _frame([box(0, 0, 150, 300)]), grid).as_2d()
        assert np.all(result[:, :5] == 1.0)
        assert np.all(result[:, 5:] == 0.0)

    def test_features_outside_extent_ignored(self, grid: GridMetadata) -> None:
        result = rasterize("mask", _frame([box(10_000, 10_000, 11_000, 11_000)]), grid)
        assert np.all(result.array == 0.0)

    def test_frame_without_crs_is_geographic(self, grid: GridMetadata) -> None:
        w, s, e, n = grid.geographic_bounds
        pad = 0.01
        frame = _frame([box(w - pad, s - pad, e + pad, n + pad)], crs=None)
        result = rasterize("mask", frame, grid)
        assert np.all(result.array == 1.0)

    def test_accepts_vector_feature_set(self, grid: GridMetadata) -> None:
        features = VectorFeatureSet(_frame([box(-100, -100, 400, 400)]))
        assert np.all(rasterize("mask", features, grid).array == 1.0)

    def test_intersect_line_through_pixel_centres(self, grid: GridMetadata) -> None:
        line = LineString([(0, 285), (300, 285)])
        result = rasterize("intersect", _frame([line]), grid).as_2d()
        assert np.all(result[0] == 1.0)
        assert result[1:].sum() == 0

    def test_buffer_grows_polygon(self, grid: GridMetadata) -> None:
        frame = _frame([box(120, 120, 180, 180)])
        assert rasterize("mask", frame, grid).array.sum() == 4
        assert rasterize("buffer", frame, grid, buffer_distance=30).array.sum() == 16

    def test_buffer_defaults_to_one_pixel(self, grid: GridMetadata) -> None:
        frame = _frame([box(120, 120, 180, 180)])
        assert rasterize("buffer", frame, grid).array.sum() == 16


# ---------------------------------------------------------------------------
# label / category / edge
# ---------------------------------------------------------------------------


class TestAttributes:
    def test_label_uses_id_by_default(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 150, 300), box(150, 0, 300, 300)], id=[7, 9])
        result = rasterize("label", frame, grid).as_2d()
        assert np.all(result[:, :5] == 7.0)
        assert np.all(result[:, 5:] == 9.0)

    def test_label_first_containing_feature_wins(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 300, 300), box(0, 0, 150, 300)], zone=[1, 2])
        result = rasterize("label", frame, grid, attribute_field="zone")
        assert np.all(result.array == 1.0)

    def test_label_non_numeric_and_missing(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 150, 300)], id=["abc"])
        assert np.all(rasterize("label", frame, grid).array == 0.0)
        assert np.all(rasterize("label", frame, grid, attribute_field="nope").array == 0.0)

    def test_category_codes_follow_scan_order(self, grid: GridMetadata) -> None:
        # the eastern feature is listed first but the scan meets the western one first
        frame = _frame([box(150, 0, 300, 300), box(0, 0, 150, 300)], type=["shrub", "grass"])
        result = rasterize("category", frame, grid).as_2d()
        assert np.all(result[:, :5] == 1.0)
        assert np.all(result[:, 5:] == 2.0)

    def test_category_shares_codes_between_equal_values(self, grid: GridMetadata) -> None:
        frame = _frame(
            [box(0, 0, 90, 300), box(90, 0, 210, 300), box(210, 0, 300, 300)],
            type=["grass", "shrub", "grass"],
        )
        result = rasterize("category", frame, grid).as_2d()
        assert set(np.unique(result[:, :3])) == {1.0}
        assert set(np.unique(result[:, 3:7])) == {2.0}
        assert set(np.unique(result[:, 7:])) == {1.0}

    def test_category_uncovered_is_zero(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 150, 300)], type=["grass"])
        result = rasterize("category", frame, grid).as_2d()
        assert np.all(result[:, 5:] == 0.0)

    def test_edge_marks_feature_boundaries(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 150, 300), box(150, 0, 300, 300)])
        result = rasterize("edge", frame, grid).as_2d()
        assert np.all(result[:, 4] == 1.0)
        assert np.all(result[:, 5] == 1.0)
        assert result[:, :4].sum() == 0
        assert result[:, 6:].sum() == 0


# ---------------------------------------------------------------------------
# distance_to
# ---------------------------------------------------------------------------


class TestDistance:
    def test_planar_distance_to_centroid(self, grid: GridMetadata) -> None:
        result = rasterize("distance_to", _frame([Point(15, 285)]), grid).as_2d()
        assert result[0, 0] == pytest.approx(0.0)
        assert result[0, 1] == pytest.approx(30.0)
        assert result[1, 1] == pytest.approx(np.hypot(30, 30))

    def test_nearest_of_several(self, grid: GridMetadata) -> None:
        result = rasterize("distance_to", _frame([Point(15, 285), Point(285, 15)]), grid).as_2d()
        assert result[9, 9] == pytest.approx(0.0)
        assert result[9, 8] == pytest.approx(30.0)

    def test_geodesic_distance_on_geographic_grid(self) -> None:
        res = 2.0 ** -10
        grid = build_grid_metadata((0.0, 0.0, 10 * res, 10 * res), resolution=res, crs="EPSG:4326")
        frame = _frame([Point(0.5 * res, 9.5 * res)], crs="EPSG:4326")
        result = rasterize("distance_to", frame, grid).as_2d()
        assert result[0, 0] == pytest.approx(0.0, abs=1e-3)
        assert result[0, 1] == pytest.approx(108.7, rel=0.01)

    def test_no_features_is_nodata(self, grid: GridMetadata) -> None:
        result = rasterize("distance_to", _frame([]), grid)
        assert np.all(result.array == RASTERIZE_NODATA)
        assert result.metadata.stats.valid_count == 0


# ---------------------------------------------------------------------------
# Output metadata and errors
# ---------------------------------------------------------------------------


class TestOutput:
    def test_metadata_inherits_grid(self, grid: GridMetadata) -> None:
        result = rasterize("mask", _frame([box(0, 0, 150, 300)]), grid)
        assert result.nodata == RASTERIZE_NODATA
        assert result.metadata.crs == CRS
        assert result.metadata.resolution == grid.resolution
        assert result.metadata.origin == grid.origin
        assert result.metadata.stats.mean == pytest.approx(0.5)

    def test_unsupported_function(self, grid: GridMetadata) -> None:
        with pytest.raises(RasterizeError) as info:
            rasterize("heatmap", _frame([]), grid)
        assert info.value.function == "heatmap"


# ---------------------------------------------------------------------------
# Geographic buffers, boundaries and invalid input
# ---------------------------------------------------------------------------


@pytest.fixture()
def degree_grid() -> GridMetadata:
    """100 x 100 grid of 0.01 degree pixels over (0, 0, 1, 1) in EPSG:4326."""
    return build_grid_metadata((0.0, 0.0, 1.0, 1.0), resolution=0.01, crs="EPSG:4326")


class TestGeographicBuffer:
    def test_distance_is_metres_not_degrees(self, degree_grid: GridMetadata) -> None:
        frame = _frame([box(0.491, 0.491, 0.509, 0.509)], crs="EPSG:4326")
        assert rasterize("mask", frame, degree_grid).array.sum() == 4
        # 100 m is about 0.0009 degrees: no new pixel centre is reached
        assert rasterize("buffer", frame, degree_grid, buffer_distance=100.0).array.sum() == 4

    def test_kilometre_buffer_reaches_neighbours(self, degree_grid: GridMetadata) -> None:
        frame = _frame([box(0.491, 0.491, 0.509, 0.509)], crs="EPSG:4326")
        result = rasterize("buffer", frame, degree_grid, buffer_distance=1500.0).as_2d()
        assert result.sum() == 16
        assert np.all(result[48:52, 48:52] == 1.0)

    def test_default_is_one_pixel_in_grid_units(self, degree_grid: GridMetadata) -> None:
        frame = _frame([box(0.491, 0.491, 0.509, 0.509)], crs="EPSG:4326")
        assert rasterize("buffer", frame, degree_grid).array.sum() == 16

    def test_empty_feature_set(self, degree_grid: GridMetadata) -> None:
        frame = _frame([], crs="EPSG:4326")
        assert rasterize("buffer", frame, degree_grid, buffer_distance=100.0).array.sum() == 0


class TestCoverage:
    def test_pixel_centre_on_boundary_is_inside(self, grid: GridMetadata) -> None:
        # x = 135 is the centre of column 4
        frame = _frame([box(0, 0, 135, 300)], id=[3])
        mask = rasterize("mask", frame, grid).as_2d()
        assert np.all(mask[:, :5] == 1.0)
        assert np.all(mask[:, 5:] == 0.0)
        label = rasterize("label", frame, grid).as_2d()
        assert np.all(label[:, 4] == 3.0)

    def test_invalid_polygon_does_not_raise(self, grid: GridMetadata) -> None:
        bowtie = Polygon([(0, 0), (300, 300), (300, 0), (0, 300), (0, 0)])
        frame = _frame([bowtie, box(0, 0, 60, 60)])
        for fn in ("mask", "intersect", "buffer"):
            result = rasterize(fn, frame, grid)
            assert result.metadata.stats.valid_count == 100
            assert result.array.sum() > 0

    def test_category_ignores_non_string_values(self, grid: GridMetadata) -> None:
        frame = _frame([box(0, 0, 150, 300), box(150, 0, 300, 300)], type=[4, 9])
        assert np.all(rasterize("category", frame, grid).array == 0.0)
