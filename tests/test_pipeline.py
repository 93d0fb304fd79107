"""
Tests — Query Pipeline
=======================
End-to-end tests for :func:`~raster_query.pipeline.run_query`,
:class:`~raster_query.pipeline.RasterQueryTool`, the file layer source and
GeoTIFF export. File-based tests use pytest's ``tmp_path``.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import geopandas as gpd
import numpy as np
import pytest
import rasterio
from rasterio.transform import from_origin

from raster_query.cache import LayerCache
from raster_query.config import QueryConfig
from raster_query.data_source import FileLayerSource, InMemoryLayerSource
from raster_query.evaluator import EvaluationResult
from raster_query.export import write_geotiff
from raster_query.grid import RasterGrid, VectorFeatureSet
from raster_query.pipeline import RasterQueryTool, run_query
from raster_query.shared.exceptions import (
    InputValidationError,
    LayerNotFoundError,
    OutputWriteError,
    QuerySyntaxError,
)

from conftest import NODATA

FAST = QueryConfig(fetch_retry_delay=0.0)


def _query(text: str, cache: LayerCache, config: QueryConfig = FAST) -> EvaluationResult:
    return asyncio.run(run_query(text, cache, config))


@pytest.fixture()
def layer_files(tmp_path: Path, ramp: RasterGrid, slope: RasterGrid, west_half: gpd.GeoDataFrame) -> dict[str, Path]:
    """``burn`` and ``slope`` GeoTIFFs plus a ``fire`` GeoJSON in EPSG:4326."""
    burn = write_geotiff(ramp, tmp_path / "burn.tif")
    slope_path = write_geotiff(slope, tmp_path / "slope.tif")
    fire = tmp_path / "fire.geojson"
    west_half.to_crs("EPSG:4326").to_file(fire, driver="GeoJSON")
    return {"burn": burn, "slope": slope_path, "fire": fire}


# ---------------------------------------------------------------------------
# run_query
# ---------------------------------------------------------------------------


class TestRunQuery:
    def test_threshold_query(self, source: InMemoryLayerSource) -> None:
        result = _query("burn > 0.5 AND slope < 20", LayerCache(source))
        out = result.raster.as_2d()
        assert out.shape == (100, 100)
        assert out[:20, 51:].sum() == 49 * 20
        assert out.sum() == 49 * 20
        assert result.metadata.tags["expression"] == "burn > 0.5 AND slope < 20"

    def test_repeated_query_is_identical_and_cached(self, source: InMemoryLayerSource) -> None:
        cache = LayerCache(source)
        first = _query("burn * slope - 3", cache)
        fetches = cache.fetch_count
        second = _query("burn * slope - 3", cache)
        assert first.raster.array.tobytes() == second.raster.array.tobytes()
        assert cache.fetch_count == fetches

    def test_rasterized_vector(self, source: InMemoryLayerSource) -> None:
        out = _query("mask(fire) * burn", LayerCache(source)).raster.as_2d()
        assert np.all(out[:, 50:] == 0.0)
        assert out[0, 10] == pytest.approx(0.10)

    def test_unit_literal_against_distance(self, source: InMemoryLayerSource) -> None:
        out = _query("distance_to(fire) < 0.5 km AND burn >= 0", LayerCache(source)).raster.as_2d()
        # the polygon centroid is (750, 1500); pixel centres within 500 m qualify
        assert out[49, 25] == 1.0
        assert out[0, 0] == 0.0

    def test_aoi_applied(self, source: InMemoryLayerSource) -> None:
        config = QueryConfig(fetch_retry_delay=0.0, aoi_center=(0.0, 0.0), aoi_radius_m=1000.0)
        result = _query("burn + 1", LayerCache(source), config)
        out = result.raster.as_2d()
        assert out[99, 0] == pytest.approx(1.0)
        assert np.isnan(out[0, 99])
        assert result.metadata.tags["expression"] == "burn + 1"

    def test_output_nodata_from_config(self, source: InMemoryLayerSource) -> None:
        config = QueryConfig(fetch_retry_delay=0.0, output_nodata=NODATA)
        result = _query("burn / 0", LayerCache(source), config)
        assert np.all(result.raster.array == NODATA)
        assert result.metadata.stats.valid_count == 0

    def test_syntax_error_propagates(self, source: InMemoryLayerSource) -> None:
        with pytest.raises(QuerySyntaxError):
            _query("burn >", LayerCache(source))


# ---------------------------------------------------------------------------
# File source and export
# ---------------------------------------------------------------------------


class TestFiles:
    def test_geotiff_round_trip(self, tmp_path: Path, ramp: RasterGrid) -> None:
        path = write_geotiff(ramp, tmp_path / "nested" / "ramp.tif")
        with rasterio.open(path) as src:
            assert (src.width, src.height) == (100, 100)
            assert src.nodata == NODATA
            assert src.crs.to_epsg() == 3857
            assert src.transform.a == pytest.approx(30.0)
            np.testing.assert_array_equal(src.read(1), ramp.as_2d())

    def test_expression_tag_written(self, tmp_path: Path, source: InMemoryLayerSource) -> None:
        result = _query("slope * 2", LayerCache(source))
        path = write_geotiff(result, tmp_path / "slope2.tif")
        with rasterio.open(path) as src:
            assert src.tags()["expression"] == "slope * 2"

    def test_unwritable_path(self, tmp_path: Path, ramp: RasterGrid) -> None:
        blocker = tmp_path / "file.txt"
        blocker.write_text("not a directory")
        with pytest.raises(OutputWriteError):
            write_geotiff(ramp, blocker / "out.tif")

    def test_file_source_reads_raster_and_vector(self, layer_files: dict[str, Path], ramp: RasterGrid) -> None:
        source = FileLayerSource(layer_files)
        burn = asyncio.run(source.get("burn"))
        assert isinstance(burn.data, RasterGrid)
        np.testing.assert_array_equal(burn.data.array, ramp.array)
        assert burn.metadata.origin == ramp.metadata.origin

        fire = asyncio.run(source.get("fire"))
        assert isinstance(fire.data, VectorFeatureSet)
        assert len(fire.data) == 1
        assert fire.metadata is not None and fire.metadata.crs == "EPSG:3857"

    def test_file_source_unknown_key(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        source = FileLayerSource({**layer_files, "gone": tmp_path / "gone.tif"})
        with pytest.raises(LayerNotFoundError):
            asyncio.run(source.get("nope"))
        with pytest.raises(LayerNotFoundError):
            asyncio.run(source.get("gone"))

    def test_query_over_files(self, layer_files: dict[str, Path]) -> None:
        result = _query("mask(fire) AND slope < 10", LayerCache(FileLayerSource(layer_files)))
        out = result.raster.as_2d()
        assert out.sum() == 50 * 10
        assert np.all(out[:10, :50] == 1.0)

    def test_raster_without_nodata_gets_default(self, tmp_path: Path) -> None:
        path = tmp_path / "plain.tif"
        values = np.arange(100, dtype=np.float32).reshape(10, 10)
        values[0, 0] = -1.0
        profile = {
            "driver": "GTiff", "width": 10, "height": 10, "count": 1, "dtype": "float32",
            "crs": "EPSG:3857", "transform": from_origin(0.0, 300.0, 30.0, 30.0),
        }
        with rasterio.open(path, "w", **profile) as dst:
            dst.write(values, 1)

        plain = asyncio.run(FileLayerSource({"plain": path}, default_nodata=-1.0).get("plain"))
        assert plain.metadata.nodata == -1.0
        assert plain.metadata.stats.valid_count == 99

        config = QueryConfig(fetch_retry_delay=0.0, default_nodata=-1.0)
        tool = RasterQueryTool("plain + 1", {"plain": path}, tmp_path / "out.tif", config)
        tool.run()
        assert tool.result is not None
        assert tool.result.metadata.stats.valid_count == 99


# ---------------------------------------------------------------------------
# RasterQueryTool
# ---------------------------------------------------------------------------


class TestRasterQueryTool:
    def test_run_writes_geotiff(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        output = tmp_path / "out" / "result.tif"
        tool = RasterQueryTool("burn > 0.5 AND slope < 20", layer_files, output)
        tool.run()
        assert output.exists()
        assert tool.result is not None
        assert tool.result.metadata.stats.valid_count == 10_000
        with rasterio.open(output) as src:
            assert src.read(1).sum() == 49 * 20

    def test_missing_layer_file_mapping(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        tool = RasterQueryTool("burn + roads", layer_files, tmp_path / "out.tif")
        with pytest.raises(InputValidationError, match="roads"):
            tool.validate_inputs()

    def test_layer_file_does_not_exist(self, tmp_path: Path) -> None:
        tool = RasterQueryTool("burn", {"burn": tmp_path / "absent.tif"}, tmp_path / "out.tif")
        with pytest.raises(InputValidationError):
            tool.validate_inputs()

    def test_bad_expression(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        tool = RasterQueryTool("burn > > 1", layer_files, tmp_path / "out.tif")
        with pytest.raises(QuerySyntaxError):
            tool.validate_inputs()

    def test_output_must_be_geotiff(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        tool = RasterQueryTool("burn", layer_files, tmp_path / "out.png")
        with pytest.raises(InputValidationError):
            tool.validate_inputs()

    def test_aoi_needs_centre_and_radius(self, layer_files: dict[str, Path], tmp_path: Path) -> None:
        config = QueryConfig(aoi_center=(0.0, 0.0))
        tool = RasterQueryTool("burn", layer_files, tmp_path / "out.tif", config)
        with pytest.raises(InputValidationError, match="both"):
            tool.validate_inputs()
