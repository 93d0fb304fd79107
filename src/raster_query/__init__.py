"""
Raster Query
============
Evaluates raster-algebra expressions such as
``burn_probability > 0.5 AND slope < 20`` over raster and vector layers and
produces a single derived raster on a common pixel grid.

Public API::

    from raster_query import LayerCache, InMemoryLayerSource, QueryConfig, run_query

    cache = LayerCache(InMemoryLayerSource())
    result = asyncio.run(run_query("slope * 2", cache))
"""

from raster_query.aoi import mask_to_circle
from raster_query.binder import BoundQuery, bind_ast, bind_layers
from raster_query.cache import LayerCache
from raster_query.collector import collect_layer_names, collect_raster_functions
from raster_query.config import QueryConfig
from raster_query.data_source import FileLayerSource, InMemoryLayerSource, LayerSource
from raster_query.evaluator import EvaluationResult, evaluate, evaluate_at
from raster_query.export import write_geotiff
from raster_query.grid import GridMetadata, LayerData, RasterGrid, VectorFeatureSet
from raster_query.parser import parse
from raster_query.pipeline import RasterQueryTool, run_query
from raster_query.rasterize import rasterize
from raster_query.worker import RasterizeWorkerPool

__all__ = [
    "parse",
    "collect_layer_names",
    "collect_raster_functions",
    "bind_ast",
    "bind_layers",
    "BoundQuery",
    "evaluate",
    "evaluate_at",
    "EvaluationResult",
    "mask_to_circle",
    "rasterize",
    "run_query",
    "write_geotiff",
    "LayerCache",
    "LayerSource",
    "InMemoryLayerSource",
    "FileLayerSource",
    "RasterizeWorkerPool",
    "QueryConfig",
    "RasterQueryTool",
    "GridMetadata",
    "LayerData",
    "RasterGrid",
    "VectorFeatureSet",
]
__version__ = "1.0.0"
