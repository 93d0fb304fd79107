"""
Raster Query — Layer Reference Collector
=========================================
Walks a parsed AST and reports which layers it needs and which vector
rasterizations must be computed before evaluation.
"""

from __future__ import annotations

from typing import NamedTuple

from raster_query.ast_nodes import BoundLayer, Expression, Layer, LiteralValue, rasterization_of, walk


class RasterizeRequest(NamedTuple):
    """One rasterization of a layer: function name plus its optional literal."""

    function: str
    option: LiteralValue = None


def collect_layer_names(ast: Expression) -> set[str]:
    """Return the name of every layer referenced anywhere in *ast*."""
    return {node.name for node in walk(ast) if isinstance(node, (Layer, BoundLayer))}


def collect_raster_functions(ast: Expression) -> dict[str, set[RasterizeRequest]]:
    """Map each layer name to the rasterizations applied to it.

    ``mask(fire_perimeter) + buffer(roads, 100)`` yields
    ``{"fire_perimeter": {("mask", None)}, "roads": {("buffer", 100.0)}}``.
    """
    requests: dict[str, set[RasterizeRequest]] = {}
    for node in walk(ast):
        found = rasterization_of(node)
        if found is None:
            continue
        fn, layer, option = found
        requests.setdefault(layer, set()).add(RasterizeRequest(fn, option))
    return requests
