"""
Tests — Layer Reference Collector
==================================
Unit tests for :func:`collect_layer_names` and :func:`collect_raster_functions`.
"""

from __future__ import annotations

import pytest

from raster_query.ast_nodes import Literal, children
from raster_query.collector import RasterizeRequest, collect_layer_names, collect_raster_functions
from raster_query.parser import parse
from raster_query.shared.exceptions import EvalError


class TestCollectLayerNames:
    def test_simple_expression(self) -> None:
        assert collect_layer_names(parse("burn_probability > 0.5 AND slope < 20")) == {
            "burn_probability",
            "slope",
        }

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("a > 1 ? b : c", {"a", "b", "c"}),
            ("fuel IN (1, other)", {"fuel", "other"}),
            ("x BETWEEN lo AND hi", {"x", "lo", "hi"}),
            ("max(a, abs(-b))", {"a", "b"}),
            ("NOT (q IS NULL)", {"q"}),
            ("mask(fire) * burn", {"fire", "burn"}),
            ('"Canopy Cover" > 40', {"Canopy Cover"}),
        ],
    )
    def test_every_child_is_visited(self, text: str, expected: set[str]) -> None:
        assert collect_layer_names(parse(text)) == expected

    def test_let_block(self) -> None:
        ast = parse("LET hot = burn > 0.5 LET risky = hot AND slope > 20")
        assert collect_layer_names(ast) == {"burn", "slope"}

    def test_literals_only(self) -> None:
        assert collect_layer_names(parse("1 + 2")) == set()


class TestCollectRasterFunctions:
    def test_functions_grouped_by_layer(self) -> None:
        ast = parse("mask(fire) + buffer(roads, 100) + label(parcels, 'zone') + edge(fire)")
        assert collect_raster_functions(ast) == {
            "fire": {RasterizeRequest("mask"), RasterizeRequest("edge")},
            "roads": {RasterizeRequest("buffer", 100.0)},
            "parcels": {RasterizeRequest("label", "zone")},
        }

    def test_spatial_predicates_map_to_rasterizations(self) -> None:
        ast = parse("within(perimeter) AND intersects(roads)")
        assert collect_raster_functions(ast) == {
            "perimeter": {RasterizeRequest("within")},
            "roads": {RasterizeRequest("intersect")},
        }

    def test_two_layer_mask_is_not_a_rasterization(self) -> None:
        assert collect_raster_functions(parse("mask(burn, slope)")) == {}

    def test_non_rasterizing_calls_ignored(self) -> None:
        assert collect_raster_functions(parse("abs(a) + contains(b) + distance(c)")) == {}

    def test_literal_option_only_for_option_functions(self) -> None:
        assert collect_raster_functions(parse("mask(fire, 3)")) == {}

    def test_nested_inside_comparison(self) -> None:
        ast = parse("distance_to(hydrants) < 0.25 miles")
        assert collect_raster_functions(ast) == {"hydrants": {RasterizeRequest("distance_to")}}


class TestChildren:
    def test_unknown_node_raises(self) -> None:
        with pytest.raises(EvalError):
            children("not a node")  # type: ignore[arg-type]

    def test_leaf_has_no_children(self) -> None:
        assert children(Literal(1.0)) == ()
