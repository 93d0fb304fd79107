"""
Raster Query — Pixel Evaluator
===============================
Evaluates a bound AST for every pixel of the output grid.

Evaluation is vectorised: each node yields a ``(values, valid)`` pair of
numpy arrays over a block of pixels, where ``valid`` is ``False`` wherever
the node has no defined result (null). Null propagates through every
operator except ``IS NULL`` / ``IS NOT NULL``; booleans are 1.0 / 0.0.

Row blocks are independent and can be spread over a thread pool.

Usage::

    from raster_query.evaluator import evaluate

    result = evaluate(bound_ast, output_nodata=-9999.0)
    result.raster.as_2d()
"""

from __future__ import annotations

import logging
import math
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Protocol

import numpy as np
import numpy.typing as npt

from raster_query.ast_nodes import (
    ARITHMETIC_OPS,
    COMPARISON_OPS,
    LOGICAL_OPS,
    RASTERIZATION_FUNCTIONS,
    Assignments,
    Between,
    Binary,
    BoundLayer,
    Expression,
    Function,
    In,
    Layer,
    Literal,
    Node,
    NullCheck,
    Spatial,
    Ternary,
    Unary,
    children,
)
from raster_query.grid import GridMetadata, RasterGrid, compute_stats, is_nodata
from raster_query.shared.exceptions import EvalError, QueryCancelledError

logger = logging.getLogger("rasterquery.evaluator")

Values = npt.NDArray[np.float64]
Mask = npt.NDArray[np.bool_]
Result = tuple[Values, Mask]


class _CancelFlag(Protocol):
    def is_set(self) -> bool:
        ...


@dataclass(frozen=True, eq=False)
class EvaluationResult:
    """The derived raster plus its metadata."""

    raster: RasterGrid
    metadata: GridMetadata


# ---------------------------------------------------------------------------
# Pixel blocks
# ---------------------------------------------------------------------------


class _Block:
    """A set of output pixels given by their row and column indices.

    ``span`` is set when the block is a contiguous run of whole rows, which
    lets same-shaped sources be sliced instead of gathered.
    """

    def __init__(
        self,
        rows: npt.NDArray[np.int64],
        cols: npt.NDArray[np.int64],
        width: int,
        span: tuple[int, int] | None = None,
    ) -> None:
        self.rows = rows
        self.cols = cols
        self.width = width
        self.span = span
        self.size = rows.size

    @classmethod
    def row_range(cls, start: int, stop: int, width: int) -> _Block:
        rows = np.repeat(np.arange(start, stop, dtype=np.int64), width)
        cols = np.tile(np.arange(width, dtype=np.int64), stop - start)
        return cls(rows, cols, width, (start * width, stop * width))

    def sample(self, raster: RasterGrid) -> Result:
        if self.span is not None and raster.width == self.width and raster.height * raster.width >= self.span[1]:
            values = raster.array[self.span[0]:self.span[1]].astype(np.float64)
            return values, ~is_nodata(values, raster.nodata)

        inside = (
            (self.rows >= 0) & (self.rows < raster.height)
            & (self.cols >= 0) & (self.cols < raster.width)
        )
        index = np.where(inside, self.rows * raster.width + self.cols, 0)
        values = raster.array[index].astype(np.float64)
        return values, inside & ~is_nodata(values, raster.nodata)


# ---------------------------------------------------------------------------
# Node evaluation
# ---------------------------------------------------------------------------


def _truthy(values: Values) -> Mask:
    return values != 0


def _as_float(mask: Mask) -> Values:
    return mask.astype(np.float64)


def _literal(value: object, size: int) -> Result:
    if value is None:
        return np.zeros(size), np.zeros(size, dtype=bool)
    if isinstance(value, bool):
        return np.full(size, 1.0 if value else 0.0), np.ones(size, dtype=bool)
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        # non-numeric strings never match a pixel value
        return np.zeros(size), np.zeros(size, dtype=bool)
    return np.full(size, number), np.ones(size, dtype=bool)


class _BlockEvaluator:
    """Evaluates nodes over one :class:`_Block`, evaluating shared subtrees once."""

    def __init__(self, block: _Block) -> None:
        self.block = block
        self.memo: dict[int, Result] = {}

    def eval(self, node: Expression) -> Result:
        key = id(node)
        if key not in self.memo:
            self.memo[key] = self._eval(node)
        return self.memo[key]

    def _eval(self, node: Expression) -> Result:
        size = self.block.size

        if isinstance(node, Literal):
            return _literal(node.value, size)

        if isinstance(node, BoundLayer):
            return self._layer(node)

        if isinstance(node, Layer):
            raise EvalError(f"Layer '{node.name}' was not bound before evaluation.")

        if isinstance(node, Unary):
            values, valid = self.eval(node.expr)
            if node.op == "neg":
                return -values, valid
            if node.op == "NOT":
                return _as_float(~_truthy(values)), valid
            raise EvalError(f"Unknown unary operator: {node.op!r}")

        if isinstance(node, Binary):
            return self._binary(node)

        if isinstance(node, Ternary):
            cond, cond_valid = self.eval(node.condition)
            true_values, true_valid = self.eval(node.true_expr)
            false_values, false_valid = self.eval(node.false_expr)
            pick = _truthy(cond)
            values = np.where(pick, true_values, false_values)
            valid = cond_valid & np.where(pick, true_valid, false_valid)
            return values, valid

        if isinstance(node, In):
            subject, valid = self.eval(node.layer)
            hit = np.zeros(size, dtype=bool)
            for candidate in node.values:
                values, candidate_valid = self.eval(candidate)
                hit |= candidate_valid & (subject == values)
            return _as_float(hit), valid

        if isinstance(node, Between):
            subject, valid = self.eval(node.layer)
            low, low_valid = self.eval(node.low)
            high, high_valid = self.eval(node.high)
            inside = (subject >= low) & (subject <= high)
            return _as_float(inside), valid & low_valid & high_valid

        if isinstance(node, NullCheck):
            _, valid = self.eval(node.layer)
            if node.op == "isnull":
                return _as_float(~valid), np.ones(size, dtype=bool)
            if node.op == "isnotnull":
                return _as_float(valid), np.ones(size, dtype=bool)
            raise EvalError(f"Unknown null check: {node.op!r}")

        if isinstance(node, Function):
            return self._function(node)

        if isinstance(node, Spatial):
            raise EvalError(
                f"Spatial predicate '{node.op}' has no raster form here; only "
                "within(layer) and intersects(layer) are supported."
            )

        if isinstance(node, Assignments):
            raise EvalError("A LET block can only appear at the top of an expression.")

        children(node)  # raises on unknown node types
        raise EvalError(f"Cannot evaluate node: {node!r}")

    def _layer(self, node: BoundLayer) -> Result:
        if node.error is not None:
            raise EvalError(f"Layer '{node.name}' is unbound: {node.error}")
        if node.source is None:
            raise EvalError(f"Layer '{node.name}' has no source.")
        if not isinstance(node.source, RasterGrid):
            raise EvalError(f"Layer '{node.name}' is a vector layer and was not rasterized.")
        return self.block.sample(node.source)

    def _binary(self, node: Binary) -> Result:
        left, left_valid = self.eval(node.left)
        right, right_valid = self.eval(node.right)
        valid = left_valid & right_valid
        op = node.op

        if op in ARITHMETIC_OPS:
            with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
                if op == "+":
                    values = left + right
                elif op == "-":
                    values = left - right
                elif op == "*":
                    values = left * right
                else:
                    valid = valid & (right != 0)
                    values = np.divide(left, right, out=np.zeros_like(left), where=right != 0)
            return values, valid & np.isfinite(values)

        if op in COMPARISON_OPS:
            if op == ">":
                result = left > right
            elif op == "<":
                result = left < right
            elif op == ">=":
                result = left >= right
            elif op == "<=":
                result = left <= right
            elif op == "==":
                result = left == right
            else:
                result = left != right
            return _as_float(result), valid

        if op in LOGICAL_OPS:
            if op == "AND":
                return _as_float(_truthy(left) & _truthy(right)), valid
            return _as_float(_truthy(left) | _truthy(right)), valid

        raise EvalError(f"Unknown operator: {op!r}")

    def _function(self, node: Function) -> Result:
        name = node.name
        args = [self.eval(arg) for arg in node.args]

        if name == "abs":
            _require_arity(name, args, 1, 1)
            values, valid = args[0]
            return np.abs(values), valid

        if name in ("min", "max"):
            _require_arity(name, args, 1, None)
            reduce = np.minimum if name == "min" else np.maximum
            values, valid = args[0]
            for other, other_valid in args[1:]:
                values = reduce(values, other)
                valid = valid & other_valid
            return values, valid

        if name == "mask" and len(args) == 2:
            (values, valid), (keep, keep_valid) = args
            return values, valid & keep_valid & _truthy(keep)

        if name in RASTERIZATION_FUNCTIONS:
            raise EvalError(f"Rasterization function '{name}' was not bound to a vector layer.")
        raise EvalError(f"Unknown function: {name!r}")


def _require_arity(name: str, args: list[Result], low: int, high: int | None) -> None:
    if len(args) < low or (high is not None and len(args) > high):
        expected = str(low) if high == low else f"at least {low}"
        raise EvalError(f"Function '{name}' expects {expected} argument(s), got {len(args)}.")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def _resolve(bound_ast: Expression, result_name: str | None) -> Node:
    if isinstance(bound_ast, Assignments):
        return bound_ast.result(result_name)
    return bound_ast


def find_first_raster(node: Expression) -> RasterGrid | None:
    """Depth-first search for the first raster-backed :class:`BoundLayer`."""
    if isinstance(node, BoundLayer) and isinstance(node.source, RasterGrid):
        return node.source
    for child in children(node):
        found = find_first_raster(child)
        if found is not None:
            return found
    return None


def evaluate(
    bound_ast: Expression,
    *,
    output_nodata: float = math.nan,
    chunk_rows: int = 256,
    workers: int = 1,
    result_name: str | None = None,
    cancel_event: _CancelFlag | None = None,
) -> EvaluationResult:
    """Evaluate *bound_ast* for every pixel of its output grid.

    The output grid is that of the first raster layer in the expression.

    Args:
        bound_ast: AST returned by the binder.
        output_nodata: Value written where the result is null.
        chunk_rows: Rows per evaluation block.
        workers: Threads evaluating blocks; ``1`` runs inline.
        result_name: For a ``LET`` block, the assignment to evaluate
            (the last one by default).
        cancel_event: Anything with ``is_set()``; checked between blocks.

    Raises:
        EvalError: If the AST is unbound or malformed, or references no
            raster.
        QueryCancelledError: If *cancel_event* is set during evaluation.
    """
    expression = _resolve(bound_ast, result_name)
    source = find_first_raster(expression)
    if source is None:
        raise EvalError("No raster layer found in expression; cannot determine output size.")

    t0 = time.perf_counter()
    width, height = source.width, source.height
    out = np.empty(width * height, dtype=np.float32)
    step = max(1, chunk_rows)
    starts = list(range(0, height, step))

    def run_block(start: int) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise QueryCancelledError("Evaluation cancelled.")
        stop = min(start + step, height)
        block = _Block.row_range(start, stop, width)
        values, valid = _BlockEvaluator(block).eval(expression)
        values = np.broadcast_to(values, (block.size,))
        valid = np.broadcast_to(valid, (block.size,))
        out[start * width:stop * width] = np.where(valid, values, output_nodata)

    if workers > 1 and len(starts) > 1:
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="evaluate") as executor:
            for _ in executor.map(run_block, starts):
                pass
    else:
        for start in starts:
            run_block(start)

    metadata = replace(
        source.metadata,
        width=width,
        height=height,
        nodata=output_nodata,
        stats=compute_stats(out, output_nodata),
        tags=dict(source.metadata.tags),
    )
    logger.debug(
        "Evaluated %dx%d in %d block(s) in %.3fs (%d valid)",
        width, height, len(starts), time.perf_counter() - t0, metadata.stats.valid_count,
    )
    return EvaluationResult(RasterGrid(out, width, height, output_nodata, metadata), metadata)


def evaluate_at(
    bound_ast: Expression,
    row: int,
    col: int,
    *,
    result_name: str | None = None,
) -> float | None:
    """Evaluate *bound_ast* at a single output pixel.

    Returns the pixel value, or ``None`` where the result is null
    (including pixels outside every source).
    """
    expression = _resolve(bound_ast, result_name)
    source = find_first_raster(expression)
    if source is None:
        raise EvalError("No raster layer found in expression; cannot determine output size.")
    block = _Block(np.array([row], dtype=np.int64), np.array([col], dtype=np.int64), source.width)
    values, valid = _BlockEvaluator(block).eval(expression)
    if not bool(np.broadcast_to(valid, (1,))[0]):
        return None
    return float(np.broadcast_to(values, (1,))[0])

