"""
Raster Query — Layer Binder
============================
Resolves every layer reference in a parsed AST to data on one common
pixel grid.

:func:`bind_layers` is the async entry point:

1. collect layer names and rasterization requests from the AST;
2. fetch every layer through the :class:`~raster_query.cache.LayerCache`,
   retrying transient failures once;
3. pick the reference grid and rasterize vector layers onto it through
   the :class:`~raster_query.worker.RasterizeWorkerPool`;
4. reproject and align all rasters onto the reference;
5. rewrite the AST with :func:`bind_ast`.

Any failure aborts the whole query with a
:class:`~raster_query.shared.exceptions.BindError`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, TypeVar

from raster_query.align import align_layers, select_reference_grid
from raster_query.ast_nodes import (
    Assignments,
    Between,
    Binary,
    BoundLayer,
    Expression,
    Function,
    In,
    Layer,
    Literal,
    NullCheck,
    Spatial,
    Ternary,
    Unary,
    children,
    rasterization_of,
    synthetic_layer_name,
)
from raster_query.cache import LayerCache
from raster_query.collector import RasterizeRequest, collect_layer_names, collect_raster_functions
from raster_query.config import QueryConfig
from raster_query.grid import GridMetadata, LayerData, LayerPayload, RasterGrid, VectorFeatureSet
from raster_query.shared.exceptions import (
    BindError,
    FetchError,
    LayerNotFoundError,
    QueryCancelledError,
    RasterQueryError,
)
from raster_query.worker import RasterizeWorkerPool

logger = logging.getLogger("rasterquery.binder")

T = TypeVar("T")

ProgressCallback = Callable[[int, int], None]


@dataclass
class BoundQuery:
    """Result of :func:`bind_layers`.

    Attributes:
        ast: The bound AST.
        reference: The reference raster every layer was aligned to.
        layers: Aligned payload per referenced layer name.
        rasterized: Rasterized grid per synthetic layer name.
    """

    ast: Expression
    reference: RasterGrid
    layers: dict[str, LayerPayload] = field(default_factory=dict)
    rasterized: dict[str, RasterGrid] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


async def fetch_layer(cache: LayerCache, key: str, config: QueryConfig) -> LayerData:
    """Fetch *key* through *cache*, retrying transient failures.

    :class:`LayerNotFoundError` fails immediately; any other error is
    retried up to ``config.fetch_attempts`` attempts in total with
    ``config.fetch_retry_delay`` seconds between them.

    Raises:
        BindError: When the layer does not exist or every attempt failed.
    """
    attempts = max(1, config.fetch_attempts)
    last_error: Exception | None = None
    for attempt in range(1, attempts + 1):
        try:
            return await cache.get(key, config.bounds_hint)
        except LayerNotFoundError as exc:
            raise BindError(f"Layer '{key}' not found.") from exc
        except Exception as exc:  # noqa: BLE001
            last_error = exc
            logger.warning("Fetch of '%s' attempt %d/%d failed: %s", key, attempt, attempts, exc)
            if attempt < attempts:
                await asyncio.sleep(config.fetch_retry_delay)

    reason = last_error.message if isinstance(last_error, FetchError) else str(last_error)
    raise BindError(
        f"Failed to fetch layer '{key}' after {attempts} attempt(s): {reason}"
    ) from last_error


async def _until_cancelled(
    awaitable: Awaitable[T],
    cancel_event: asyncio.Event | None,
    pool: RasterizeWorkerPool | None,
) -> T:
    """Await *awaitable*, aborting as soon as *cancel_event* is set."""
    if cancel_event is None:
        return await awaitable
    task = asyncio.ensure_future(awaitable)
    if cancel_event.is_set():
        task.cancel()
        raise QueryCancelledError("Query cancelled before binding completed.")

    waiter = asyncio.ensure_future(cancel_event.wait())
    done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    if task in done:
        waiter.cancel()
        return task.result()

    task.cancel()
    if pool is not None:
        pool.cancel()
    raise QueryCancelledError("Query cancelled while binding layers.")


# ---------------------------------------------------------------------------
# AST rewriting
# ---------------------------------------------------------------------------


def bind_ast(
    ast: Expression,
    layers: Mapping[str, LayerPayload],
    rasterized: Mapping[str, RasterGrid] | None = None,
) -> Expression:
    """Return a copy of *ast* with every layer reference resolved.

    ``Layer`` nodes become :class:`BoundLayer` nodes carrying their payload,
    or an error when *layers* has no entry. Rasterization calls whose
    synthetic layer is present in *rasterized* collapse into a single
    :class:`BoundLayer` named ``__{fn}_{layer}``. Shared subtrees (e.g. from
    ``LET``) are bound once.
    """
    rasterized = rasterized or {}
    memo: dict[int, Expression] = {}

    def bind(node: Expression) -> Expression:
        key = id(node)
        if key not in memo:
            memo[key] = _bind_node(node)
        return memo[key]

    def _bind_node(node: Expression) -> Expression:
        if isinstance(node, (Literal, BoundLayer)):
            return node
        if isinstance(node, Layer):
            payload = layers.get(node.name)
            if payload is None:
                return BoundLayer(node.name, error=BindError(f"Layer '{node.name}' is not bound."))
            source_type = "raster" if isinstance(payload, RasterGrid) else "vector"
            return BoundLayer(node.name, source=payload, source_type=source_type)

        found = rasterization_of(node)
        if found is not None:
            name = synthetic_layer_name(*found)
            if name in rasterized:
                return BoundLayer(name, source=rasterized[name], source_type="raster")

        if isinstance(node, Unary):
            return Unary(node.op, bind(node.expr))
        if isinstance(node, Binary):
            return Binary(node.op, bind(node.left), bind(node.right))
        if isinstance(node, Function):
            return Function(node.name, tuple(bind(arg) for arg in node.args))
        if isinstance(node, Spatial):
            return Spatial(node.op, tuple(bind(arg) for arg in node.args))
        if isinstance(node, In):
            return In(bind(node.layer), tuple(bind(v) for v in node.values))
        if isinstance(node, NullCheck):
            return NullCheck(node.op, bind(node.layer))
        if isinstance(node, Between):
            return Between(bind(node.layer), bind(node.low), bind(node.high))
        if isinstance(node, Ternary):
            return Ternary(bind(node.condition), bind(node.true_expr), bind(node.false_expr))
        if isinstance(node, Assignments):
            return Assignments({name: bind(value) for name, value in node.bindings.items()})
        children(node)  # raises on unknown node types
        return node

    return bind(ast)


def _direct_layer_names(ast: Expression) -> set[str]:
    """Layer names referenced outside the first argument of a rasterization."""
    names: set[str] = set()
    stack: list[Expression] = [ast]
    while stack:
        node = stack.pop()
        if isinstance(node, (Layer, BoundLayer)):
            names.add(node.name)
            continue
        kids = children(node)
        if rasterization_of(node) is not None:
            kids = kids[1:]
        stack.extend(kids)
    return names


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _rasterize_options(layer: str, request: RasterizeRequest) -> tuple[str | None, float | None]:
    """Map a request's literal option onto ``(attribute_field, buffer_distance)``."""
    if request.option is None:
        return None, None
    if request.function == "buffer":
        try:
            return None, float(request.option)  # type: ignore[arg-type]
        except (TypeError, ValueError):
            raise BindError(
                f"buffer({layer}, {request.option!r}): distance must be a number."
            ) from None
    return str(request.option), None


async def bind_layers(
    ast: Expression,
    cache: LayerCache,
    *,
    config: QueryConfig | None = None,
    pool: RasterizeWorkerPool | None = None,
    on_progress: ProgressCallback | None = None,
    cancel_event: asyncio.Event | None = None,
) -> BoundQuery:
    """Fetch, rasterize, align and bind every layer *ast* references.

    Args:
        ast: Parsed expression.
        cache: Layer cache in front of the data source.
        config: Fetch and pool settings; defaults to :class:`QueryConfig`.
        pool: Rasterization pool. A temporary pool is created (and closed)
            when omitted.
        on_progress: Called with ``(completed, total)`` after every fetch
            and rasterization.
        cancel_event: Setting it aborts binding at the next suspension
            point and cancels pending rasterizations.

    Raises:
        BindError: On missing layers, exhausted retries, unknown CRSs or
            rasters that cannot be aligned.
        QueryCancelledError: If *cancel_event* is set mid-flight.
    """
    config = config or QueryConfig()
    t0 = time.perf_counter()

    names = sorted(collect_layer_names(ast))
    requests = collect_raster_functions(ast)
    total = len(names) + sum(len(r) for r in requests.values())
    completed = 0

    def tick() -> None:
        nonlocal completed
        completed += 1
        if on_progress is not None:
            on_progress(completed, total)

    async def fetch(key: str) -> LayerData:
        data = await fetch_layer(cache, key, config)
        tick()
        return data

    logger.debug("Binding layers %s with rasterizations %s", names, requests)
    fetched = await _until_cancelled(
        asyncio.gather(*(fetch(name) for name in names)), cancel_event, pool
    )
    payloads: dict[str, LayerPayload] = {name: entry.data for name, entry in zip(names, fetched)}

    direct = _direct_layer_names(ast)
    for name, payload in payloads.items():
        if name in direct and not isinstance(payload, RasterGrid):
            raise BindError(
                f"Layer '{name}' is a vector layer; rasterize it first, e.g. mask({name})."
            )
        if name in requests and not isinstance(payload, VectorFeatureSet):
            fns = ", ".join(sorted(r.function for r in requests[name]))
            raise BindError(f"Layer '{name}' is a raster; {fns}() expects a vector layer.")

    rasters = {name: p for name, p in payloads.items() if isinstance(p, RasterGrid)}
    reference = select_reference_grid(rasters)[1] if rasters else None

    own_pool = pool is None
    if pool is None:
        pool = RasterizeWorkerPool(config.rasterize_workers, config.max_pending_rasterizations)
    try:
        jobs: list[tuple[str, str, VectorFeatureSet, GridMetadata, str | None, float | None]] = []
        for layer, layer_requests in requests.items():
            vector = payloads[layer]
            assert isinstance(vector, VectorFeatureSet)
            grid: GridMetadata | None = reference.metadata if reference is not None else vector.metadata
            if grid is None:
                raise BindError(
                    f"Vector layer '{layer}' has no grid to rasterize onto and the query "
                    "references no raster layer."
                )
            for request in sorted(layer_requests, key=lambda r: (r.function, str(r.option))):
                attribute_field, buffer_distance = _rasterize_options(layer, request)
                name = synthetic_layer_name(request.function, layer, request.option)
                jobs.append(
                    (name, request.function, vector, grid, attribute_field, buffer_distance)
                )

        async def run(
            fn: str,
            vector: VectorFeatureSet,
            grid: GridMetadata,
            attribute_field: str | None,
            buffer_distance: float | None,
        ) -> RasterGrid:
            assert pool is not None
            result = await pool.submit(fn, vector, grid, attribute_field, buffer_distance)
            tick()
            return result

        results = await _until_cancelled(
            asyncio.gather(*(run(*job[1:]) for job in jobs)), cancel_event, pool
        )
    except (BindError, QueryCancelledError):
        raise
    except RasterQueryError as exc:
        raise BindError(f"Rasterization failed: {exc.message}") from exc
    except Exception as exc:  # noqa: BLE001  (GEOS and pyproj raise their own types)
        raise BindError(f"Rasterization failed: {exc}") from exc
    finally:
        if own_pool:
            pool.close()

    rasterized: dict[str, RasterGrid] = {job[0]: r for job, r in zip(jobs, results)}

    all_rasters: dict[str, LayerPayload] = {**rasters, **rasterized}
    if reference is None:
        reference = select_reference_grid(all_rasters)[1]
    reference, aligned = align_layers(all_rasters, reference)

    layers = {name: aligned.get(name, payload) for name, payload in payloads.items()}
    rasterized = {name: aligned[name] for name in rasterized}  # type: ignore[misc]
    bound = bind_ast(ast, layers, rasterized)

    logger.debug(
        "Bound %d layer(s) and %d rasterization(s) onto %r in %.3fs",
        len(layers), len(rasterized), reference, time.perf_counter() - t0,
    )
    return BoundQuery(bound, reference, layers, rasterized)
