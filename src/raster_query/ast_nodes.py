"""
Raster Query — AST Node Definitions
====================================
The expression grammar produces a closed set of frozen dataclasses. Every
walk over the tree dispatches on these types through :func:`children`, which
raises on anything it does not know instead of silently skipping it.

Node kinds
----------
:class:`Literal`     number, string, boolean or ``null`` constant
:class:`Layer`       reference to a named layer
:class:`Unary`       ``NOT x`` / ``-x``
:class:`Binary`      arithmetic, comparison and logical operators
:class:`Function`    ``name(args...)`` including the rasterization functions
:class:`Spatial`     ``intersects / within / contains / touches`` predicates
:class:`In`          ``x IN (a, b, ...)``
:class:`NullCheck`   ``x IS NULL`` / ``x IS NOT NULL``
:class:`Between`     ``x BETWEEN low AND high``
:class:`Ternary`     ``cond ? a : b``
:class:`Assignments` ordered ``LET`` block (name → node)
:class:`BoundLayer`  a :class:`Layer` resolved by the binder
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Mapping, Union

if TYPE_CHECKING:
    from raster_query.grid import LayerPayload

from raster_query.shared.exceptions import EvalError

# Names the parser tags as spatial predicates rather than generic functions.
SPATIAL_OPS = frozenset({"intersects", "within", "contains", "touches"})

# Functions that turn a vector layer into a raster before evaluation.
RASTERIZATION_FUNCTIONS = frozenset(
    {"mask", "label", "category", "distance_to", "edge", "within", "buffer", "intersect"}
)

# Rasterizations that accept a literal second argument (attribute field or
# buffer distance in metres).
OPTION_FUNCTIONS = frozenset({"label", "category", "buffer"})

# Spatial predicates that double as rasterizations when given a single layer.
SPATIAL_RASTERIZATIONS = {"within": "within", "intersects": "intersect"}

ARITHMETIC_OPS = frozenset({"+", "-", "*", "/"})
COMPARISON_OPS = frozenset({">", "<", ">=", "<=", "==", "!="})
LOGICAL_OPS = frozenset({"AND", "OR"})

LiteralValue = Union[float, str, bool, None]


# ---------------------------------------------------------------------------
# Node classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: LiteralValue


@dataclass(frozen=True)
class Layer:
    name: str


@dataclass(frozen=True)
class Unary:
    op: str  # "NOT" | "neg"
    expr: Node


@dataclass(frozen=True)
class Binary:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True)
class Function:
    name: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class Spatial:
    op: str
    args: tuple[Node, ...]


@dataclass(frozen=True)
class In:
    layer: Node
    values: tuple[Node, ...]


@dataclass(frozen=True)
class NullCheck:
    op: str  # "isnull" | "isnotnull"
    layer: Node


@dataclass(frozen=True)
class Between:
    layer: Node
    low: Node
    high: Node


@dataclass(frozen=True)
class Ternary:
    condition: Node
    true_expr: Node
    false_expr: Node


@dataclass(frozen=True)
class BoundLayer:
    """A layer reference resolved by the binder.

    Exactly one of ``source`` or ``error`` is set. Synthetic layers created
    from rasterization functions are named ``__{fn}_{layer}``.
    """

    name: str
    source: LayerPayload | None = None
    source_type: str | None = None  # "raster" | "vector"
    error: Exception | None = None


@dataclass(frozen=True)
class Assignments:
    """Ordered ``LET name = expr`` block."""

    bindings: Mapping[str, Node] = field(default_factory=dict)

    def __getitem__(self, name: str) -> Node:
        return self.bindings[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self.bindings)

    def __len__(self) -> int:
        return len(self.bindings)

    def result(self, name: str | None = None) -> Node:
        """Return the named binding, or the last one when *name* is ``None``."""
        if not self.bindings:
            raise EvalError("LET block has no assignments to evaluate.")
        if name is None:
            return list(self.bindings.values())[-1]
        if name not in self.bindings:
            raise EvalError(f"LET block has no assignment named '{name}'.")
        return self.bindings[name]


Node = Union[
    Literal, Layer, Unary, Binary, Function, Spatial, In, NullCheck, Between, Ternary, BoundLayer
]
Expression = Union[Node, Assignments]


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------


def children(node: Expression) -> tuple[Expression, ...]:
    """Return every direct child of *node*.

    Raises:
        EvalError: If *node* is not an AST node.
    """
    if isinstance(node, (Literal, Layer, BoundLayer)):
        return ()
    if isinstance(node, Unary):
        return (node.expr,)
    if isinstance(node, Binary):
        return (node.left, node.right)
    if isinstance(node, (Function, Spatial)):
        return node.args
    if isinstance(node, In):
        return (node.layer, *node.values)
    if isinstance(node, NullCheck):
        return (node.layer,)
    if isinstance(node, Between):
        return (node.layer, node.low, node.high)
    if isinstance(node, Ternary):
        return (node.condition, node.true_expr, node.false_expr)
    if isinstance(node, Assignments):
        return tuple(node.bindings.values())
    raise EvalError(f"Unknown AST node: {node!r}")


def walk(node: Expression) -> Iterator[Expression]:
    """Yield *node* and all its descendants, depth first."""
    yield node
    for child in children(node):
        yield from walk(child)


def rasterization_of(node: Expression) -> tuple[str, str, LiteralValue] | None:
    """Describe the rasterization *node* stands for, if any.

    Returns ``(function, layer_name, option)`` when *node* is a rasterization
    function (or single-layer ``within`` / ``intersects`` predicate) whose
    first argument is a layer and whose optional second argument is a
    literal; ``option`` is that literal or ``None``. Returns ``None`` for
    everything else, e.g. ``mask(a, b)`` with two layer arguments.
    """
    if isinstance(node, Function) and node.name in RASTERIZATION_FUNCTIONS:
        fn = node.name
    elif isinstance(node, Spatial) and node.op in SPATIAL_RASTERIZATIONS:
        fn = SPATIAL_RASTERIZATIONS[node.op]
    else:
        return None

    args = node.args
    if not args or len(args) > 2 or not isinstance(args[0], (Layer, BoundLayer)):
        return None
    option: LiteralValue = None
    if len(args) == 2:
        if fn not in OPTION_FUNCTIONS or not isinstance(args[1], Literal):
            return None
        option = args[1].value
    return fn, args[0].name, option


def synthetic_layer_name(fn: str, layer: str, option: LiteralValue = None) -> str:
    """Name of the synthetic layer holding ``fn(layer[, option])``."""
    if option is None:
        return f"__{fn}_{layer}"
    return f"__{fn}_{layer}_{option}"
