"""
Raster Query — Expression Parser
=================================
Turns a raster-algebra expression into an AST (see :mod:`raster_query.ast_nodes`).

Supports:
    - Layer references: bare identifiers (``burn``) or double-quoted names
      with spaces (``"Canopy Bulk Density"``)
    - Logical ops ``AND, OR, NOT``; comparisons ``> < >= <= == !=``;
      arithmetic ``+ - * /``; unary negation
    - Functions ``abs(), min(), max(), mask()`` and the vector
      rasterization functions ``mask, label, category, distance_to, edge,
      buffer, intersect``
    - Spatial predicates ``intersects(), within(), contains(), touches()``
    - ``x IN (a, b)``, ``x IS NULL``, ``x IS NOT NULL``, ``x BETWEEN a AND b``
    - Ternaries ``cond ? a : b``
    - ``LET name = expr`` blocks; later assignments may use earlier names
    - Unit literals converted to metres: ``0.25 miles``, ``1 km``, ``500 ft``
    - Comments with ``//`` or ``#``; single-quoted strings with ``\\'`` escapes

Precedence, lowest first: LET → ternary → OR → AND → comparison →
additive → multiplicative → unary → atom.

Usage::

    from raster_query.parser import parse

    ast = parse("burn_probability > 0.5 AND slope < 20")
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from raster_query.ast_nodes import (
    COMPARISON_OPS,
    SPATIAL_OPS,
    Assignments,
    Between,
    Binary,
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
)
from raster_query.shared.exceptions import QuerySyntaxError

logger = logging.getLogger("rasterquery.parser")

# Metres per unit.
UNIT_FACTORS: dict[str, float] = {
    "mile": 1609.34,
    "miles": 1609.34,
    "km": 1000.0,
    "meter": 1.0,
    "meters": 1.0,
    "ft": 0.3048,
    "feet": 0.3048,
}

KEYWORDS = frozenset({"LET", "IN", "IS", "NOT", "NULL", "BETWEEN", "AND", "OR"})

_TOKEN_RE = re.compile(
    r"""
      (?P<ws>\s+)
    | (?P<comment>(?:\#|//)[^\n]*)
    | (?P<layer>"(?:[^"\\]|\\.)*")
    | (?P<string>'(?:[^'\\]|\\.)*')
    | (?P<number>(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?(?![\w.]))
    | (?P<word>[A-Za-z_][\w.]*)
    | (?P<op>>=|<=|==|!=|[><?:=+\-*/,()])
    """,
    re.VERBOSE,
)


@dataclass(frozen=True)
class Token:
    kind: str  # layer | string | number | word | op
    text: str
    position: int


def tokenize(text: str) -> list[Token]:
    """Split *text* into tokens, dropping whitespace and comments.

    Raises:
        QuerySyntaxError: On a character no token rule accepts.
    """
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise QuerySyntaxError("Unexpected character", text[pos], len(tokens))
        kind = match.lastgroup or ""
        if kind not in ("ws", "comment"):
            tokens.append(Token(kind, match.group(), len(tokens)))
        pos = match.end()
    return tokens


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, tokens: list[Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.assignments: dict[str, Node] = {}

    # ------------------------------------------------------------------
    # Token stream helpers
    # ------------------------------------------------------------------

    def peek(self, offset: int = 0) -> Token | None:
        i = self.index + offset
        return self.tokens[i] if i < len(self.tokens) else None

    def peek_text(self) -> str | None:
        token = self.peek()
        return token.text if token is not None else None

    def consume(self, expected: str | None = None) -> Token:
        token = self.peek()
        if token is None:
            reason = f"Expected '{expected}'" if expected else "Unexpected end of input"
            raise QuerySyntaxError(reason, None, self.index)
        if expected is not None and token.text != expected:
            raise QuerySyntaxError(f"Expected '{expected}'", token.text, token.position)
        self.index += 1
        return token

    def error(self, reason: str) -> QuerySyntaxError:
        token = self.peek()
        if token is None:
            return QuerySyntaxError(reason, None, self.index)
        return QuerySyntaxError(reason, token.text, token.position)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def parse(self) -> Expression:
        if not self.tokens:
            raise QuerySyntaxError("Empty expression", None, 0)

        if self.peek_text() == "LET":
            while self.peek_text() == "LET":
                self.consume("LET")
                name = self.consume()
                if name.kind != "word" or name.text in KEYWORDS:
                    raise QuerySyntaxError("Expected a variable name", name.text, name.position)
                self.consume("=")
                self.assignments[name.text] = self.parse_ternary()
            result: Expression = Assignments(dict(self.assignments))
        else:
            result = self.parse_ternary()

        if self.peek() is not None:
            raise self.error("Unexpected token")
        return result

    # ------------------------------------------------------------------
    # Grammar rules, lowest precedence first
    # ------------------------------------------------------------------

    def parse_ternary(self) -> Node:
        condition = self.parse_or()
        if self.peek_text() == "?":
            self.consume("?")
            true_expr = self.parse_ternary()
            self.consume(":")
            false_expr = self.parse_ternary()
            return Ternary(condition, true_expr, false_expr)
        return condition

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.peek_text() == "OR":
            self.consume("OR")
            node = Binary("OR", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_comparison()
        while self.peek_text() == "AND":
            self.consume("AND")
            node = Binary("AND", node, self.parse_comparison())
        return node

    def parse_comparison(self) -> Node:
        left = self.parse_additive()
        op = self.peek_text()
        if op in COMPARISON_OPS:
            self.consume()
            return Binary(op, left, self.parse_additive())
        return left

    def parse_additive(self) -> Node:
        node = self.parse_multiplicative()
        while self.peek_text() in ("+", "-"):
            op = self.consume().text
            node = Binary(op, node, self.parse_multiplicative())
        return node

    def parse_multiplicative(self) -> Node:
        node = self.parse_unary()
        while self.peek_text() in ("*", "/"):
            op = self.consume().text
            node = Binary(op, node, self.parse_unary())
        return node

    def parse_unary(self) -> Node:
        if self.peek_text() == "NOT":
            self.consume("NOT")
            return Unary("NOT", self.parse_unary())
        if self.peek_text() == "-":
            self.consume("-")
            return Unary("neg", self.parse_unary())
        return self.parse_atom()

    def parse_atom(self) -> Node:
        if self.peek_text() == "(":
            self.consume("(")
            node = self.parse_ternary()
            self.consume(")")
            return node

        token = self.consume()
        if token.kind == "op" or token.text in KEYWORDS:
            raise QuerySyntaxError("Unexpected token", token.text, token.position)

        if token.kind == "word" and self.peek_text() == "(":
            return self.parse_call(token)

        subject = self.parse_value(token)

        follower = self.peek_text()
        if follower == "IN":
            self.consume("IN")
            self.consume("(")
            values: list[Node] = []
            while self.peek_text() != ")":
                values.append(self.parse_additive())
                if self.peek_text() == ",":
                    self.consume(",")
                elif self.peek_text() != ")":
                    raise self.error("Expected ',' or ')'")
            self.consume(")")
            return In(subject, tuple(values))

        if follower == "IS":
            self.consume("IS")
            if self.peek_text() == "NOT":
                self.consume("NOT")
                self.consume("NULL")
                return NullCheck("isnotnull", subject)
            self.consume("NULL")
            return NullCheck("isnull", subject)

        if follower == "BETWEEN":
            self.consume("BETWEEN")
            low = self.parse_additive()
            self.consume("AND")
            high = self.parse_additive()
            return Between(subject, low, high)

        return subject

    def parse_call(self, name_token: Token) -> Node:
        name = name_token.text.lower()
        self.consume("(")
        args: list[Node] = []
        while self.peek_text() != ")":
            args.append(self.parse_ternary())
            if self.peek_text() == ",":
                self.consume(",")
            elif self.peek_text() != ")":
                raise self.error("Expected ',' or ')'")
        self.consume(")")

        if name in SPATIAL_OPS:
            return Spatial(name, tuple(args))
        return Function(name, tuple(args))

    def parse_value(self, token: Token) -> Node:
        if token.kind == "layer":
            return Layer(token.text[1:-1].replace('\\"', '"'))
        if token.kind == "string":
            return Literal(token.text[1:-1].replace("\\'", "'"))
        if token.kind == "number":
            return Literal(self.apply_unit(float(token.text)))
        if token.text == "true":
            return Literal(True)
        if token.text == "false":
            return Literal(False)
        if token.text == "null":
            return Literal(None)
        if token.text in self.assignments:
            return self.assignments[token.text]
        return Layer(token.text)

    def apply_unit(self, value: float) -> float:
        """Convert *value* to metres when a unit token follows it."""
        unit = self.peek()
        if unit is None or unit.kind != "word" or unit.text in KEYWORDS:
            return value
        factor = UNIT_FACTORS.get(unit.text.lower())
        if factor is None:
            raise QuerySyntaxError("Unknown unit", unit.text, unit.position)
        self.consume()
        return value * factor


def parse(text: str) -> Expression:
    """Parse *text* into an AST.

    Returns a single node, or an :class:`~raster_query.ast_nodes.Assignments`
    block when the expression is a ``LET`` sequence.

    Raises:
        QuerySyntaxError: On malformed input, with the offending token and
            its position in the token stream.
    """
    tokens = tokenize(text)
    logger.debug("Tokens: %s", [t.text for t in tokens])
    ast = _Parser(tokens).parse()
    logger.debug("Parsed AST: %r", ast)
    return ast
