"""
Raster Query — Exception Hierarchy
===================================
Every stage of the query pipeline raises exceptions from this module so
callers can catch them at the right level of granularity.

Hierarchy::

    RasterQueryError                     ← catch-all base
    ├── InputValidationError             ← bad tool / CLI inputs
    ├── QuerySyntaxError                 ← malformed expression
    ├── BindError                        ← layers cannot be bound to one grid
    │   └── CRSError                     ← invalid / unknown CRS string
    ├── FetchError                       ← transient layer fetch failure
    │   └── LayerNotFoundError           ← permanent: no layer for that key
    ├── RasterError                      ← malformed raster or grid metadata
    │   └── RasterizeError               ← unsupported rasterization function
    ├── EvalError                        ← malformed / unbound AST
    ├── QueryCancelledError              ← evaluation aborted mid-flight
    └── OutputWriteError                 ← cannot write to output path

No-data is never an error: it is a value meaning "no defined result at this
pixel" and flows through every operator.

Usage::

    from raster_query.shared.exceptions import BindError

    raise BindError("No raster layers found to establish a reference grid.")
"""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


class RasterQueryError(Exception):
    """Base exception for the raster query pipeline.

    Args:
        message: Human-readable description of the error.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message: str = message

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r})"


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


class InputValidationError(RasterQueryError):
    """Raised when the tool's inputs fail pre-processing validation."""


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class QuerySyntaxError(RasterQueryError):
    """Raised when an expression cannot be parsed.

    Always fatal and never retried.

    Args:
        reason: What went wrong.
        token: The offending token, or ``None`` at end of input.
        position: Zero-based index of the token in the token stream.

    Example::

        raise QuerySyntaxError("Expected ')'", token="AND", position=4)
    """

    def __init__(self, reason: str, token: str | None, position: int) -> None:
        found = "end of input" if token is None else f"'{token}'"
        super().__init__(f"{reason}: found {found} at position {position}")
        self.reason: str = reason
        self.token: str | None = token
        self.position: int = position


# ---------------------------------------------------------------------------
# Binding
# ---------------------------------------------------------------------------


class BindError(RasterQueryError):
    """Raised when referenced layers cannot be bound onto one pixel grid.

    Covers missing layers, missing CRS definitions, rasters too large to
    auto-crop, misaligned grids and expressions with no raster at all.
    Aborts the whole evaluation.
    """


class CRSError(BindError):
    """Raised when a coordinate reference system string cannot be parsed.

    Args:
        crs_string: The raw CRS string that caused the error.

    Example::

        raise CRSError("EPSG:99999")
    """

    def __init__(self, crs_string: str) -> None:
        super().__init__(
            f"Invalid or unrecognised CRS: '{crs_string}'. "
            "Use an EPSG code (e.g. 'EPSG:4326') or a valid WKT/PROJ string."
        )
        self.crs_string: str = crs_string


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------


class FetchError(RasterQueryError):
    """Raised when a layer source fails to deliver a layer.

    Treated as transient: the binder retries it once before giving up.

    Args:
        key: The layer key that was requested.
        reason: Underlying transport or decode error message.
    """

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Failed to fetch layer '{key}': {reason}")
        self.key: str = key
        self.reason: str = reason


class LayerNotFoundError(FetchError):
    """Raised when no layer exists for a key. Permanent, never retried.

    Args:
        key: The unknown layer key.
    """

    def __init__(self, key: str) -> None:
        super().__init__(key, "layer not found")


# ---------------------------------------------------------------------------
# Raster
# ---------------------------------------------------------------------------


class RasterError(RasterQueryError):
    """Raised for malformed rasters or grid metadata."""


class RasterizeError(RasterError):
    """Raised when a vector layer cannot be rasterized.

    Args:
        function: The rasterization function that was requested.
        reason: Short explanation.
    """

    def __init__(self, function: str, reason: str) -> None:
        super().__init__(f"Cannot rasterize with '{function}': {reason}")
        self.function: str = function
        self.reason: str = reason


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


class EvalError(RasterQueryError):
    """Raised when a bound AST cannot be evaluated.

    Indicates a programming error (an unbound or malformed AST) rather than
    bad user input; a parser-produced, binder-bound AST never raises it.
    """


class QueryCancelledError(RasterQueryError):
    """Raised when an in-flight evaluation is cancelled by its caller."""


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


class OutputWriteError(RasterQueryError):
    """Raised when the derived raster cannot be written to disk.

    Args:
        output_path: String representation of the path that failed.
        reason: Underlying OS or library error message.
    """

    def __init__(self, output_path: str, reason: str) -> None:
        super().__init__(
            f"Failed to write output to '{output_path}': {reason}"
        )
        self.output_path: str = output_path
        self.reason: str = reason
