"""
Raster Query — Shared Foundation
=================================
Re-exports the base tool class, exception hierarchy and validator
utilities so pipeline modules can import from a single location::

    from raster_query.shared import GeoTool, Validators
    from raster_query.shared.exceptions import BindError
"""

from raster_query.shared.base_tool import GeoTool
from raster_query.shared.exceptions import (
    BindError,
    CRSError,
    EvalError,
    FetchError,
    InputValidationError,
    LayerNotFoundError,
    OutputWriteError,
    QueryCancelledError,
    QuerySyntaxError,
    RasterError,
    RasterizeError,
    RasterQueryError,
)
from raster_query.shared.validators import Validators

__all__ = [
    "GeoTool",
    "Validators",
    "RasterQueryError",
    "InputValidationError",
    "QuerySyntaxError",
    "BindError",
    "CRSError",
    "FetchError",
    "LayerNotFoundError",
    "RasterError",
    "RasterizeError",
    "EvalError",
    "QueryCancelledError",
    "OutputWriteError",
]
