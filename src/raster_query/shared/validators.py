"""
Raster Query — Shared Input Validators
=======================================
Static precondition checks used by the query tool and the grid aligner
before any processing begins.

All methods raise an appropriate exception from
:mod:`raster_query.shared.exceptions` rather than returning booleans::

    Validators.assert_file_exists(path)
    Validators.assert_supported_extension(path, (".tif", ".tiff"))
    Validators.assert_grid_metadata_valid(grid.metadata)
"""

from __future__ import annotations

import math
from pathlib import Path
from typing import TYPE_CHECKING, Sequence

from raster_query.shared.exceptions import (
    InputValidationError,
    OutputWriteError,
    RasterError,
)

if TYPE_CHECKING:
    from raster_query.grid import GridMetadata


class Validators:
    """Collection of static precondition checks.

    All methods are ``@staticmethod`` — this class is never instantiated.
    """

    # ------------------------------------------------------------------
    # File-system checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_file_exists(path: Path) -> None:
        """Assert that *path* points to an existing regular file.

        Raises:
            InputValidationError: If *path* does not exist or is a directory.
        """
        path = Path(path)
        if not path.exists():
            raise InputValidationError(
                f"Input file not found: '{path}'. "
                "Check that the path is correct and the file exists."
            )
        if path.is_dir():
            raise InputValidationError(
                f"Expected a file but got a directory: '{path}'."
            )

    @staticmethod
    def assert_output_dir_writable(output_path: Path) -> None:
        """Create the parent directory of *output_path* if it is missing.

        Raises:
            OutputWriteError: If the parent directory cannot be created.
        """
        parent = Path(output_path).parent
        try:
            parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise OutputWriteError(str(output_path), str(exc)) from exc

    @staticmethod
    def assert_supported_extension(path: Path, extensions: Sequence[str]) -> None:
        """Assert that *path* has one of the allowed file extensions.

        Args:
            path: File path to check.
            extensions: Allowed extensions, each starting with a dot.

        Raises:
            InputValidationError: If the extension is not in *extensions*.
        """
        path = Path(path)
        suffix = path.suffix.lower()
        allowed = [ext.lower() for ext in extensions]
        if suffix not in allowed:
            raise InputValidationError(
                f"Unsupported file extension '{suffix}' for '{path.name}'. "
                f"Accepted extensions: {', '.join(allowed)}"
            )

    # ------------------------------------------------------------------
    # Raster checks
    # ------------------------------------------------------------------

    @staticmethod
    def assert_grid_metadata_valid(metadata: GridMetadata) -> None:
        """Assert the structural invariants of a grid description.

        Checks positive dimensions and resolution, ordered raw bounds and
        the presence of a source CRS.

        Raises:
            RasterError: On the first violated invariant.
        """
        if metadata.width <= 0 or metadata.height <= 0:
            raise RasterError(
                f"Grid dimensions must be positive, got "
                f"{metadata.width}x{metadata.height}."
            )
        res = metadata.resolution
        if not (res.x > 0 and res.y > 0) or math.isnan(res.x) or math.isnan(res.y):
            raise RasterError(
                f"Grid resolution must be positive, got ({res.x}, {res.y})."
            )
        min_x, min_y, max_x, max_y = metadata.raw_bounds
        if not (min_x < max_x and min_y < max_y):
            raise RasterError(
                f"Grid bounds are not ordered: {metadata.raw_bounds}."
            )
        if not metadata.projection.source_crs:
            raise RasterError("Grid metadata has no source CRS.")

