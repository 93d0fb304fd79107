"""
Raster Query — CLI Entry Point
===============================
Installed as the ``raster-query`` command via ``pyproject.toml``.

Usage:
    raster-query --expr "burn > 0.5 AND slope < 20" \\
        --layer burn=data/burn.tif --layer slope=data/slope.tif \\
        --output output/burn_slope.tif
    raster-query --expr "distance_to(roads) < 1 km" --layer roads=data/roads.geojson \\
        --layer dem=data/dem.tif --aoi 39.1,-120.7 --radius 5000 --output out.tif
"""

from __future__ import annotations

import sys
from pathlib import Path

import click

from raster_query.config import QueryConfig
from raster_query.pipeline import RasterQueryTool
from raster_query.shared.exceptions import RasterQueryError


def _parse_layers(
    ctx: click.Context, param: click.Parameter, values: tuple[str, ...]
) -> dict[str, Path]:
    layers: dict[str, Path] = {}
    for value in values:
        name, sep, path = value.partition("=")
        if not sep or not name.strip() or not path.strip():
            raise click.BadParameter(f"expected NAME=PATH, got '{value}'", ctx=ctx, param=param)
        layers[name.strip()] = Path(path.strip())
    return layers


def _parse_aoi(
    ctx: click.Context, param: click.Parameter, value: str | None
) -> tuple[float, float] | None:
    if value is None:
        return None
    try:
        lat, lon = (float(part) for part in value.split(","))
    except ValueError:
        raise click.BadParameter(f"expected LAT,LON, got '{value}'", ctx=ctx, param=param) from None
    return lat, lon


@click.command(
    name="raster-query",
    help="Evaluate a raster-algebra expression over raster and vector layers "
         "and write the derived raster to a GeoTIFF.",
)
@click.option("--expr", "-e", "expression", required=True, help="Expression to evaluate.")
@click.option(
    "--layer", "-l", "layers",
    multiple=True,
    callback=_parse_layers,
    metavar="NAME=PATH",
    help="Layer file referenced by the expression (repeatable).",
)
@click.option(
    "--output", "-o", "output_path",
    required=True,
    type=click.Path(file_okay=True, dir_okay=False, path_type=Path),
    help="Path for the output GeoTIFF.",
)
@click.option("--aoi", callback=_parse_aoi, metavar="LAT,LON", help="Centre of a circular AOI.")
@click.option("--radius", type=float, default=None, help="AOI radius in metres.")
@click.option(
    "--nodata",
    type=float,
    default=None,
    help="No-data value written where the expression has no result (default NaN).",
)
@click.option("--verbose", "-v", is_flag=True, default=False, help="Enable debug logging.")
def main(
    expression: str,
    layers: dict[str, Path],
    output_path: Path,
    aoi: tuple[float, float] | None,
    radius: float | None,
    nodata: float | None,
    verbose: bool,
) -> None:
    """CLI entry point: wires Click options into RasterQueryTool."""
    config = QueryConfig(aoi_center=aoi, aoi_radius_m=radius)
    if nodata is not None:
        config.output_nodata = nodata

    tool = RasterQueryTool(expression, layers, output_path, config, verbose=verbose)

    try:
        tool.run()
        click.echo(f"\nRaster written to: {output_path}")
        if tool.result is not None and tool.result.metadata.stats is not None:
            stats = tool.result.metadata.stats
            click.echo(
                f"  {stats.valid_count}/{stats.total_pixels} valid pixels  "
                f"min={stats.min:g}  max={stats.max:g}  mean={stats.mean:g}"
            )
    except RasterQueryError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
