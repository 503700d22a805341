"""Command-line interface for zarrtiles."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys

import numpy as np

from ._calibration import resolve_pixel_sizes
from ._config import ImageLayerConfig
from ._errors import RedirectError, ZarrTilesError
from ._layers import SourceData, init_layer_state_from_source
from ._loader import create_source_data
from ._store import open_reader


# FileNotFoundError: no zarr metadata; ImportError: tensorstore missing
_LOAD_ERRORS = (ZarrTilesError, ValueError, FileNotFoundError, ImportError)


def _load(uri: str) -> SourceData:
    config = ImageLayerConfig(source=uri)
    return asyncio.run(create_source_data(config, open_array=open_reader))


def print_source_info(source: SourceData) -> None:
    """Print the levels and display settings of a loaded source."""
    base = source.loader[0]
    kind = init_layer_state_from_source(source).kind
    print(f"Kind: {kind}")
    if source.name:
        print(f"  Name: {source.name}")
    print(f"  Axes: {source.axis_labels}")
    print(f"  Channel axis: {source.channel_axis}")
    print(f"  Channels: {source.names}")
    print(f"  Tile size: {base.tile_size}")
    if source.loaders:
        print(f"  Grid: {source.rows} x {source.columns} ({len(source.loaders)} cells)")
    for i, level in enumerate(source.loader):
        print(f"  Level {i}: shape={level.shape} dtype={level.dtype}")
    sizes = resolve_pixel_sizes(base.multiscales, 0)
    if sizes is not None:
        print(f"  Pixel size: {sizes.x:g} x {sizes.y:g} nm")


def info_command(args: argparse.Namespace) -> int:
    """Execute the info subcommand.

    Returns
    -------
    int
        Exit code (0 for success, 1 for a redirect, 2 for other errors)
    """
    try:
        print_source_info(_load(args.path))
        return 0
    except RedirectError as e:
        print(f"✗ {e.args[0]}: {e.url}", file=sys.stderr)
        return 1
    except _LOAD_ERRORS as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        return 2


def tile_command(args: argparse.Namespace) -> int:
    """Execute the tile subcommand: read one tile and summarize it."""
    try:
        source = _load(args.path)
        level = source.loader[args.level]
        selection = source.defaults.selection
        if args.selection:
            selection = json.loads(args.selection)
        tile = asyncio.run(level.get_tile(args.x, args.y, selection))
    except (*_LOAD_ERRORS, IndexError) as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        return 2

    print(f"Tile ({args.x}, {args.y}) of level {args.level}")
    print(f"  Size: {tile.width} x {tile.height}")
    print(f"  Dtype: {level.dtype}")
    if tile.data.size:
        print(f"  Range: {np.nanmin(tile.data)} .. {np.nanmax(tile.data)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the CLI.

    Parameters
    ----------
    argv : list[str] | None
        Command-line arguments (defaults to sys.argv[1:])

    Returns
    -------
    int
        Exit code
    """
    parser = argparse.ArgumentParser(
        prog="zarrtiles",
        description="Inspect multiscale OME-Zarr images as display tiles",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    info_parser = subparsers.add_parser("info", help="Summarize an image")
    info_parser.add_argument("path", help="Path or URI to the zarr group or array")
    info_parser.set_defaults(func=info_command)

    tile_parser = subparsers.add_parser("tile", help="Read one tile")
    tile_parser.add_argument("path", help="Path or URI to the zarr group or array")
    tile_parser.add_argument("--level", type=int, default=0)
    tile_parser.add_argument("--x", type=int, default=0)
    tile_parser.add_argument("--y", type=int, default=0)
    tile_parser.add_argument(
        "--selection", help='JSON selection, e.g. \'{"c": 1}\' or \'[0, 1, 0, 0, 0]\''
    )
    tile_parser.set_defaults(func=tile_command)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    return args.func(args)


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
