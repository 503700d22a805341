# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "zarrtiles[io]",
# ]
#
# [tool.uv.sources]
# zarrtiles = { path = "../", editable = true }
# ///
"""Open an OME-Zarr URI, print its layer state, and read the first tiles."""

import asyncio
import sys

from zarrtiles import (
    RedirectError,
    create_source_data,
    init_layer_state_from_source,
    resolve_current_pixel_size,
    scale_bar,
)


async def demo_zarr_uri(uri: str) -> None:
    print(f"🔬 Loading: {uri}")
    print("=" * 80)

    try:
        source = await create_source_data({"source": uri})
    except RedirectError as e:
        print(f"➡️  {e}")
        return

    state = init_layer_state_from_source(source)
    props = state.layer_props
    print(f"kind: {state.kind}, axes: {source.axis_labels}")
    for sel, color, limits in zip(props.selections, props.colors, props.contrast_limits):
        print(f"  selection={sel} color={color} contrast_limits={limits}")

    # the coarsest level is cheapest; all its tiles are fetched in one batch
    level = source.loader[-1]
    n_x = -(-level.width // level.tile_size)
    n_y = -(-level.height // level.tile_size)
    tiles = await asyncio.gather(
        *(
            level.get_tile(x, y, props.selections[0])
            for x in range(n_x)
            for y in range(n_y)
        )
    )
    print(f"read {len(tiles)} tile(s) from level {len(source.loader) - 1}")

    for zoom in (0, -2):
        bar = scale_bar(resolve_current_pixel_size(source.loader[0].multiscales, zoom))
        if bar is not None:
            print(f"  zoom {zoom}: scale bar {bar.text} ({bar.width:.0f} px)")


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: uv run examples/demo_from_uri.py <uri>")
        print()
        print("Example:")
        print(
            "  uv run examples/demo_from_uri.py https://uk1s3.embassy.ebi.ac.uk/idr/zarr/v0.4/idr0062A/6001240.zarr"
        )
        sys.exit(1)

    asyncio.run(demo_zarr_uri(sys.argv[1]))
