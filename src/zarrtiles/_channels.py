"""Per-channel display defaults: colors, visibility and contrast limits."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, TypeAlias

import numpy as np

from ._errors import ConfigurationError

if TYPE_CHECKING:
    from ._pixel_source import ZarrPixelSource

__all__ = [
    "COLORS",
    "MAX_CHANNELS",
    "calc_contrast_limits",
    "calc_data_range",
    "get_default_colors",
    "get_default_visibilities",
    "hex_to_rgb",
    "parse_matrix",
]

ContrastLimits: TypeAlias = tuple[float, float]

MAX_CHANNELS = 6

COLORS = {
    "cyan": "#00FFFF",
    "yellow": "#FFFF00",
    "magenta": "#FF00FF",
    "red": "#FF0000",
    "green": "#00FF00",
    "blue": "#0000FF",
    "white": "#FFFFFF",
}
MAGENTA_GREEN = [COLORS["magenta"], COLORS["green"]]
RGB = [COLORS["red"], COLORS["green"], COLORS["blue"]]
CYMRGB = [
    COLORS[c] for c in ("cyan", "yellow", "magenta", "red", "green", "blue")
]


def get_default_visibilities(n: int, max_visible: int = MAX_CHANNELS) -> list[bool]:
    """All channels visible, up to the first `max_visible`."""
    return [i < max_visible for i in range(n)]


def get_default_colors(n: int, visibilities: Sequence[bool]) -> list[str]:
    if n == 1:
        return [COLORS["white"]]
    if n == 2:
        return list(MAGENTA_GREEN)
    if n == 3:
        return list(RGB)
    if n <= len(CYMRGB):
        return CYMRGB[:n]
    # hidden channels stay white; visible ones cycle through the palette
    colors = [COLORS["white"]] * n
    visible = [i for i, on in enumerate(visibilities) if on]
    for i, index in enumerate(visible):
        colors[index] = CYMRGB[i % len(CYMRGB)]
    return colors


def hex_to_rgb(hex_color: str) -> tuple[int, int, int]:
    """Convert "#RRGGBB" or "RRGGBB" (as written by OMERO) to an RGB triple."""
    value = hex_color.lstrip("#")
    if len(value) != 6:
        raise ConfigurationError(f"Invalid hex color: {hex_color!r}")
    try:
        r, g, b = (int(value[i : i + 2], 16) for i in (0, 2, 4))
    except ValueError as e:
        raise ConfigurationError(f"Invalid hex color: {hex_color!r}") from e
    return r, g, b


def parse_matrix(model_matrix: str | Sequence[Any] | np.ndarray | None) -> np.ndarray:
    """Return a 4x4 model matrix from JSON text, 16 numbers, or nested rows.

    Flat input is read in row-major order. Missing input gives the identity.
    """
    if model_matrix is None or (isinstance(model_matrix, str) and not model_matrix):
        return np.eye(4)
    try:
        values = (
            json.loads(model_matrix) if isinstance(model_matrix, str) else model_matrix
        )
        matrix = np.asarray(values, dtype=float).reshape(4, 4)
    except (ValueError, TypeError) as e:
        raise ConfigurationError(
            f"Failed to parse model_matrix. Got {model_matrix!r}"
        ) from e
    return matrix


async def calc_data_range(
    source: ZarrPixelSource, selection: Sequence[int]
) -> ContrastLimits:
    """Return the (min, max) of one plane, used as default contrast limits."""
    if source.dtype == "Uint8":
        return (0, 255)
    raster = await source.get_raster(selection)
    data = raster.data
    if data.size == 0:
        return (0, 1)
    lo = np.nanmin(data).item()
    hi = np.nanmax(data).item()
    if lo == hi:
        return (0, 1)
    return (lo, hi)


async def calc_contrast_limits(
    source: ZarrPixelSource,
    channel_axis: int,
    visibilities: Sequence[bool],
    default_selection: Sequence[int] | None = None,
) -> list[ContrastLimits | None]:
    """Sample the data range of every visible channel; hidden ones get None.

    All planes are requested together, so they are read in one batch.
    """
    base = list(default_selection) if default_selection is not None else None
    if base is None:
        base = [0] * len(source.shape)
    n = source.shape[channel_axis]
    if n != len(visibilities):
        raise ConfigurationError(
            f"Got {len(visibilities)} visibilities for {n} channels"
        )

    async def _channel_range(index: int) -> ContrastLimits:
        selection = list(base)
        selection[channel_axis] = index
        return await calc_data_range(source, selection)

    visible = [i for i, on in enumerate(visibilities) if on]
    ranges = await asyncio.gather(*(_channel_range(i) for i in visible))
    limits: list[ContrastLimits | None] = [None] * n
    for index, limit in zip(visible, ranges, strict=True):
        limits[index] = limit
    return limits
