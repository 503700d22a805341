"""Physical calibration derived from multiscale metadata.

All sizes are normalized to nanometers. Unknown units (including the implicit
"pixels") pass through unchanged, so callers can still draw a relative scale.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, NamedTuple

from ._axis import axis_index

if TYPE_CHECKING:
    from ._metadata import Dataset, Multiscale

__all__ = [
    "PixelSizes",
    "ScaleBar",
    "find_dataset",
    "resolve_current_pixel_size",
    "resolve_pixel_size",
    "resolve_pixel_sizes",
    "scale_bar",
    "to_nanometers",
]

DEFAULT_UNIT = "pixels"


class PixelSizes(NamedTuple):
    x: float
    y: float


class ScaleBar(NamedTuple):
    length_nm: float
    width: float
    text: str


def to_nanometers(value: float, unit: str | None) -> float:
    unit = (unit or DEFAULT_UNIT).lower()
    if unit == "angstrom":
        return value / 10
    if unit in ("micrometer", "micron"):
        return value * 1000
    return value


def spatial_unit(multiscale: Multiscale) -> str:
    """Return the unit of the first space axis that declares one."""
    for ax in multiscale.axes or ():
        if ax.type == "space" and ax.unit is not None:
            return ax.unit.lower()
    return DEFAULT_UNIT


def find_dataset(multiscales: list[Multiscale], path: str) -> Dataset | None:
    """Return the dataset of the first multiscale that `path` ends with.

    Matching is done on whole path segments, so "s10" never matches "0".
    """
    if not multiscales:
        return None
    path = path.strip("/")
    for ds in multiscales[0].datasets:
        suffix = ds.path.strip("/")
        if path == suffix or path.endswith(f"/{suffix}"):
            return ds
    return None


def axis_scales(
    multiscales: list[Multiscale] | None, level: int, names: tuple[str, ...]
) -> tuple[list[float], str] | None:
    """Return the level scale for the named axes, plus the spatial unit."""
    if not multiscales:
        return None
    multiscale = multiscales[0]
    if not 0 <= level < len(multiscale.datasets):
        return None
    transform = multiscale.datasets[level].scale
    if transform is None:
        return None
    axes = multiscale.axes or []
    indices = [axis_index(axes, name) for name in names]
    if any(i == -1 or i >= transform.ndim for i in indices):
        return None
    return [transform.scale[i] for i in indices], spatial_unit(multiscale)


def resolve_pixel_size(
    multiscales: list[Multiscale] | None, level: int = 0
) -> float | None:
    """Return the x size of one pixel at `level`, in nanometers.

    Returns None when there is no such level, the level has no scale
    transformation, or no axis is named "x". None means "calibration
    unavailable", not an error.
    """
    found = axis_scales(multiscales, level, ("x",))
    if found is None:
        return None
    (size,), unit = found
    return to_nanometers(size, unit)


def resolve_pixel_sizes(
    multiscales: list[Multiscale] | None, level: int = 0
) -> PixelSizes | None:
    """Return the (x, y) size of one pixel at `level`, in nanometers."""
    found = axis_scales(multiscales, level, ("x", "y"))
    if found is None:
        return None
    (x, y), unit = found
    return PixelSizes(to_nanometers(x, unit), to_nanometers(y, unit))


def resolve_current_pixel_size(
    multiscales: list[Multiscale] | None, zoom: float
) -> float | None:
    """Return the physical size of one screen pixel at viewer `zoom`.

    Zoom 0 shows level 0 at one data pixel per screen pixel and each zoom step
    halves the sampling, so the pyramid must downsample by 2 per level.
    """
    base = resolve_pixel_size(multiscales, 0)
    if base is None:
        return None
    return base * 2.0 ** (-zoom)


def scale_bar(pixel_size_nm: float | None, target_width: float = 150) -> ScaleBar | None:
    """Pick a round scale-bar length close to `target_width` screen pixels."""
    if not pixel_size_nm or pixel_size_nm <= 0:
        return None

    rough = target_width * pixel_size_nm
    magnitude = 10 ** math.floor(math.log10(rough))
    residual = rough / magnitude
    if residual < 1.5:
        nice = 1 * magnitude
    elif residual < 3.5:
        nice = 2 * magnitude
    elif residual < 7.5:
        nice = 5 * magnitude
    else:
        nice = 10 * magnitude

    if nice < 1:
        text = f"{nice:.1f} nm"
    elif nice < 1000:
        text = f"{nice:.0f} nm"
    else:
        text = f"{nice / 1000:.1f} µm"
    return ScaleBar(nice, nice / pixel_size_nm, text)
