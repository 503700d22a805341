from __future__ import annotations

from collections.abc import Mapping, Sequence

from ._errors import ConfigurationError

__all__ = [
    "RGBA_CHANNEL_AXIS_NAME",
    "X_AXIS_NAME",
    "Y_AXIS_NAME",
    "build_zarr_selection",
]

X_AXIS_NAME = "x"
Y_AXIS_NAME = "y"
# pseudo-axis for interleaved RGB(A) samples, always read in full
RGBA_CHANNEL_AXIS_NAME = "_c"

BaseSelection = Mapping[str, int] | Sequence[int | slice]


def _label_index(labels: Sequence[str], name: str) -> int:
    try:
        return list(labels).index(name)
    except ValueError:
        raise ConfigurationError(
            f"Selection refers to axis {name!r}, which is not one of {list(labels)}"
        ) from None


def build_zarr_selection(
    base_selection: BaseSelection,
    labels: Sequence[str],
    x: int | slice,
    y: int | slice,
) -> list[int | slice]:
    """Expand a partial axis selection into one entry per array axis.

    A sequence is taken positionally and copied as-is. A mapping is keyed by
    axis name, with every unnamed axis at index 0. The x and y axes are then
    always replaced by `x` and `y`, and the interleaved channel axis (if any)
    by a full slice.
    """
    if isinstance(base_selection, Mapping):
        selection: list[int | slice] = [0] * len(labels)
        for key, idx in base_selection.items():
            selection[_label_index(labels, key)] = idx
    else:
        selection = list(base_selection)
        if len(selection) != len(labels):
            raise ConfigurationError(
                f"Selection {selection} has {len(selection)} entries but the "
                f"array has {len(labels)} axes {list(labels)}"
            )

    selection[_label_index(labels, X_AXIS_NAME)] = x
    selection[_label_index(labels, Y_AXIS_NAME)] = y
    if RGBA_CHANNEL_AXIS_NAME in labels:
        selection[_label_index(labels, RGBA_CHANNEL_AXIS_NAME)] = slice(None)
    return selection
