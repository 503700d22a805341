from typing import Annotated, Any, TypeAlias

from pydantic import BeforeValidator, Field

from ._base import _BaseModel

__all__ = ["AxesList", "Axis", "axis_index", "axis_names", "normalize_axis"]


class Axis(_BaseModel):
    """One named dimension of a multiscale image.

    Older and non-conforming writers emit bare strings (e.g. ``"tczyx"`` as a
    list of names) or leave out ``type`` and ``unit``; those are accepted and
    kept untyped rather than rejected.
    """

    name: str = Field(description="The name of the axis.")
    type: str | None = None  # "space", "time", "channel", or custom
    unit: str | None = None


def normalize_axis(v: Any) -> Any:
    if isinstance(v, str):
        return {"name": v}
    return v


def _normalize_axes(v: Any) -> Any:
    if isinstance(v, (list, tuple)):
        return [normalize_axis(ax) for ax in v]
    return v


AxesList: TypeAlias = Annotated[list[Axis], BeforeValidator(_normalize_axes)]


def axis_names(axes: list[Axis]) -> list[str]:
    return [ax.name for ax in axes]


def axis_index(axes: list[Axis], name: str) -> int:
    """Return the position of the axis called `name` (case-insensitive), or -1."""
    name = name.lower()
    return next((i for i, ax in enumerate(axes) if ax.name.lower() == name), -1)
