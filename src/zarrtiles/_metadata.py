"""Schema variants for the zarr group attributes this package knows how to open.

Each layout (plate, well, multiscale image, bioformats2raw container, labels
index) is modelled explicitly so that a group can be classified by validating
its attributes against each shape in priority order, instead of probing for
individual keys.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from typing import Annotated, Any, Literal, TypeAlias

from annotated_types import Len, MinLen
from pydantic import (
    Field,
    TypeAdapter,
    ValidationError,
    ValidatorFunctionWrapHandler,
    WrapValidator,
)

from ._axis import AxesList, Axis
from ._base import _BaseModel

logger = logging.getLogger(__name__)

__all__ = [
    "Dataset",
    "Multiscale",
    "MultiscalesAttrs",
    "NodeKind",
    "Omero",
    "PlateAttrs",
    "ScaleTransformation",
    "WellAttrs",
    "classify_attrs",
    "resolve_attrs",
]

# ------------------------------------------------------------------------------
# Transformations
# ------------------------------------------------------------------------------


class ScaleTransformation(_BaseModel):
    type: Literal["scale"] = "scale"
    scale: list[float]

    @property
    def ndim(self) -> int:
        return len(self.scale)


class TranslationTransformation(_BaseModel):
    type: Literal["translation"] = "translation"
    translation: list[float]


class IdentityTransformation(_BaseModel):
    type: Literal["identity"] = "identity"


CoordinateTransformation: TypeAlias = Annotated[
    ScaleTransformation | TranslationTransformation | IdentityTransformation,
    Field(discriminator="type"),
]


class Dataset(_BaseModel):
    path: str = Field(
        description=(
            "The path to the array for this resolution, "
            "relative to the current zarr group."
        )
    )
    coordinateTransformations: list[CoordinateTransformation] | None = None

    @property
    def scale(self) -> ScaleTransformation | None:
        """Return the first scale transformation of this level, if any."""
        for transform in self.coordinateTransformations or ():
            if isinstance(transform, ScaleTransformation):
                return transform
        return None


class Multiscale(_BaseModel):
    """A multiscale representation of an image.

    `axes` is optional here: pre-0.3 writers only declared datasets.
    """

    name: str | None = None
    version: str | None = None
    axes: AxesList | None = None
    datasets: Annotated[list[Dataset], MinLen(1)]
    coordinateTransformations: list[CoordinateTransformation] | None = None

    @property
    def paths(self) -> list[str]:
        return [ds.path for ds in self.datasets]


# ------------------------------------------------------------------------------
# Omero rendering hints
# ------------------------------------------------------------------------------


class OmeroWindow(_BaseModel):
    start: float | None = None
    end: float | None = None
    min: float | None = None
    max: float | None = None


class OmeroChannel(_BaseModel):
    window: OmeroWindow | None = None
    label: str | None = None
    color: str | None = None
    active: bool | None = None


class OmeroRenderingDefs(_BaseModel):
    defaultT: int | None = None
    defaultZ: int | None = None


class Omero(_BaseModel):
    """The subset of OMERO ImgData used to seed channel display settings."""

    channels: list[OmeroChannel]
    rdefs: OmeroRenderingDefs | None = None


def _lenient_omero(value: Any, handler: ValidatorFunctionWrapHandler) -> Omero | None:
    try:
        return handler(value)
    except ValidationError as e:
        logger.warning("ignoring invalid omero metadata: %s", e)
        return None


# ------------------------------------------------------------------------------
# Group layouts
# ------------------------------------------------------------------------------


class MultiscalesAttrs(_BaseModel):
    multiscales: Annotated[list[Multiscale], MinLen(1)]
    omero: Annotated[Omero | None, WrapValidator(_lenient_omero)] = None


class PlateColumn(_BaseModel):
    name: str


class PlateRow(_BaseModel):
    name: str


class PlateWell(_BaseModel):
    path: str
    rowIndex: int | None = None
    columnIndex: int | None = None


class PlateDef(_BaseModel):
    columns: Annotated[list[PlateColumn], MinLen(1)]
    rows: Annotated[list[PlateRow], MinLen(1)]
    wells: Annotated[list[PlateWell], MinLen(1)]
    name: str | None = None


class PlateAttrs(_BaseModel):
    plate: PlateDef


class FieldOfView(_BaseModel):
    path: str
    acquisition: int | None = None


class WellDef(_BaseModel):
    images: Annotated[list[FieldOfView], MinLen(1)]


class WellAttrs(_BaseModel):
    well: WellDef


class Bf2RawAttrs(_BaseModel):
    bioformats2raw_layout: Literal[3] = Field(alias="bioformats2raw.layout")


class LabelsIndex(_BaseModel):
    labels: Annotated[list[str], MinLen(1)]


class LabelColor(_BaseModel):
    label_value: float = Field(alias="label-value")
    rgba: Annotated[list[int], Len(min_length=4, max_length=4)] | None = None


class ImageLabel(_BaseModel):
    colors: list[LabelColor] | None = None


class LabelImageAttrs(MultiscalesAttrs):
    image_label: ImageLabel | None = Field(default=None, alias="image-label")


# ------------------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------------------


class NodeKind(enum.Enum):
    PLATE = "plate"
    WELL = "well"
    MULTISCALES = "multiscales"
    BIOFORMATS2RAW = "bioformats2raw"
    UNKNOWN = "unknown"


# priority order matters: a plate that also carries other keys is still a plate
_VARIANTS: list[tuple[NodeKind, type[_BaseModel]]] = [
    (NodeKind.PLATE, PlateAttrs),
    (NodeKind.WELL, WellAttrs),
    (NodeKind.MULTISCALES, MultiscalesAttrs),
    (NodeKind.BIOFORMATS2RAW, Bf2RawAttrs),
]


def resolve_attrs(attrs: Mapping[str, Any]) -> dict[str, Any]:
    """Return the OME attributes of a group, unwrapping the NGFF 0.5 "ome" key."""
    if "ome" in attrs and isinstance(attrs["ome"], Mapping):
        return dict(attrs["ome"])
    return dict(attrs)


def classify_attrs(attrs: Mapping[str, Any]) -> tuple[NodeKind, _BaseModel | None]:
    """Match resolved group attributes against the known layouts.

    Returns the first matching kind together with the validated model, or
    ``(NodeKind.UNKNOWN, None)``.
    """
    for kind, model in _VARIANTS:
        try:
            parsed = TypeAdapter(model).validate_python(attrs)
        except ValidationError:
            continue
        logger.debug("attributes classified as %s", kind.value)
        return kind, parsed
    return NodeKind.UNKNOWN, None


def ngff_axes(multiscales: list[Multiscale]) -> list[Axis] | None:
    """Return the normalized axes of the first multiscale, if declared."""
    return multiscales[0].axes if multiscales else None
