"""Records handed to the rendering layer, and their initial state."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Literal

import numpy as np

from ._channels import MAX_CHANNELS, hex_to_rgb
from ._errors import ConfigurationError, SchemaError

if TYPE_CHECKING:
    from ._channels import ContrastLimits
    from ._pixel_source import ZarrPixelSource

__all__ = [
    "GridLoader",
    "LabelLayerState",
    "LabelSource",
    "LayerDefaults",
    "LayerProps",
    "LayerState",
    "SourceData",
    "get_source_selection_transform",
    "init_layer_state_from_source",
]

DEFAULT_LABEL_OPACITY = 0.5
FALLBACK_CONTRAST_LIMITS: ContrastLimits = (0, 255)

SelectionTransform = Callable[[Sequence[int]], list[int]]


@dataclass
class LayerDefaults:
    selection: list[int]
    colormap: str = ""
    opacity: float = 1.0


@dataclass
class GridLoader:
    """One cell of a plate or well grid."""

    name: str
    row: int
    col: int
    loader: ZarrPixelSource


@dataclass
class LabelSource:
    """A label (mask) image drawn over its source image."""

    name: str
    loader: list[ZarrPixelSource]
    colors: dict[int, tuple[int, int, int, int]] = field(default_factory=dict)
    model_matrix: np.ndarray = field(default_factory=lambda: np.eye(4))


@dataclass
class SourceData:
    """Everything needed to draw one image: its levels plus channel settings."""

    loader: list[ZarrPixelSource]
    channel_axis: int | None
    colors: list[str]
    names: list[str]
    contrast_limits: list[ContrastLimits | None]
    visibilities: list[bool]
    defaults: LayerDefaults
    axis_labels: list[str]
    model_matrix: np.ndarray = field(default_factory=lambda: np.eye(4))
    name: str | None = None
    id: str = ""
    # plate / well grids
    loaders: list[GridLoader] | None = None
    rows: int | None = None
    columns: int | None = None
    labels: list[LabelSource] | None = None

    def __post_init__(self) -> None:
        if self.channel_axis is None:
            return
        n = self.loader[0].shape[self.channel_axis]
        for prop in ("colors", "names", "contrast_limits", "visibilities"):
            if len(getattr(self, prop)) != n:
                raise ConfigurationError(
                    f"channel_axis is length {n} and {prop} has "
                    f"{len(getattr(self, prop))} entries."
                )


@dataclass
class LayerProps:
    id: str
    selections: list[list[int]]
    colors: list[tuple[int, int, int]]
    contrast_limits: list[ContrastLimits]
    contrast_limits_range: list[ContrastLimits]
    channels_visible: list[bool]
    opacity: float
    colormap: str
    model_matrix: np.ndarray
    loader: list[ZarrPixelSource] | ZarrPixelSource | None = None
    loaders: list[GridLoader] | None = None
    rows: int | None = None
    columns: int | None = None


@dataclass
class LabelLayerState:
    transform_source_selection: SelectionTransform
    id: str
    loader: list[ZarrPixelSource]
    colors: dict[int, tuple[int, int, int, int]]
    model_matrix: np.ndarray
    opacity: float = DEFAULT_LABEL_OPACITY
    on: bool = False


@dataclass
class LayerState:
    kind: Literal["image", "multiscale", "grid"]
    layer_props: LayerProps
    on: bool = True
    labels: list[LabelLayerState] | None = None


def init_layer_state_from_source(source: SourceData) -> LayerState:
    """Build the initial layer state: one selection per visible channel."""
    selection = source.defaults.selection

    selections: list[list[int]] = []
    colors: list[tuple[int, int, int]] = []
    contrast_limits: list[ContrastLimits] = []

    visible = [i for i, on in enumerate(source.visibilities) if on]
    for index in visible[:MAX_CHANNELS]:
        channel_selection = list(selection)
        if source.channel_axis is not None:
            channel_selection[source.channel_axis] = index
        selections.append(channel_selection)
        colors.append(hex_to_rgb(source.colors[index]))
        limits = source.contrast_limits[index]
        contrast_limits.append(limits if limits is not None else FALLBACK_CONTRAST_LIMITS)

    props = LayerProps(
        id=source.id,
        selections=selections,
        colors=colors,
        contrast_limits=contrast_limits,
        contrast_limits_range=list(contrast_limits),
        channels_visible=[True] * len(selections),
        opacity=source.defaults.opacity,
        colormap=source.defaults.colormap,
        model_matrix=source.model_matrix,
    )

    if source.loaders:
        props.loaders = source.loaders
        props.rows = source.rows
        props.columns = source.columns
        return LayerState(kind="grid", layer_props=props)

    if len(source.loader) == 1:
        props.loader = source.loader[0]
        return LayerState(kind="image", layer_props=props)

    props.loader = source.loader
    labels = None
    if source.labels:
        labels = [
            LabelLayerState(
                transform_source_selection=get_source_selection_transform(
                    label.loader[0], source.loader[0]
                ),
                id=f"{source.id}_{i}",
                loader=label.loader,
                colors=label.colors,
                model_matrix=label.model_matrix,
            )
            for i, label in enumerate(source.labels)
        ]
    return LayerState(kind="multiscale", layer_props=props, labels=labels)


def get_source_selection_transform(
    labels: ZarrPixelSource, source: ZarrPixelSource
) -> SelectionTransform:
    """Map an image selection onto the axes of a label image.

    Label axes of extent 1 always read index 0, so a single-plane mask can be
    shown over every plane of the image.

    Raises
    ------
    SchemaError
        If either side's labels and shape differ in rank, or the label axes
        are not a subset of the image axes.
    """
    if len(source.shape) != len(source.labels):
        raise SchemaError(
            f"Image source axes and shape are not same rank. "
            f"Got {source.labels} and {source.shape}"
        )
    if len(labels.shape) != len(labels.labels):
        raise SchemaError(
            f"Label axes and shape are not same rank. "
            f"Got {labels.labels} and {labels.shape}"
        )
    if not set(labels.labels) <= set(source.labels):
        raise SchemaError(
            f"Label axes MUST be a subset of source. "
            f"Source: {source.labels} Labels: {labels.labels}"
        )

    pinned = {name for name, size in zip(labels.labels, labels.shape) if size == 1}
    positions = [source.labels.index(name) for name in labels.labels]
    names = list(labels.labels)

    def transform(source_selection: Sequence[int]) -> list[int]:
        return [
            0 if name in pinned else source_selection[pos]
            for name, pos in zip(names, positions)
        ]

    return transform
