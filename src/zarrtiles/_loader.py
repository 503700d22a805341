"""Open a dataset and turn it into `SourceData` for display.

Axis labels and the channel axis are taken, in priority order, from the
caller's config, then from the NGFF axes metadata, then from the array's own
dimension names, and finally guessed from its shape, so that data without
optional metadata still displays.
"""

from __future__ import annotations

import logging
import math
import os
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Any, Callable, TypeAlias

import numpy as np
from pydantic import ValidationError

from ._axis import axis_names
from ._channels import (
    COLORS,
    calc_contrast_limits,
    calc_data_range,
    get_default_colors,
    get_default_visibilities,
    parse_matrix,
)
from ._config import ImageLayerConfig
from ._errors import ConfigurationError, RedirectError, SchemaError
from ._layers import LayerDefaults, SourceData
from ._metadata import (
    MultiscalesAttrs,
    NodeKind,
    classify_attrs,
    ngff_axes,
    resolve_attrs,
)
from ._pixel_source import ZarrPixelSource
from ._selection import RGBA_CHANNEL_AXIS_NAME
from ._store import ArrayReader, NumpyReader, ReaderFactory, open_reader
from ._zarr import ZarrArray, ZarrGroup, open_node

if TYPE_CHECKING:
    from ._axis import Axis
    from ._metadata import Multiscale

logger = logging.getLogger(__name__)

__all__ = [
    "create_source_data",
    "get_axis_labels_and_channel_axis",
    "guess_axis_labels",
    "guess_tile_size",
    "load_multi_channel",
    "load_multiscales",
    "load_single_channel",
]

LabelGuesser: TypeAlias = Callable[[Sequence[int]], list[str]]

DEFAULT_LABELS = "tczyx"


def is_interleaved(shape: Sequence[int]) -> bool:
    """True if the last axis looks like RGB(A) samples rather than x."""
    return len(shape) > 2 and shape[-1] in (3, 4)


def guess_axis_labels(shape: Sequence[int]) -> list[str]:
    """Default labels for an array with no axis metadata.

    Trailing axes take names from "tczyx"; extra leading axes are "dim_<i>".
    An interleaved RGB(A) array gets "_c" as its last label.
    """
    ndim = len(shape)
    if is_interleaved(shape):
        return [*guess_axis_labels(shape[:-1]), RGBA_CHANNEL_AXIS_NAME]
    if ndim <= len(DEFAULT_LABELS):
        return list(DEFAULT_LABELS[-ndim:]) if ndim else []
    extra = ndim - len(DEFAULT_LABELS)
    return [f"dim_{i}" for i in range(extra)] + list(DEFAULT_LABELS)


def guess_tile_size(arr: ArrayReader) -> int:
    """Largest power of two that fits in the y/x chunk of `arr`."""
    chunks = arr.chunks[-3:-1] if is_interleaved(arr.shape) else arr.chunks[-2:]
    size = min(chunks)
    return 2 ** int(math.floor(math.log2(size))) if size >= 1 else 1


def get_axis_labels_and_channel_axis(
    config: ImageLayerConfig,
    ngff: list[Axis] | None,
    arr: ArrayReader,
    guess_labels: LabelGuesser = guess_axis_labels,
    dimension_names: Sequence[str] | None = None,
) -> tuple[list[str], int]:
    """Return axis labels and the channel axis index (-1 if there is none)."""
    if ngff:
        labels = config.axis_labels or axis_names(ngff)
        if config.has_channel_axis:
            channel_axis = config.channel_axis
        else:
            channel_axis = next(
                (i for i, ax in enumerate(ngff) if ax.type == "channel"), -1
            )
    else:
        if dimension_names is not None and len(dimension_names) != len(arr.shape):
            dimension_names = None
        labels = config.axis_labels or dimension_names or guess_labels(arr.shape)
        if config.has_channel_axis:
            channel_axis = config.channel_axis
        else:
            channel_axis = labels.index("c") if "c" in labels else -1

    if len(labels) != len(arr.shape):
        err = ConfigurationError if config.axis_labels else SchemaError
        raise err(
            f"Axis labels {labels} do not match array of rank {len(arr.shape)}"
        )
    return list(labels), channel_axis  # type: ignore[return-value]


def load_multiscales(
    grp: ZarrGroup,
    multiscales: list[Multiscale],
    open_array: ReaderFactory = open_reader,
) -> list[ArrayReader]:
    """Open every level of the first multiscale, highest resolution first."""
    readers = []
    for path in multiscales[0].paths:
        node = grp.get(path)
        if not isinstance(node, ZarrArray):
            raise SchemaError(
                f"Dataset {path!r} of {grp.store_path} is not a zarr array"
            )
        readers.append(open_array(node))
    logger.debug("opened %d level(s) of %s", len(readers), grp.store_path)
    return readers


def _single_contrast_limits(config: ImageLayerConfig) -> tuple[float, float] | None:
    limits = config.contrast_limits
    if limits is None:
        return None
    if isinstance(limits, tuple):
        return limits
    if len(limits) != 1:
        raise ConfigurationError(
            f"Expected one contrast limit pair for a single channel, got {limits}"
        )
    return limits[0]


async def load_single_channel(
    config: ImageLayerConfig,
    data: list[ZarrPixelSource],
    default_selection: Sequence[int] | None = None,
) -> SourceData:
    ndim = len(data[0].shape)
    selection = list(default_selection or [0] * ndim)
    limits = _single_contrast_limits(config)
    if limits is None:
        # lower levels may be downsampled along non-xy axes too
        limits = await calc_data_range(data[-1], [0] * ndim)
    return SourceData(
        loader=data,
        name=config.name,
        channel_axis=None,
        colors=[config.color or (config.colors or [COLORS["white"]])[0]],
        names=(config.names or ["channel_0"])[:1],
        contrast_limits=[limits],
        visibilities=[config.visibility if config.visibility is not None else True],
        model_matrix=parse_matrix(config.model_matrix),
        defaults=LayerDefaults(
            selection=selection, colormap=config.colormap, opacity=config.opacity
        ),
        axis_labels=data[0].labels,
    )


async def load_multi_channel(
    config: ImageLayerConfig,
    data: list[ZarrPixelSource],
    channel_axis: int,
    default_selection: Sequence[int] | None = None,
) -> SourceData:
    n = data[0].shape[channel_axis]
    contrast_limits = config.contrast_limits
    if isinstance(contrast_limits, tuple):
        contrast_limits = [contrast_limits]

    for prop, value in (
        ("contrast_limits", contrast_limits),
        ("visibilities", config.visibilities),
        ("names", config.names),
        ("colors", config.colors),
    ):
        if value is not None and len(value) != n:
            raise ConfigurationError(
                f"channel_axis is length {n} and provided channel_axis property "
                f"{prop} is different size."
            )

    visibilities = config.visibilities or get_default_visibilities(n)
    colors = config.colors or get_default_colors(n, visibilities)
    ndim = len(data[0].shape)
    selection = list(default_selection or [0] * ndim)
    if contrast_limits is None:
        contrast_limits = await calc_contrast_limits(
            data[-1], channel_axis, visibilities, [0] * ndim
        )

    return SourceData(
        loader=data,
        name=config.name,
        channel_axis=channel_axis,
        colors=list(colors),
        names=config.names or [f"channel_{i}" for i in range(n)],
        contrast_limits=list(contrast_limits),
        visibilities=list(visibilities),
        model_matrix=parse_matrix(config.model_matrix),
        defaults=LayerDefaults(
            selection=selection, colormap=config.colormap, opacity=config.opacity
        ),
        axis_labels=data[0].labels,
    )


async def load_channels(
    config: ImageLayerConfig,
    loader: list[ZarrPixelSource],
    channel_axis: int,
    default_selection: Sequence[int] | None = None,
) -> SourceData:
    """Pick single or multichannel display for a set of pixel sources."""
    ndim = len(loader[0].shape)
    if config.has_channel_axis or channel_axis > -1:
        if not 0 <= channel_axis < ndim:
            raise ConfigurationError(
                f"Cannot determine how to display array: channel_axis "
                f"{channel_axis} is out of range for {ndim} dimensions."
            )
        return await load_multi_channel(config, loader, channel_axis, default_selection)
    return await load_single_channel(config, loader, default_selection)


def _as_config(config: ImageLayerConfig | Mapping[str, Any]) -> ImageLayerConfig:
    if isinstance(config, ImageLayerConfig):
        return config
    try:
        return ImageLayerConfig.model_validate(config)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid image configuration: {e}") from e


def _source_uri(source: Any) -> str:
    if isinstance(source, (ZarrGroup, ZarrArray)):
        return source.store_path
    return os.fspath(source) if isinstance(source, (str, os.PathLike)) else repr(source)


async def create_source_data(
    config: ImageLayerConfig | Mapping[str, Any],
    *,
    open_array: ReaderFactory = open_reader,
    guess_labels: LabelGuesser = guess_axis_labels,
) -> SourceData:
    """Open `config.source` and build its display settings.

    Parameters
    ----------
    config : ImageLayerConfig | Mapping
        The image configuration. `source` may be a URI, an opened zarr node,
        an `ArrayReader`, or an in-memory array.
    open_array : ReaderFactory
        Opens store arrays for reading. Defaults to tensorstore.
    guess_labels : LabelGuesser
        Labels axes when neither the config nor the metadata does.

    Raises
    ------
    RedirectError
        If the source is a bioformats2raw container, which should be browsed in
        the validator instead.
    SchemaError
        If a group carries no usable multiscale metadata.
    ConfigurationError
        If the config does not fit the data.
    """
    from ._ome import load_ome_multiscales, load_plate, load_well

    config = _as_config(config)
    source = config.source
    multiscales: list[Multiscale] | None = None
    axes: list[Axis] | None = None
    dimension_names: list[str] | None = None

    if isinstance(source, ArrayReader):
        readers: list[ArrayReader] = [source]
    elif isinstance(source, np.ndarray):
        readers = [NumpyReader(source)]
    else:
        node = open_node(source)
        if isinstance(node, ZarrArray):
            readers = [open_array(node)]
            dimension_names = node.dimension_names
        else:
            attrs = resolve_attrs(node.attrs)
            kind, parsed = classify_attrs(attrs)
            logger.debug("%s classified as %s", node.store_path, kind.value)

            if kind is NodeKind.PLATE:
                return await load_plate(config, node, parsed.plate, open_array)  # type: ignore[union-attr]
            if kind is NodeKind.WELL:
                return await load_well(config, node, parsed.well, open_array)  # type: ignore[union-attr]
            if kind is NodeKind.MULTISCALES and parsed.omero is not None:  # type: ignore[union-attr]
                return await load_ome_multiscales(config, node, parsed, open_array)  # type: ignore[arg-type]

            if not attrs and (parent := node.parent()) is not None:
                parent_kind, parent_attrs = classify_attrs(resolve_attrs(parent.attrs))
                if parent_kind is NodeKind.PLATE:
                    logger.debug("loading plate from parent of %s", node.store_path)
                    return await load_plate(config, parent, parent_attrs.plate, open_array)  # type: ignore[union-attr]

            if kind is NodeKind.BIOFORMATS2RAW:
                raise RedirectError.for_source(_source_uri(source))
            if not isinstance(parsed, MultiscalesAttrs):
                raise SchemaError("Group is missing multiscales specification.")

            multiscales = parsed.multiscales
            readers = load_multiscales(node, multiscales, open_array)
            axes = ngff_axes(multiscales)
            first = node.get(multiscales[0].paths[0])
            if isinstance(first, ZarrArray):
                dimension_names = first.dimension_names

    labels, channel_axis = get_axis_labels_and_channel_axis(
        config, axes, readers[0], guess_labels, dimension_names
    )
    tile_size = guess_tile_size(readers[0])
    loader = [
        ZarrPixelSource(arr, labels=labels, tile_size=tile_size, multiscales=multiscales)
        for arr in readers
    ]
    return await load_channels(config, loader, channel_axis)
