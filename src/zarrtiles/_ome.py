"""Loaders for OME-NGFF layouts: images with OMERO metadata, wells and plates."""

from __future__ import annotations

import logging
import math
import posixpath
from typing import TYPE_CHECKING, Any

import numpy as np
from pydantic import TypeAdapter, ValidationError

from ._axis import axis_names
from ._calibration import axis_scales
from ._errors import SchemaError
from ._layers import GridLoader, LabelSource
from ._loader import (
    get_axis_labels_and_channel_axis,
    guess_tile_size,
    load_channels,
    load_multiscales,
)
from ._metadata import (
    LabelImageAttrs,
    LabelsIndex,
    MultiscalesAttrs,
    WellAttrs,
    resolve_attrs,
)
from ._pixel_source import ZarrPixelSource
from ._store import open_reader
from ._zarr import ZarrArray, ZarrGroup

if TYPE_CHECKING:
    from ._axis import Axis
    from ._config import ImageLayerConfig
    from ._layers import SourceData
    from ._metadata import Multiscale, Omero, PlateDef, WellDef
    from ._store import ReaderFactory

logger = logging.getLogger(__name__)

__all__ = ["load_ome_labels", "load_ome_multiscales", "load_plate", "load_well"]


def _omero_overrides(
    config: ImageLayerConfig, omero: Omero | None, channel_count: int
) -> ImageLayerConfig:
    """Fill unset config fields from OMERO rendering metadata.

    Values the caller set always win. OMERO lists that don't match the channel
    axis are ignored.
    """
    if omero is None or not omero.channels:
        return config
    channels = omero.channels
    if len(channels) != channel_count:
        logger.warning(
            "omero lists %d channel(s) but the image has %d; ignoring omero",
            len(channels),
            channel_count,
        )
        return config

    update: dict[str, Any] = {}
    if config.colors is None and all(ch.color for ch in channels):
        update["colors"] = [f"#{ch.color.lstrip('#')}" for ch in channels]  # type: ignore[union-attr]
    if config.names is None:
        update["names"] = [ch.label or f"channel_{i}" for i, ch in enumerate(channels)]
    if config.visibilities is None:
        update["visibilities"] = [ch.active is not False for ch in channels]
    if config.contrast_limits is None and all(
        ch.window and ch.window.start is not None and ch.window.end is not None
        for ch in channels
    ):
        update["contrast_limits"] = [
            (ch.window.start, ch.window.end) for ch in channels  # type: ignore[union-attr]
        ]
    return config.model_copy(update=update)


def _default_selection(axes: list[Axis] | None, ndim: int, omero: Omero | None) -> list[int]:
    """Start on the OMERO default T/Z plane when one is given."""
    selection = [0] * ndim
    rdefs = omero.rdefs if omero else None
    if rdefs is None or not axes:
        return selection
    for i, ax in enumerate(axes):
        if ax.name.lower() == "t" and rdefs.defaultT is not None:
            selection[i] = rdefs.defaultT
        elif ax.name.lower() == "z" and rdefs.defaultZ is not None:
            selection[i] = rdefs.defaultZ
    return selection


def _channel_count(loader: list[ZarrPixelSource], channel_axis: int) -> int:
    return loader[0].shape[channel_axis] if channel_axis > -1 else 1


def _label_model_matrix(
    image: list[Multiscale], label: list[Multiscale]
) -> np.ndarray:
    """Scale a label image onto its source when their level-0 sampling differs."""
    matrix = np.eye(4)
    image_scale = axis_scales(image, 0, ("x", "y"))
    label_scale = axis_scales(label, 0, ("x", "y"))
    if image_scale is None or label_scale is None:
        return matrix
    (ix, iy), _ = image_scale
    (lx, ly), _ = label_scale
    if ix and iy:
        matrix[0, 0] = lx / ix
        matrix[1, 1] = ly / iy
    return matrix


def load_ome_labels(
    grp: ZarrGroup,
    image_multiscales: list[Multiscale],
    open_array: ReaderFactory = open_reader,
) -> list[LabelSource]:
    """Load every label image listed in the `labels` subgroup of `grp`."""
    labels_grp = grp.get("labels")
    if not isinstance(labels_grp, ZarrGroup):
        return []
    try:
        index = TypeAdapter(LabelsIndex).validate_python(resolve_attrs(labels_grp.attrs))
    except ValidationError:
        return []

    sources = []
    for name in index.labels:
        label_grp = labels_grp.get(name)
        if not isinstance(label_grp, ZarrGroup):
            raise SchemaError(f"Label {name!r} listed in {labels_grp} is not a group")
        try:
            attrs = TypeAdapter(LabelImageAttrs).validate_python(
                resolve_attrs(label_grp.attrs)
            )
        except ValidationError as e:
            raise SchemaError(f"Invalid label image {name!r}: {e}") from e

        readers = load_multiscales(label_grp, attrs.multiscales, open_array)
        axes = attrs.multiscales[0].axes
        labels = axis_names(axes) if axes else None
        if labels is None:
            raise SchemaError(f"Label image {name!r} does not declare its axes")
        tile_size = guess_tile_size(readers[0])
        colors = {}
        if attrs.image_label and attrs.image_label.colors:
            colors = {
                int(c.label_value): tuple(c.rgba)
                for c in attrs.image_label.colors
                if c.rgba is not None
            }
        sources.append(
            LabelSource(
                name=name,
                loader=[
                    ZarrPixelSource(r, labels, tile_size, attrs.multiscales)
                    for r in readers
                ],
                colors=colors,  # type: ignore[arg-type]
                model_matrix=_label_model_matrix(image_multiscales, attrs.multiscales),
            )
        )
    return sources


async def load_ome_multiscales(
    config: ImageLayerConfig,
    grp: ZarrGroup,
    attrs: MultiscalesAttrs,
    open_array: ReaderFactory = open_reader,
) -> SourceData:
    """Load a multiscale image, seeding display settings from OMERO metadata."""
    multiscales = attrs.multiscales
    readers = load_multiscales(grp, multiscales, open_array)
    axes = multiscales[0].axes
    labels, channel_axis = get_axis_labels_and_channel_axis(config, axes, readers[0])
    tile_size = guess_tile_size(readers[0])
    loader = [ZarrPixelSource(r, labels, tile_size, multiscales) for r in readers]

    config = _omero_overrides(config, attrs.omero, _channel_count(loader, channel_axis))
    if config.name is None and multiscales[0].name:
        config = config.model_copy(update={"name": multiscales[0].name})
    source = await load_channels(
        config,
        loader,
        channel_axis,
        _default_selection(axes, len(labels), attrs.omero),
    )
    source.labels = load_ome_labels(grp, multiscales, open_array) or None
    return source


def _image_attrs(grp: ZarrGroup, path: str) -> MultiscalesAttrs:
    node = grp.get(path)
    if not isinstance(node, ZarrGroup):
        raise SchemaError(f"Expected an image group at {path!r} in {grp}")
    try:
        return TypeAdapter(MultiscalesAttrs).validate_python(resolve_attrs(node.attrs))
    except ValidationError as e:
        raise SchemaError(f"Invalid image metadata at {path!r}: {e}") from e


async def _load_grid(
    config: ImageLayerConfig,
    grp: ZarrGroup,
    cells: list[tuple[str, int, int, str]],
    image: MultiscalesAttrs,
    rows: int,
    columns: int,
    name: str | None,
    open_array: ReaderFactory,
) -> SourceData:
    """Load the lowest resolution of each (name, row, col, image path) cell."""
    lowest = image.multiscales[0].datasets[-1].path
    grp.prefetch_children(posixpath.join(path, lowest) for *_, path in cells)

    readers = []
    for _, _, _, path in cells:
        node = grp.get(posixpath.join(path, lowest))
        if not isinstance(node, ZarrArray):
            raise SchemaError(f"Missing array {lowest!r} for image {path!r} in {grp}")
        readers.append(open_array(node))

    axes = image.multiscales[0].axes
    labels, channel_axis = get_axis_labels_and_channel_axis(config, axes, readers[0])
    tile_size = guess_tile_size(readers[0])
    loaders = [
        GridLoader(
            name=cell_name,
            row=row,
            col=col,
            loader=ZarrPixelSource(reader, labels, tile_size),
        )
        for (cell_name, row, col, _), reader in zip(cells, readers, strict=True)
    ]
    first = [loaders[0].loader]
    config = _omero_overrides(config, image.omero, _channel_count(first, channel_axis))
    if config.name is None and name:
        config = config.model_copy(update={"name": name})
    source = await load_channels(
        config,
        first,
        channel_axis,
        _default_selection(axes, len(labels), image.omero),
    )
    source.loaders = loaders
    source.rows = rows
    source.columns = columns
    return source


async def load_well(
    config: ImageLayerConfig,
    grp: ZarrGroup,
    well: WellDef,
    open_array: ReaderFactory = open_reader,
) -> SourceData:
    """Show every field of view of a well in a near-square grid."""
    paths = [img.path for img in well.images]
    columns = math.ceil(math.sqrt(len(paths)))
    rows = math.ceil(len(paths) / columns)
    cells = [(path, i // columns, i % columns, path) for i, path in enumerate(paths)]
    image = _image_attrs(grp, paths[0])
    logger.debug("loading well %s with %d field(s)", grp.store_path, len(paths))
    return await _load_grid(config, grp, cells, image, rows, columns, None, open_array)


async def load_plate(
    config: ImageLayerConfig,
    grp: ZarrGroup,
    plate: PlateDef,
    open_array: ReaderFactory = open_reader,
) -> SourceData:
    """Show the first field of every well on the plate's row/column grid."""
    row_names = [r.name for r in plate.rows]
    col_names = [c.name for c in plate.columns]
    well_paths = [w.path for w in plate.wells]

    # the first field of the first well stands in for all the others
    well_node = grp.get(well_paths[0])
    if not isinstance(well_node, ZarrGroup):
        raise SchemaError(f"Expected a well group at {well_paths[0]!r} in {grp}")
    try:
        well_attrs = TypeAdapter(WellAttrs).validate_python(resolve_attrs(well_node.attrs))
    except ValidationError as e:
        raise SchemaError(f"Invalid well metadata at {well_paths[0]!r}: {e}") from e
    field = well_attrs.well.images[0].path
    image = _image_attrs(grp, posixpath.join(well_paths[0], field))

    cells = []
    for well in plate.wells:
        row_name, _, col_name = well.path.partition("/")
        try:
            row = well.rowIndex if well.rowIndex is not None else row_names.index(row_name)
            col = (
                well.columnIndex
                if well.columnIndex is not None
                else col_names.index(col_name)
            )
        except ValueError:
            raise SchemaError(
                f"Well {well.path!r} does not match the plate's row and column names"
            ) from None
        cells.append((f"{row_name}{col_name}", row, col, posixpath.join(well.path, field)))

    logger.debug("loading plate %s with %d well(s)", grp.store_path, len(cells))
    return await _load_grid(
        config,
        grp,
        cells,
        image,
        len(row_names),
        len(col_names),
        plate.name,
        open_array,
    )
