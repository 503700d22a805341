"""Tiled, batched access to multiscale OME-NGFF images for pan/zoom viewers."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("zarrtiles")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "uninstalled"

from ._calibration import (
    PixelSizes,
    ScaleBar,
    resolve_current_pixel_size,
    resolve_pixel_size,
    resolve_pixel_sizes,
    scale_bar,
)
from ._channels import MAX_CHANNELS
from ._config import ImageLayerConfig, ViewerContext
from ._errors import (
    ConfigurationError,
    RedirectError,
    SchemaError,
    UnsupportedTypeError,
    ZarrTilesError,
)
from ._layers import LayerState, SourceData, init_layer_state_from_source
from ._loader import create_source_data, guess_axis_labels
from ._pixel_source import PixelData, ZarrPixelSource
from ._selection import build_zarr_selection
from ._store import ArrayReader, NumpyReader, TensorStoreReader
from ._zarr import ZarrArray, ZarrGroup, open_node

__all__ = [
    "MAX_CHANNELS",
    "ArrayReader",
    "ConfigurationError",
    "ImageLayerConfig",
    "LayerState",
    "NumpyReader",
    "PixelData",
    "PixelSizes",
    "RedirectError",
    "ScaleBar",
    "SchemaError",
    "SourceData",
    "TensorStoreReader",
    "UnsupportedTypeError",
    "ViewerContext",
    "ZarrArray",
    "ZarrGroup",
    "ZarrPixelSource",
    "ZarrTilesError",
    "build_zarr_selection",
    "create_source_data",
    "guess_axis_labels",
    "init_layer_state_from_source",
    "open_node",
    "resolve_current_pixel_size",
    "resolve_pixel_size",
    "resolve_pixel_sizes",
    "scale_bar",
]
