"""Tiled, batched access to one pyramid level."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable

import numpy as np

from ._calibration import PixelSizes, find_dataset, resolve_pixel_sizes
from ._errors import SchemaError, UnsupportedTypeError
from ._selection import (
    X_AXIS_NAME,
    Y_AXIS_NAME,
    build_zarr_selection,
)

if TYPE_CHECKING:
    from ._metadata import Multiscale
    from ._store import ArrayReader

logger = logging.getLogger(__name__)

__all__ = ["PixelData", "ZarrPixelSource", "dtype_transform"]

# data types a renderer can upload as-is
_NATIVE_DTYPES = frozenset(
    {"int8", "int16", "int32", "uint8", "uint16", "uint32", "float32", "float64"}
)

Transform = Callable[[np.ndarray], np.ndarray]


@dataclass(frozen=True)
class PixelData:
    """A flat, C-ordered buffer of `height` rows of `width` pixels."""

    data: np.ndarray
    width: int
    height: int


@dataclass(eq=False)
class _PendingRequest:
    selection: list[int | slice]
    signal: asyncio.Event | None
    future: asyncio.Future[PixelData] = field(repr=False)


def _flat(arr: np.ndarray, dtype: np.dtype) -> np.ndarray:
    return np.ascontiguousarray(arr, dtype=dtype).reshape(-1)


def dtype_transform(dtype: np.dtype | str) -> tuple[str, Transform]:
    """Return the renderer type tag and buffer transform for a store dtype.

    64-bit integers are wrapped to uint32 (values above 2**32 do not survive)
    and float16 is widened to float32. Everything else keeps its type and only
    gets a capitalized tag, e.g. "Uint16".
    """
    dtype = np.dtype(dtype)
    native = dtype.newbyteorder("=")
    if dtype.name in ("int64", "uint64"):
        return "Uint32", lambda x: _flat(x, np.dtype(np.uint32))
    if dtype.name == "float16":
        return "Float32", lambda x: _flat(x, np.dtype(np.float32))
    if dtype.name in _NATIVE_DTYPES:
        return dtype.name.capitalize(), lambda x: _flat(x, native)
    raise UnsupportedTypeError(f"Unsupported dtype for rendering: {dtype}")


class ZarrPixelSource:
    """One pyramid level, read as tiles or whole rasters.

    Reads requested while the event loop is busy are queued and issued together
    from a single callback on the next loop iteration. Every read completes on
    its own: a slow or failing read never holds up the others in its batch.

    Parameters
    ----------
    arr : ArrayReader
        The array for this level.
    labels : Sequence[str]
        Axis names, one per dimension of `arr`.
    tile_size : int
        Edge length of a square tile, in pixels.
    multiscales : list[Multiscale], optional
        Pyramid metadata, used for physical calibration of this level.
    """

    def __init__(
        self,
        arr: ArrayReader,
        labels: Sequence[str],
        tile_size: int,
        multiscales: list[Multiscale] | None = None,
    ) -> None:
        if len(labels) != len(arr.shape):
            raise SchemaError(
                f"Axis labels {list(labels)} do not match the rank of array "
                f"{arr.path!r} with shape {arr.shape}"
            )
        if X_AXIS_NAME not in labels or Y_AXIS_NAME not in labels:
            raise SchemaError(
                f"Axis labels {list(labels)} of array {arr.path!r} need both "
                f"{X_AXIS_NAME!r} and {Y_AXIS_NAME!r}"
            )
        self._arr = arr
        self.labels = list(labels)
        self.tile_size = tile_size
        self.multiscales = multiscales
        self.dtype, self._transform = dtype_transform(arr.dtype)
        if self.dtype == "Uint32" and arr.dtype.itemsize == 8:
            logger.warning(
                "%s: %s data is wrapped to uint32 for display", arr.path, arr.dtype
            )

        self._level: int | None = None
        if multiscales:
            dataset = find_dataset(multiscales, arr.path)
            if dataset is None:
                logger.warning(
                    "Could not find matching dataset for zarr array path %r",
                    arr.path,
                )
            else:
                self._level = multiscales[0].datasets.index(dataset)

        self._pending: list[_PendingRequest] = []
        self._flush_handle: asyncio.Handle | None = None
        self._reads: set[asyncio.Task] = set()

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._arr.shape)

    @property
    def path(self) -> str:
        return self._arr.path

    @property
    def _xy_axes(self) -> tuple[int, int]:
        return self.labels.index(X_AXIS_NAME), self.labels.index(Y_AXIS_NAME)

    @property
    def width(self) -> int:
        return self.shape[self._xy_axes[0]]

    @property
    def height(self) -> int:
        return self.shape[self._xy_axes[1]]

    @property
    def pixel_size(self) -> PixelSizes | None:
        """The physical (x, y) pixel size of this level in nm, if known."""
        if self._level is None:
            return None
        return resolve_pixel_sizes(self.multiscales, self._level)

    async def get_tile(
        self,
        x: int,
        y: int,
        selection: Mapping[str, int] | Sequence[int],
        signal: asyncio.Event | None = None,
    ) -> PixelData:
        """Read tile (`x`, `y`); edge tiles are clipped to the level extent."""
        size = self.tile_size
        return await self._fetch_data(
            build_zarr_selection(
                selection,
                self.labels,
                x=slice(x * size, min((x + 1) * size, self.width)),
                y=slice(y * size, min((y + 1) * size, self.height)),
            ),
            signal,
        )

    async def get_raster(
        self,
        selection: Mapping[str, int] | Sequence[int],
        signal: asyncio.Event | None = None,
    ) -> PixelData:
        """Read the full x/y extent of this level at `selection`."""
        return await self._fetch_data(
            build_zarr_selection(selection, self.labels, x=slice(None), y=slice(None)),
            signal,
        )

    def on_tile_error(self, err: BaseException) -> None:
        """Hook for failed tile reads; the renderer decides how to show them."""

    def _fetch_data(
        self, selection: list[int | slice], signal: asyncio.Event | None
    ) -> asyncio.Future[PixelData]:
        loop = asyncio.get_running_loop()
        future: asyncio.Future[PixelData] = loop.create_future()
        self._pending.append(_PendingRequest(selection, signal, future))
        if self._flush_handle is None:
            self._flush_handle = loop.call_soon(self._fetch_pending)
        return future

    def _fetch_pending(self) -> None:
        """Issue every queued read and start a fresh queue."""
        pending, self._pending = self._pending, []
        self._flush_handle = None
        logger.debug("%s: flushing %d request(s)", self.path, len(pending))
        for request in pending:
            if request.future.done():
                # the caller gave up before the read was issued
                continue
            task = asyncio.ensure_future(self._resolve(request))
            self._reads.add(task)
            task.add_done_callback(self._reads.discard)

    async def _resolve(self, request: _PendingRequest) -> None:
        future = request.future
        try:
            data = await self._arr.read(request.selection, request.signal)
            result = PixelData(
                data=self._transform(data),
                width=data.shape[1],
                height=data.shape[0],
            )
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            if not future.done():
                future.set_exception(e)
            return
        if not future.done():
            future.set_result(result)

    def __repr__(self) -> str:
        return (
            f"<ZarrPixelSource {self.path!r} shape={self.shape} "
            f"labels={self.labels} tile_size={self.tile_size}>"
        )
