"""Readers that fetch a selection of an array from its chunk store.

A reader is the only place chunk data is touched. Everything above it works in
terms of `ArrayReader`, so in-memory arrays and store-backed arrays are
interchangeable.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Callable, Protocol, TypeAlias, runtime_checkable

import numpy as np

if TYPE_CHECKING:
    import tensorstore  # type: ignore

    from ._zarr import ZarrArray

__all__ = [
    "ArrayReader",
    "NumpyReader",
    "ReaderFactory",
    "Selection",
    "TensorStoreReader",
    "open_reader",
]

Selection: TypeAlias = Sequence["int | slice"]
"""One entry per array axis: a fixed index or a range."""


@runtime_checkable
class ArrayReader(Protocol):
    """A read-only, range-addressable array."""

    @property
    def shape(self) -> tuple[int, ...]: ...
    @property
    def dtype(self) -> np.dtype: ...
    @property
    def chunks(self) -> tuple[int, ...]: ...
    @property
    def path(self) -> str: ...

    async def read(
        self, selection: Selection, signal: asyncio.Event | None = None
    ) -> np.ndarray:
        """Read `selection`, raising CancelledError once `signal` is set."""
        ...


ReaderFactory: TypeAlias = Callable[["ZarrArray"], ArrayReader]


def _raise_if_aborted(signal: asyncio.Event | None) -> None:
    if signal is not None and signal.is_set():
        raise asyncio.CancelledError("read aborted")


class NumpyReader:
    """An in-memory array exposed through the reader protocol."""

    def __init__(
        self,
        data: Any,
        path: str = "",
        chunks: Sequence[int] | None = None,
    ) -> None:
        self._data = np.asarray(data)
        self._path = path
        self._chunks = tuple(chunks) if chunks is not None else self._data.shape

    @property
    def shape(self) -> tuple[int, ...]:
        return self._data.shape

    @property
    def dtype(self) -> np.dtype:
        return self._data.dtype

    @property
    def chunks(self) -> tuple[int, ...]:
        return self._chunks

    @property
    def path(self) -> str:
        return self._path

    async def read(
        self, selection: Selection, signal: asyncio.Event | None = None
    ) -> np.ndarray:
        _raise_if_aborted(signal)
        # yield once, like any real store would
        await asyncio.sleep(0)
        _raise_if_aborted(signal)
        return np.array(self._data[tuple(selection)])

    def __repr__(self) -> str:
        return f"<NumpyReader {self._path!r} shape={self.shape} dtype={self.dtype}>"


class TensorStoreReader:
    """A tensorstore-backed array. Reads are awaited tensorstore futures."""

    def __init__(
        self,
        store: tensorstore.TensorStore,
        path: str = "",
        chunks: Sequence[int] | None = None,
    ) -> None:
        self._store = store
        self._path = path
        if chunks is None:
            chunks = store.chunk_layout.read_chunk.shape
        self._chunks = tuple(chunks)

    @classmethod
    def from_zarr(cls, array: ZarrArray) -> TensorStoreReader:
        return cls(array.to_tensorstore(), path=array.path, chunks=array.chunks)

    @property
    def shape(self) -> tuple[int, ...]:
        return tuple(self._store.shape)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype(self._store.dtype.numpy_dtype)

    @property
    def chunks(self) -> tuple[int, ...]:
        return self._chunks

    @property
    def path(self) -> str:
        return self._path

    async def read(
        self, selection: Selection, signal: asyncio.Event | None = None
    ) -> np.ndarray:
        _raise_if_aborted(signal)
        future = self._store[tuple(selection)].read()
        if signal is None:
            return await future

        async def _await_read() -> np.ndarray:
            return await future

        read_task = asyncio.ensure_future(_await_read())
        abort_task = asyncio.ensure_future(signal.wait())
        await asyncio.wait(
            {read_task, abort_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if read_task.done():
            abort_task.cancel()
            return read_task.result()

        future.cancel()
        read_task.cancel()
        raise asyncio.CancelledError("read aborted")

    def __repr__(self) -> str:
        return f"<TensorStoreReader {self._path!r} shape={self.shape}>"


def open_reader(array: ZarrArray) -> ArrayReader:
    """Default reader factory: open a store array with tensorstore."""
    return TensorStoreReader.from_zarr(array)
