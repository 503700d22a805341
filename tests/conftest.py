from __future__ import annotations

import json
import math
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest

try:
    import fsspec
except ImportError:
    pytest.skip("fsspec not installed", allow_module_level=True)

from zarrtiles import NumpyReader

if TYPE_CHECKING:
    from pathlib import Path

    from zarrtiles import ZarrArray

DEFAULT_AXES = {2: "yx", 3: "cyx", 4: "czyx", 5: "tczyx"}
AXIS_TYPES = {"t": "time", "c": "channel", "z": "space", "y": "space", "x": "space"}


def fake_data(shape: tuple[int, ...], dtype: Any) -> np.ndarray:
    """Deterministic pixel data: a flat ramp wrapped to fit small dtypes."""
    n = math.prod(shape)
    return (np.arange(n) % 251).astype(dtype).reshape(shape)


def numpy_open_array(arr: ZarrArray) -> NumpyReader:
    """Reader factory that stands in for tensorstore in tests."""
    return NumpyReader(
        fake_data(arr.shape, np.dtype(arr.dtype)), path=arr.path, chunks=arr.chunks
    )


class MemoryStore:
    """Writes zarr v2 metadata documents into an in-memory fsspec store."""

    def __init__(self, name: str) -> None:
        self.uri = f"memory://{name}"
        self.mapper = fsspec.get_mapper(self.uri)

    def _put(self, key: str, doc: Any) -> None:
        self.mapper[key.lstrip("/")] = json.dumps(doc).encode()

    def url(self, path: str = "") -> str:
        return f"{self.uri}/{path}".rstrip("/")

    def group(self, path: str = "", attrs: dict | None = None) -> str:
        prefix = f"{path}/" if path else ""
        self._put(f"{prefix}.zgroup", {"zarr_format": 2})
        if attrs is not None:
            self._put(f"{prefix}.zattrs", attrs)
        return self.url(path)

    def array(
        self,
        path: str,
        shape: tuple[int, ...],
        dtype: str = "<u2",
        chunks: tuple[int, ...] | None = None,
        attrs: dict | None = None,
    ) -> str:
        if attrs is not None:
            self._put(f"{path}/.zattrs", attrs)
        self._put(
            f"{path}/.zarray",
            {
                "zarr_format": 2,
                "shape": list(shape),
                "chunks": list(chunks or shape),
                "dtype": dtype,
                "compressor": None,
                "fill_value": 0,
                "order": "C",
                "filters": None,
            },
        )
        return self.url(path)

    def image(
        self,
        path: str,
        shape: tuple[int, ...],
        axes: list[Any] | None = None,
        *,
        levels: int = 2,
        scale: list[float] | None = None,
        dtype: str = "<u2",
        chunks: tuple[int, ...] | None = None,
        omero: dict | None = None,
        version: str = "0.4",
        name: str | None = "image",
    ) -> str:
        """Write a multiscale image, halving y/x at each level."""
        ndim = len(shape)
        if axes is None:
            axes = [
                {"name": n, "type": AXIS_TYPES[n]} for n in DEFAULT_AXES[ndim]
            ]
        scale = scale or [1.0] * ndim
        datasets = []
        for level in range(levels):
            factor = 2**level
            lvl_shape = (*shape[:-2], *(max(s // factor, 1) for s in shape[-2:]))
            lvl_scale = [*scale[:-2], *(s * factor for s in scale[-2:])]
            self.array(
                f"{path}/{level}".lstrip("/"), lvl_shape, dtype=dtype, chunks=chunks
            )
            datasets.append(
                {
                    "path": str(level),
                    "coordinateTransformations": [{"type": "scale", "scale": lvl_scale}],
                }
            )
        multiscale: dict[str, Any] = {"version": version, "axes": axes, "datasets": datasets}
        if name:
            multiscale["name"] = name
        attrs: dict[str, Any] = {"multiscales": [multiscale]}
        if omero is not None:
            attrs["omero"] = omero
        if version == "0.5":
            attrs = {"ome": {"version": "0.5", **attrs}}
        return self.group(path, attrs)


@pytest.fixture
def memory_store(tmp_path: Path) -> MemoryStore:
    # tmp_path gives each test its own namespace in the shared memory filesystem
    return MemoryStore(f"{tmp_path.name}.zarr")


@pytest.fixture
def omero_3ch() -> dict:
    return {
        "channels": [
            {
                "label": name,
                "color": color,
                "active": active,
                "window": {"start": 0, "end": 100 * (i + 1), "min": 0, "max": 1000},
            }
            for i, (name, color, active) in enumerate(
                [("DAPI", "0000FF", True), ("GFP", "00FF00", False), ("RFP", "FF0000", True)]
            )
        ],
        "rdefs": {"defaultT": 1, "defaultZ": 2},
    }
