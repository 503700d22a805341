"""Minimal zarr v2/v3 hierarchy access over fsspec.

Only metadata is read here: group attributes, array shapes, data types and
chunk geometry. Chunk data is read through tensorstore (see `_store.py`), so
this package never decodes chunks itself.

This implementation matches zarr-python's behavior: a zarr group expects
all children to be the same zarr_format version. Mixed v2/v3 hierarchies
are not supported.
"""

from __future__ import annotations

import json
import os
import posixpath
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType, NoneType
from typing import TYPE_CHECKING, Any, ClassVar, Literal, overload

from pydantic import BaseModel, ConfigDict, Field, model_validator

if TYPE_CHECKING:
    from collections.abc import Iterable
    from typing import TypeVar

    import tensorstore  # type: ignore
    from fsspec import FSMap

    _T = TypeVar("_T")

__all__ = ["ZarrArray", "ZarrGroup", "ZarrMetadata", "open_node"]


class ZarrMetadata(BaseModel):
    """Metadata from a zarr metadata file.

    We don't differentiate between v2 and v3 here - both are loaded into this
    common format.  Extra fields may be present depending on the zarr version
    and node type, use `getattr()` or `model_dump()` to access them.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="allow", frozen=True)

    zarr_format: Literal[2, 3]
    node_type: Literal["group", "array"]
    attributes: dict[str, Any] = Field(default_factory=dict)
    shape: tuple[int, ...] | None = None
    data_type: str | list | None = None

    @model_validator(mode="before")
    @classmethod
    def _fix_inputs(cls, val: Any) -> Any:
        """Fix up input dictionary before validation."""
        # cast v2 "dtype" to "data_type"
        if isinstance(val, dict):
            if "dtype" in val and "data_type" not in val:
                val["data_type"] = val.pop("dtype")
        return val

    @property
    def chunk_shape(self) -> tuple[int, ...] | None:
        """Return the regular chunk shape for v2 or v3 arrays."""
        if self.zarr_format == 2:
            chunks = getattr(self, "chunks", None)
        else:
            grid = getattr(self, "chunk_grid", None) or {}
            chunks = grid.get("configuration", {}).get("chunk_shape")
        return tuple(chunks) if chunks is not None else None


def _load_zarr_json(prefix: str, mapper: Mapping[str, bytes]) -> ZarrMetadata | None:
    """Load and parse zarr v3 metadata (zarr.json)."""
    if json_data := mapper.get(f"{prefix}zarr.json".lstrip("/")):
        return ZarrMetadata.model_validate_json(json_data)
    return None


def _load_v2(
    prefix: str, mapper: Mapping[str, bytes], node_type: Literal["group", "array"]
) -> ZarrMetadata | None:
    """Load and parse zarr v2 metadata (.zgroup or .zarray plus .zattrs)."""
    doc = ".zgroup" if node_type == "group" else ".zarray"
    data = mapper.get(f"{prefix}{doc}".lstrip("/"))
    if data is None:
        return None
    meta = json.loads(data.decode("utf-8"))
    attrs_data = mapper.get(f"{prefix}.zattrs".lstrip("/"))
    attrs = json.loads(attrs_data.decode("utf-8")) if attrs_data else {}
    return ZarrMetadata.model_validate(
        {**meta, "node_type": node_type, "attributes": attrs}
    )


def _load_zarr_metadata(mapper: Mapping[str, bytes], path: str = "") -> ZarrMetadata:
    """Load and parse zarr metadata (v2 or v3) at `path` within the store.

    Raises
    ------
    FileNotFoundError
        If no zarr metadata is found at the specified prefix.
    """
    prefix = f"{path}/" if path else ""
    for meta in (
        _load_zarr_json(prefix, mapper),
        _load_v2(prefix, mapper, "group"),
        _load_v2(prefix, mapper, "array"),
    ):
        if meta is not None:
            return meta
    raise FileNotFoundError(
        f"No zarr metadata found at '{prefix}' (tried zarr.json, .zgroup, .zarray)"
    )


# ---------------------------------------------------


class _CachedMapper(Mapping[str, bytes]):
    """Caching wrapper for FSMap that caches metadata file reads.

    fsspec does NOT cache individual file reads. Opening a plate means reading
    one metadata document per well, so repeated lookups are served from here.
    Metadata documents are small and immutable while a dataset is open, so the
    cache is unbounded.
    """

    def __init__(self, mapper: FSMap) -> None:
        self._fsmap = mapper
        self._cache: dict[str, bytes | None | Exception] = {}

    @overload
    def get(self, key: str, /) -> bytes | None: ...
    @overload
    def get(self, key: str, /, default: bytes) -> bytes: ...
    @overload
    def get(self, key: str, /, default: _T) -> _T: ...
    def get(self, key: str, default: _T | None = None) -> _T | None:
        """Get a value from the mapper with caching."""
        if key not in self._cache:
            self._cache[key] = val = self._fsmap.get(key, default)
        else:
            val = self._cache[key]
        if isinstance(val, Exception):
            raise val
        return val  # type: ignore[return-value]

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        if key in self._cache:
            val = self._cache[key]
        else:
            self._cache[key] = val = self._fsmap.get(key)
        return not isinstance(val, (Exception, NoneType))

    def getitems(self, keys: list[str]) -> dict[str, bytes]:
        """Batch fetch multiple items and cache them.

        Remote filesystems fetch these concurrently. Keys that don't exist are
        omitted from the result.
        """
        uncached_keys = [k for k in keys if k not in self._cache]
        if uncached_keys:
            # on_error='return' stores missing keys as exceptions (usually KeyErrors)
            results = self._fsmap.getitems(uncached_keys, on_error="return")
            self._cache.update(results)

        result = {}
        for key in keys:
            val = self._cache.get(key)
            if val is not None and not isinstance(val, Exception):
                result[key] = val
        return result

    def __iter__(self) -> Iterator[str]:
        return iter(self._fsmap)

    def __len__(self) -> int:
        return len(self._fsmap)

    def __getitem__(self, key: str) -> bytes:
        result = self.get(key)
        if result is None:
            raise KeyError(key)
        return result


class ZarrNode:
    """Base class for zarr nodes (groups and arrays)."""

    __slots__ = ("_metadata", "_path", "_store")

    def __init__(
        self,
        store: _CachedMapper | FSMap,
        path: str = "",
        meta: ZarrMetadata | None = None,
    ) -> None:
        """Initialize a zarr node.

        Parameters
        ----------
        store : _CachedMapper | FSMap
            The mapper for the zarr store. An FSMap is wrapped in a caching
            mapper automatically.
        path : str
            The path to this node within the zarr store (relative to the store root).
        meta : ZarrMetadata | None
            Optional pre-loaded metadata. If not provided, it will be loaded from
            the store.
        """
        if not isinstance(store, _CachedMapper):
            store = _CachedMapper(store)

        self._store = store
        self._path = str(path).strip("/")
        if meta is None:
            self._metadata = _load_zarr_metadata(self._store, self._path)
        elif meta.node_type != self.node_type():
            raise ValueError(
                f"Metadata node_type '{meta.node_type}' does not match "
                f"expected '{self.node_type()}'"
            )
        else:
            self._metadata = meta

    @property
    def attrs(self) -> Mapping[str, Any]:
        """Return attributes as a read-only mapping."""
        return MappingProxyType(self._metadata.attributes)

    @property
    def path(self) -> str:
        """Return the path of this node relative to the store root."""
        return self._path

    @classmethod
    def node_type(cls) -> Literal["group", "array"]:
        raise NotImplementedError("Cannot instantiate base ZarrNode")

    @property
    def store_path(self) -> str:
        """Get the URI for this zarr node, e.g. "file:///data/img.zarr/0"."""
        mapper = self._store._fsmap
        if self._path:
            full_path = f"{mapper.root.rstrip('/')}/{self._path}"
        else:
            full_path = mapper.root

        protocol = mapper.fs.protocol
        if isinstance(protocol, tuple):
            protocol = protocol[0]
        if protocol in ("file", "local"):
            return Path(full_path).as_uri()
        return mapper.fs.unstrip_protocol(full_path)

    def parent(self) -> ZarrGroup | None:
        """Return the group containing this node, or None if there is none.

        For the root node of a store, the directory above the store root is
        tried, which allows opening a well directly and still finding its plate.
        """
        if self._path:
            parent_path = posixpath.dirname(self._path)
            try:
                meta = _load_zarr_metadata(self._store, parent_path)
            except FileNotFoundError:
                return None
            if meta.node_type != "group":
                return None
            return ZarrGroup(self._store, parent_path, meta)

        from fsspec import FSMap

        mapper = self._store._fsmap
        root = mapper.root.rstrip("/")
        parent_root = posixpath.dirname(root)
        if not parent_root.strip("/") or parent_root == root:
            return None
        parent_store = _CachedMapper(FSMap(parent_root, mapper.fs))
        try:
            meta = _load_zarr_metadata(parent_store)
        except FileNotFoundError:
            return None
        if meta.node_type != "group":
            return None
        return ZarrGroup(parent_store, "", meta)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.store_path}>"


class ZarrGroup(ZarrNode):
    """Wrapper around a zarr v2/v3 group."""

    __slots__ = ()

    @classmethod
    def node_type(cls) -> Literal["group"]:
        return "group"

    def _child_path(self, key: str) -> str:
        key = key.strip("/")
        return f"{self._path}/{key}" if self._path else key

    def prefetch_children(self, child_keys: Iterable[str]) -> None:
        """Prefetch metadata documents for several children in one batch."""
        metadata_paths = []
        for key in child_keys:
            child_path = self._child_path(key)
            if self._metadata.zarr_format >= 3:
                metadata_paths.append(f"{child_path}/zarr.json")
            else:
                metadata_paths.extend(
                    [
                        f"{child_path}/.zgroup",
                        f"{child_path}/.zarray",
                        f"{child_path}/.zattrs",
                    ]
                )
        self._store.getitems(metadata_paths)

    def get(self, key: str, default: Any = None) -> ZarrGroup | ZarrArray | None:
        try:
            return self[key]
        except KeyError:
            return default

    def __getitem__(self, key: str) -> ZarrGroup | ZarrArray:
        """Get a child node (group or array). `key` may be a nested path."""
        child_path = self._child_path(key)
        prefix = f"{child_path}/"
        if self._metadata.zarr_format >= 3:
            candidates = (_load_zarr_json(prefix, self._store),)
        else:
            candidates = (
                _load_v2(prefix, self._store, "group"),
                _load_v2(prefix, self._store, "array"),
            )
        for meta in candidates:
            if meta is None:
                continue
            if meta.node_type == "group":
                return ZarrGroup(self._store, child_path, meta)
            return ZarrArray(self._store, child_path, meta)
        raise KeyError(key)


class ZarrArray(ZarrNode):
    """Wrapper around a zarr v2/v3 array."""

    __slots__ = ()

    @classmethod
    def node_type(cls) -> Literal["array"]:
        return "array"

    @property
    def shape(self) -> tuple[int, ...]:
        if self._metadata.shape is None:
            raise ValueError("Array metadata missing 'shape'")
        return self._metadata.shape

    @property
    def dtype(self) -> str | list:
        """Return the data type as written in the metadata document."""
        if self._metadata.data_type is None:
            raise ValueError("Array metadata missing 'data_type'")
        return self._metadata.data_type

    @property
    def chunks(self) -> tuple[int, ...]:
        """Return the chunk shape, falling back to the full shape if unchunked."""
        return self._metadata.chunk_shape or self.shape

    @property
    def dimension_names(self) -> list[str] | None:
        """Axis names stored with the array itself, if every axis has one."""
        names = getattr(self._metadata, "dimension_names", None)
        if names is None:
            # v2 convention used by xarray
            names = self._metadata.attributes.get("_ARRAY_DIMENSIONS")
        if not names or not all(isinstance(n, str) for n in names):
            return None
        return list(names)

    def to_tensorstore(self) -> tensorstore.TensorStore:
        """Open this array with tensorstore for chunk reads."""
        try:
            import tensorstore as ts  # type: ignore
        except ImportError as e:
            raise ImportError(
                "tensorstore package is required for to_tensorstore()"
            ) from e

        spec = {
            "driver": "zarr3" if self._metadata.zarr_format == 3 else "zarr",
            "kvstore": _fsmap_to_tensorstore_kvstore(self._store._fsmap, self._path),
        }
        return ts.open(spec, read=True).result()


def _get_mapper(uri: str | os.PathLike | Any) -> _CachedMapper:
    from fsspec import FSMap, get_mapper

    if isinstance(uri, (str, os.PathLike)):
        uri = os.path.expanduser(os.fspath(uri))
    else:
        raise TypeError(f"uri must be a string or os.PathLike, got {type(uri)}")

    mapper = get_mapper(uri)
    if not isinstance(mapper, FSMap):  # pragma: no cover
        raise TypeError(f"Expected FSMap from get_mapper, got {type(mapper)}")
    return _CachedMapper(mapper)


def open_node(uri: str | os.PathLike | ZarrNode) -> ZarrGroup | ZarrArray:
    """Open the zarr group or array at `uri`.

    Raises
    ------
    FileNotFoundError
        If no zarr metadata is found at the specified URI.
    """
    if isinstance(uri, (ZarrGroup, ZarrArray)):
        return uri
    store = _get_mapper(uri)
    meta = _load_zarr_metadata(store)
    if meta.node_type == "group":
        return ZarrGroup(store, "", meta)
    return ZarrArray(store, "", meta)


# ---------------------------------------------------


def _fsmap_to_tensorstore_kvstore(fsmap: FSMap, path: str = "") -> dict:
    """Convert an FSMap (plus a path inside it) to a tensorstore kvstore spec."""
    protocol = fsmap.fs.protocol
    if isinstance(protocol, tuple):
        protocol = protocol[0]

    path = path.strip("/")

    if protocol in ("file", "local"):
        base_path = os.path.abspath(fsmap.root)
        if path:
            base_path = os.path.join(base_path, path)
        return {"driver": "file", "path": base_path}

    if protocol in ("http", "https"):
        base_url = fsmap.root
        if not base_url.startswith(("http://", "https://")):
            base_url = f"{protocol}://{base_url}"
        if path:
            base_url = f"{base_url.rstrip('/')}/{path}"
        return {"driver": "http", "base_url": base_url}

    if protocol in ("s3", "s3a", "gcs", "gs"):  # pragma: no cover
        bucket, _, base_path = fsmap.root.partition("/")
        if path:
            base_path = f"{base_path}/{path}" if base_path else path
        driver = "s3" if protocol.startswith("s3") else "gcs"
        spec: dict[str, Any] = {"driver": driver, "bucket": bucket}
        if base_path:
            spec["path"] = base_path
        return spec

    raise ValueError(
        f"Cannot map fsspec protocol '{protocol}' to tensorstore kvstore. "
        f"Supported protocols: file, s3, gcs, http/https"
    )
