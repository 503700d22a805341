from __future__ import annotations

import asyncio
import json
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

import numpy as np
import pytest

from conftest import numpy_open_array
from zarrtiles import (
    ConfigurationError,
    ImageLayerConfig,
    NumpyReader,
    RedirectError,
    SchemaError,
    create_source_data,
    guess_axis_labels,
    init_layer_state_from_source,
)
from zarrtiles._loader import guess_tile_size

if TYPE_CHECKING:
    from collections.abc import Iterator

    from conftest import MemoryStore
    from zarrtiles import SourceData


def load(config: Any, **kwargs: Any) -> SourceData:
    return asyncio.run(create_source_data(config, open_array=numpy_open_array, **kwargs))


@pytest.mark.parametrize(
    "shape, expected",
    [
        ((10, 12), ["y", "x"]),
        ((2, 10, 12), ["z", "y", "x"]),
        ((2, 3, 4, 10, 12), ["t", "c", "z", "y", "x"]),
        ((7, 2, 3, 4, 10, 12), ["dim_0", "t", "c", "z", "y", "x"]),
        ((10, 12, 3), ["y", "x", "_c"]),
        ((2, 10, 12, 4), ["z", "y", "x", "_c"]),
    ],
)
def test_guess_axis_labels(shape: tuple[int, ...], expected: list[str]) -> None:
    assert guess_axis_labels(shape) == expected


@pytest.mark.parametrize(
    "shape, chunks, size",
    [
        ((1024, 1024), (512, 512), 512),
        ((1024, 1024), (300, 700), 256),
        ((3, 1024, 1024), (1, 100, 1024), 64),
        ((1024, 1024, 3), (256, 128, 3), 128),
    ],
)
def test_guess_tile_size(shape: tuple, chunks: tuple, size: int) -> None:
    reader = NumpyReader(np.zeros(shape, dtype="uint8"), chunks=chunks)
    assert guess_tile_size(reader) == size


# ---------------------------------------------------------------------------
# plain arrays


def test_numpy_single_channel() -> None:
    data = np.arange(20 * 30, dtype="uint16").reshape(20, 30)
    source = load({"source": data})
    assert source.channel_axis is None
    assert source.axis_labels == ["y", "x"]
    assert source.contrast_limits == [(0, 599)]
    assert source.colors == ["#FFFFFF"]
    assert len(source.loader) == 1


def test_numpy_guessed_channel_axis() -> None:
    data = np.zeros((2, 3, 8, 8), dtype="uint8")
    source = load({"source": data})
    assert source.axis_labels == ["c", "z", "y", "x"]
    assert source.channel_axis == 0
    assert source.colors == ["#FF00FF", "#00FF00"]
    assert source.contrast_limits == [(0, 255), (0, 255)]


def test_custom_label_guesser() -> None:
    data = np.zeros((3, 8, 8), dtype="uint8")
    source = load({"source": data}, guess_labels=lambda shape: ["c", "y", "x"])
    assert source.channel_axis == 0


def test_config_axis_labels_win() -> None:
    data = np.zeros((3, 8, 8), dtype="uint8")
    source = load({"source": data, "axis_labels": ["z", "y", "x"]})
    assert source.channel_axis is None
    assert source.axis_labels == ["z", "y", "x"]


def test_config_axis_labels_wrong_rank() -> None:
    with pytest.raises(ConfigurationError, match="rank 3"):
        load({"source": np.zeros((3, 8, 8)), "axis_labels": ["y", "x"]})


def test_channel_axis_out_of_range() -> None:
    with pytest.raises(ConfigurationError, match="Cannot determine how to display"):
        load({"source": np.zeros((8, 8), dtype="uint8"), "channel_axis": 4})


def test_channel_property_length_mismatch() -> None:
    config = {
        "source": np.zeros((3, 8, 8), dtype="uint8"),
        "channel_axis": 0,
        "colors": ["#FF0000", "#00FF00"],
    }
    with pytest.raises(ConfigurationError, match="colors is different size"):
        load(config)


def test_invalid_config_mapping() -> None:
    with pytest.raises(ConfigurationError, match="Invalid image configuration"):
        load({"source": np.zeros((8, 8)), "opacity": "lots"})


def test_visibilities_seed_channel_defaults() -> None:
    data = np.zeros((3, 8, 8), dtype="uint16")
    data[0] = np.arange(64).reshape(8, 8)
    data[2] = np.arange(64).reshape(8, 8) * 3
    source = load({"source": data, "channel_axis": 0, "visibilities": [True, False, True]})
    assert source.contrast_limits == [(0, 63), None, (0, 189)]

    props = init_layer_state_from_source(source).layer_props
    assert props.selections == [[0, 0, 0], [2, 0, 0]]
    assert props.colors == [(255, 0, 0), (0, 0, 255)]
    assert props.contrast_limits == [(0, 63), (0, 189)]



def test_store_array(memory_store: MemoryStore) -> None:
    url = memory_store.array("raw", (2, 64, 64), dtype="<u2", chunks=(1, 32, 32))
    source = load({"source": url})
    assert source.axis_labels == ["z", "y", "x"]
    assert source.loader[0].tile_size == 32
    assert source.loader[0].dtype == "Uint16"


def test_store_array_dimension_names(memory_store: MemoryStore) -> None:
    url = memory_store.array(
        "raw", (3, 16, 16), attrs={"_ARRAY_DIMENSIONS": ["c", "y", "x"]}
    )
    source = load({"source": url})
    assert source.axis_labels == ["c", "y", "x"]
    assert source.channel_axis == 0


def test_dimension_names_of_wrong_rank_are_ignored(memory_store: MemoryStore) -> None:
    url = memory_store.array("raw", (3, 16, 16), attrs={"_ARRAY_DIMENSIONS": ["y", "x"]})
    source = load({"source": url})
    assert source.axis_labels == ["z", "y", "x"]


def test_config_axis_labels_beat_dimension_names(memory_store: MemoryStore) -> None:
    url = memory_store.array(
        "raw", (3, 16, 16), attrs={"_ARRAY_DIMENSIONS": ["c", "y", "x"]}
    )
    source = load({"source": url, "axis_labels": ["t", "y", "x"]})
    assert source.channel_axis is None



# ---------------------------------------------------------------------------
# multiscale groups


def test_multiscales_without_omero(memory_store: MemoryStore) -> None:
    url = memory_store.image("", (2, 3, 64, 64), levels=3, chunks=(1, 1, 16, 16))
    source = load(ImageLayerConfig(source=url))
    assert [lvl.shape for lvl in source.loader] == [
        (2, 3, 64, 64),
        (2, 3, 32, 32),
        (2, 3, 16, 16),
    ]
    assert source.axis_labels == ["c", "z", "y", "x"]
    assert source.channel_axis == 0
    assert source.loader[0].tile_size == 16


def test_multiscales_calibration(memory_store: MemoryStore) -> None:
    axes = [
        {"name": "y", "type": "space", "unit": "micrometer"},
        {"name": "x", "type": "space", "unit": "micrometer"},
    ]
    url = memory_store.image("", (64, 64), axes, scale=[0.5, 0.25])
    source = load({"source": url})
    assert source.loader[0].pixel_size == (pytest.approx(250), pytest.approx(500))
    assert source.loader[1].pixel_size == (pytest.approx(500), pytest.approx(1000))


def test_ome_multiscales_with_omero(memory_store: MemoryStore, omero_3ch: dict) -> None:
    url = memory_store.image("", (3, 3, 5, 32, 32), omero=omero_3ch, version="0.5")
    source = load({"source": url})
    assert source.name == "image"
    assert source.channel_axis == 1
    assert source.names == ["DAPI", "GFP", "RFP"]
    assert source.colors == ["#0000FF", "#00FF00", "#FF0000"]
    assert source.visibilities == [True, False, True]
    assert source.contrast_limits == [(0, 100), (0, 200), (0, 300)]
    # rdefs pick the initial plane
    assert source.defaults.selection == [1, 0, 2, 0, 0]


def test_config_overrides_omero(memory_store: MemoryStore, omero_3ch: dict) -> None:
    url = memory_store.image("", (3, 32, 32), omero=omero_3ch, version="0.4")
    config = {"source": url, "names": ["a", "b", "c"], "name": "mine"}
    source = load(config)
    assert source.names == ["a", "b", "c"]
    assert source.name == "mine"
    assert source.colors == ["#0000FF", "#00FF00", "#FF0000"]


def test_omero_channel_count_mismatch_is_ignored(
    memory_store: MemoryStore, omero_3ch: dict, caplog: pytest.LogCaptureFixture
) -> None:
    url = memory_store.image("", (2, 32, 32), omero=omero_3ch)
    source = load({"source": url})
    assert source.names == ["channel_0", "channel_1"]
    assert "ignoring omero" in caplog.text


def test_multiscales_missing_dataset(memory_store: MemoryStore) -> None:
    memory_store.group(
        "",
        {"multiscales": [{"axes": ["y", "x"], "datasets": [{"path": "nope"}]}]},
    )
    with pytest.raises(SchemaError, match="'nope'"):
        load({"source": memory_store.url()})


def test_default_plane_missing_from_lowest_level(memory_store: MemoryStore) -> None:
    omero = {"channels": [{"label": "a"}, {"label": "b"}], "rdefs": {"defaultZ": 5}}
    url = memory_store.image("", (2, 8, 32, 32), levels=3, omero=omero)
    # z is downsampled along with y/x
    memory_store.array("1", (2, 4, 16, 16))
    memory_store.array("2", (2, 2, 8, 8))

    source = load({"source": url})
    assert source.defaults.selection == [0, 5, 0, 0]
    assert source.loader[-1].shape == (2, 2, 8, 8)
    assert all(limits is not None for limits in source.contrast_limits)


def test_omero_window_without_start_end(memory_store: MemoryStore) -> None:
    omero = {
        "channels": [
            {"label": f"ch{i}", "window": {"min": 0, "max": 255}} for i in range(3)
        ]
    }
    url = memory_store.image("", (3, 32, 32), omero=omero)
    source = load({"source": url})
    assert source.names == ["ch0", "ch1", "ch2"]
    # no start/end: limits are sampled from the data instead
    assert source.contrast_limits == [(0, 250)] * 3


def test_invalid_omero_falls_back_to_multiscales(
    memory_store: MemoryStore, caplog: pytest.LogCaptureFixture
) -> None:
    omero = {"channels": {"0": {"label": "DAPI"}}}
    url = memory_store.image("", (3, 32, 32), omero=omero)
    source = load({"source": url})
    assert source.channel_axis == 0
    assert source.names == ["channel_0", "channel_1", "channel_2"]
    assert "ignoring invalid omero metadata" in caplog.text



def test_labels_are_loaded(memory_store: MemoryStore, omero_3ch: dict) -> None:
    url = memory_store.image(
        "", (3, 64, 64), omero=omero_3ch, scale=[1, 0.5, 0.5]
    )
    memory_store.group("labels", {"labels": ["cells"]})
    memory_store.image(
        "labels/cells",
        (1, 32, 32),
        axes=["c", "y", "x"],
        scale=[1, 1.0, 1.0],
        dtype="<i4",
        name=None,
    )
    with edit_attrs(memory_store, "labels/cells") as attrs:
        attrs["image-label"] = {
            "colors": [{"label-value": 1, "rgba": [255, 0, 0, 255]}]
        }

    source = load({"source": url})
    assert source.labels is not None
    (label,) = source.labels
    assert label.name == "cells"
    assert label.colors == {1: (255, 0, 0, 255)}
    # label pixels are twice the size of image pixels
    np.testing.assert_array_equal(np.diag(label.model_matrix), [2, 2, 1, 1])


@contextmanager
def edit_attrs(store: MemoryStore, path: str) -> Iterator[dict]:
    key = f"{path}/.zattrs".lstrip("/")
    attrs = json.loads(store.mapper[key])
    yield attrs
    store.mapper[key] = json.dumps(attrs).encode()


# ---------------------------------------------------------------------------
# other layouts


def test_group_without_multiscales(memory_store: MemoryStore) -> None:
    url = memory_store.group("", {"foo": "bar"})
    with pytest.raises(SchemaError, match="missing multiscales"):
        load({"source": url})


def test_bioformats2raw_redirects(memory_store: MemoryStore) -> None:
    url = memory_store.group("", {"bioformats2raw.layout": 3})
    memory_store.image("0", (16, 16))
    with pytest.raises(RedirectError) as exc:
        load({"source": url})
    assert exc.value.url.endswith(f"?source={url}")
    assert exc.value.url.startswith("https://ome.github.io/ome-ngff-validator/")


def test_redirect_url_is_configurable(
    memory_store: MemoryStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ZARRTILES_VALIDATOR_URL", "https://validator.example/")
    url = memory_store.group("", {"bioformats2raw.layout": 3})
    with pytest.raises(RedirectError, match="validator.example"):
        load({"source": url})


def test_missing_store() -> None:
    with pytest.raises(FileNotFoundError):
        load({"source": "memory://does-not-exist.zarr"})


def _write_plate(store: MemoryStore, fields: int = 2) -> None:
    store.group(
        "",
        {
            "plate": {
                "name": "screen",
                "rows": [{"name": "A"}, {"name": "B"}],
                "columns": [{"name": "1"}, {"name": "2"}, {"name": "3"}],
                "wells": [
                    {"path": "A/1", "rowIndex": 0, "columnIndex": 0},
                    {"path": "A/3", "rowIndex": 0, "columnIndex": 2},
                    # indices omitted: taken from the path
                    {"path": "B/2"},
                ],
            }
        },
    )
    for row in ("A", "B"):
        store.group(row)
    for well in ("A/1", "A/3", "B/2"):
        store.group(
            well, {"well": {"images": [{"path": str(f)} for f in range(fields)]}}
        )
        for f in range(fields):
            store.image(f"{well}/{f}", (2, 32, 32), levels=2, chunks=(1, 16, 16))


def test_plate(memory_store: MemoryStore) -> None:
    _write_plate(memory_store)
    source = load({"source": memory_store.url()})
    assert source.name == "screen"
    assert (source.rows, source.columns) == (2, 3)
    assert source.loaders is not None
    cells = {(g.name, g.row, g.col) for g in source.loaders}
    assert cells == {("A1", 0, 0), ("A3", 0, 2), ("B2", 1, 1)}
    # the lowest resolution of each field is shown
    assert source.loaders[0].loader.shape == (2, 16, 16)
    assert source.channel_axis == 0


def test_plate_from_row_group(memory_store: MemoryStore) -> None:
    _write_plate(memory_store)
    source = load({"source": memory_store.url("A")})
    assert source.loaders is not None
    assert len(source.loaders) == 3


def test_well(memory_store: MemoryStore) -> None:
    _write_plate(memory_store, fields=3)
    source = load({"source": memory_store.url("A/3")})
    assert source.loaders is not None
    assert (source.rows, source.columns) == (2, 2)
    assert [(g.row, g.col) for g in source.loaders] == [(0, 0), (0, 1), (1, 0)]


def test_plate_well_outside_rows_and_columns(memory_store: MemoryStore) -> None:
    _write_plate(memory_store)
    with edit_attrs(memory_store, "") as attrs:
        attrs["plate"]["wells"].append({"path": "C/9"})
    with pytest.raises(SchemaError, match="'C/9'"):
        load({"source": memory_store.url()})

