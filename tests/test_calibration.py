from __future__ import annotations

import pytest
from pydantic import TypeAdapter

from zarrtiles import (
    PixelSizes,
    resolve_current_pixel_size,
    resolve_pixel_size,
    resolve_pixel_sizes,
    scale_bar,
)
from zarrtiles._calibration import find_dataset, to_nanometers
from zarrtiles._metadata import Multiscale

MultiscaleList = TypeAdapter(list[Multiscale])


def _multiscales(unit: str | None, scale: list[float], n_levels: int = 3) -> list:
    axes = [
        {"name": "c", "type": "channel"},
        {"name": "y", "type": "space", "unit": unit},
        {"name": "x", "type": "space", "unit": unit},
    ]
    datasets = [
        {
            "path": str(i),
            "coordinateTransformations": [
                {"type": "scale", "scale": [1, scale[1] * 2**i, scale[2] * 2**i]}
            ],
        }
        for i in range(n_levels)
    ]
    return MultiscaleList.validate_python([{"axes": axes, "datasets": datasets}])


@pytest.mark.parametrize(
    "value, unit, expected",
    [
        (8.0, "angstrom", 0.8),
        (0.5, "micrometer", 500),
        (0.5, "micron", 500),
        (3.0, "nanometer", 3.0),
        (3.0, "parsec", 3.0),
        (3.0, None, 3.0),
    ],
)
def test_to_nanometers(value: float, unit: str | None, expected: float) -> None:
    assert to_nanometers(value, unit) == pytest.approx(expected)


def test_resolve_pixel_size_uses_x_axis() -> None:
    ms = _multiscales("micrometer", [1, 0.25, 0.5])
    assert resolve_pixel_size(ms) == pytest.approx(500)
    assert resolve_pixel_size(ms, 1) == pytest.approx(1000)


def test_resolve_pixel_sizes_converts_both_axes() -> None:
    ms = _multiscales("micrometer", [1, 0.25, 0.5])
    assert resolve_pixel_sizes(ms) == PixelSizes(pytest.approx(500), pytest.approx(250))


def test_resolve_pixel_size_unavailable() -> None:
    assert resolve_pixel_size(None) is None
    assert resolve_pixel_size([]) is None
    ms = _multiscales("micrometer", [1, 1, 1], n_levels=1)
    assert resolve_pixel_size(ms, 3) is None

    no_scale = MultiscaleList.validate_python(
        [{"axes": ["y", "x"], "datasets": [{"path": "0"}]}]
    )
    assert resolve_pixel_size(no_scale) is None


def test_untyped_axes_pass_through() -> None:
    ms = MultiscaleList.validate_python(
        [
            {
                "axes": ["y", "x"],
                "datasets": [
                    {
                        "path": "0",
                        "coordinateTransformations": [{"type": "scale", "scale": [2, 3]}],
                    }
                ],
            }
        ]
    )
    assert resolve_pixel_size(ms) == 3


@pytest.mark.parametrize("zoom, expected", [(0, 100), (1, 50), (-1, 200), (2, 25)])
def test_resolve_current_pixel_size(zoom: float, expected: float) -> None:
    ms = _multiscales("nanometer", [1, 100, 100])
    assert resolve_current_pixel_size(ms, zoom) == pytest.approx(expected)


def test_find_dataset_matches_whole_segments() -> None:
    ms = _multiscales(None, [1, 1, 1], n_levels=3)
    assert find_dataset(ms, "image.zarr/1").path == "1"  # type: ignore[union-attr]
    assert find_dataset(ms, "2") is not None
    assert find_dataset(ms, "image.zarr/10") is None


def test_scale_bar_picks_round_length() -> None:
    bar = scale_bar(8.0)  # 150 px ~ 1200 nm
    assert bar is not None
    assert bar.length_nm == 1000
    assert bar.width == pytest.approx(125)
    assert bar.text == "1.0 µm"


def test_scale_bar_nanometers() -> None:
    bar = scale_bar(0.4)  # 150 px ~ 60 nm
    assert bar is not None
    assert bar.length_nm == 50
    assert bar.text == "50 nm"


def test_scale_bar_without_calibration() -> None:
    assert scale_bar(None) is None
    assert scale_bar(0) is None
