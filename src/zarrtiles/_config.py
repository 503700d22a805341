"""Caller-supplied configuration records."""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from typing import Annotated, Any, ClassVar
from urllib.parse import parse_qsl

from pydantic import BeforeValidator, ConfigDict, Field, ValidationError, model_validator
from typing_extensions import Self

from ._base import _BaseModel
from ._errors import ConfigurationError

__all__ = ["ImageLayerConfig", "ViewerContext"]


def _parse_listish(v: Any) -> Any:
    """Accept JSON or comma-separated text where a list is expected."""
    if not isinstance(v, str):
        return v
    text = v.strip()
    if text.startswith("["):
        return json.loads(text)
    return [item.strip() for item in text.split(",") if item.strip()]


def _parse_json(v: Any) -> Any:
    if isinstance(v, str) and v.strip().startswith(("[", "{")):
        return json.loads(v)
    return v


Listish = BeforeValidator(_parse_listish)


class ImageLayerConfig(_BaseModel):
    """How to open and initially display one image.

    Only `source` is required. Per-channel lists (`colors`, `names`,
    `visibilities`, `contrast_limits`) must match the channel axis extent when
    given. The presence of `channel_axis` selects multichannel display.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore", arbitrary_types_allowed=True, protected_namespaces=()
    )

    source: Any = Field(description="URI of a zarr group/array, or an array object.")
    name: str | None = None
    axis_labels: Annotated[list[str] | None, Listish] = None
    channel_axis: int | None = None

    # multichannel
    colors: Annotated[list[str] | None, Listish] = None
    names: Annotated[list[str] | None, Listish] = None
    visibilities: Annotated[list[bool] | None, Listish] = None
    contrast_limits: Annotated[
        list[tuple[float, float]] | tuple[float, float] | None,
        BeforeValidator(_parse_json),
    ] = None

    # single channel
    color: str | None = None
    visibility: bool | None = None

    model_matrix: Annotated[
        list[float] | list[list[float]] | None, BeforeValidator(_parse_json)
    ] = None
    opacity: float = 1.0
    colormap: str = ""

    @model_validator(mode="after")
    def _check_contrast_limits(self) -> Self:
        limits = self.contrast_limits
        pairs = [limits] if isinstance(limits, tuple) else (limits or [])
        for lo, hi in pairs:
            if lo > hi:
                raise ValueError(f"contrast limit ({lo}, {hi}) has min above max")
        return self

    @property
    def has_channel_axis(self) -> bool:
        return self.channel_axis is not None

    @classmethod
    def from_query(cls, query: str | Mapping[str, str]) -> ImageLayerConfig:
        """Build a config from URL query parameters (e.g. "source=...&channel_axis=1")."""
        params = dict(parse_qsl(query.lstrip("?"))) if isinstance(query, str) else dict(query)
        params.pop("viewState", None)
        try:
            return cls.model_validate(params)
        except (ValidationError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Invalid image configuration: {e}") from e


class ViewerContext(_BaseModel):
    """Host-provided settings, built once at startup and passed explicitly."""

    image_id: int | None = None
    rois_url: str = ""
    user_name: str = ""

    @classmethod
    def from_env(cls) -> ViewerContext:
        """Read ZARRTILES_IMAGE_ID, ZARRTILES_ROIS_URL and ZARRTILES_USER_NAME."""
        image_id = os.getenv("ZARRTILES_IMAGE_ID")
        return cls(
            image_id=int(image_id) if image_id else None,
            rois_url=os.getenv("ZARRTILES_ROIS_URL", ""),
            user_name=os.getenv("ZARRTILES_USER_NAME", ""),
        )
