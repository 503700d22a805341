"""Exception hierarchy for loading and reading tiled NGFF data."""

from __future__ import annotations

import os

__all__ = [
    "ConfigurationError",
    "RedirectError",
    "SchemaError",
    "UnsupportedTypeError",
    "ZarrTilesError",
]

DEFAULT_VALIDATOR_URL = "https://ome.github.io/ome-ngff-validator/"


def validator_url() -> str:
    """Return the external validator URL used for unsupported layouts.

    Set ZARRTILES_VALIDATOR_URL to point redirects at a self-hosted validator.
    """
    return os.getenv("ZARRTILES_VALIDATOR_URL", DEFAULT_VALIDATOR_URL)


class ZarrTilesError(Exception):
    """Base class for all errors raised by zarrtiles."""


class SchemaError(ZarrTilesError, ValueError):
    """Store metadata is missing required fields or is internally inconsistent."""


class ConfigurationError(ZarrTilesError, ValueError):
    """Caller-supplied image configuration cannot be applied to the data."""


class UnsupportedTypeError(ZarrTilesError, TypeError):
    """The array data type has no renderer-compatible representation."""


class RedirectError(ZarrTilesError):
    """The dataset uses a layout that should be opened in another tool.

    This is guidance for the user rather than a crash: `url` is where the
    dataset can be inspected instead.
    """

    def __init__(self, message: str, url: str) -> None:
        super().__init__(message)
        self.url = url

    @classmethod
    def for_source(cls, source: str) -> RedirectError:
        return cls("Please open in ome-ngff-validator", f"{validator_url()}?source={source}")

    def __str__(self) -> str:
        return f"{self.args[0]}: {self.url}"
