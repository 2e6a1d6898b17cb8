"""Exception taxonomy for the Gradio client."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from luna_vits.gradio.events import Status


class GradioClientError(Exception):
    """Base class for every error raised by the Gradio client."""


class ResolutionError(GradioClientError):
    """The app reference could not be turned into a host."""


class ConfigError(GradioClientError):
    """The app config could not be fetched or parsed."""


class AuthError(GradioClientError):
    """Credentials are missing, rejected, or still required."""


class SchemaError(GradioClientError):
    """API introspection failed or returned unusable data."""


class InvalidArgumentError(GradioClientError, ValueError):
    """Arguments do not fit the endpoint signature."""


class TransportError(GradioClientError):
    """A network exchange with the app failed."""


class PredictionError(GradioClientError):
    """The call finished with an error status."""

    def __init__(self, message: str, status: Status | None = None) -> None:
        super().__init__(message)
        self.status = status
