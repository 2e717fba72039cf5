"""Error taxonomy and user-facing notices."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    NOTE = "note"


@dataclass(frozen=True)
class Notice:
    """A message meant for the user rather than the log."""

    severity: Severity
    message: str

    def __str__(self) -> str:
        return f"{self.severity.value}: {self.message}"


class SlicerError(Exception):
    """Base class for all flowr-slicer errors."""


class ConfigError(SlicerError):
    """Raised for an invalid configuration value."""

    def __init__(self, key: str, message: str) -> None:
        self.key = key
        super().__init__(f"{key}: {message}")


class SessionEstablishmentError(SlicerError):
    """The engine could not be spawned, reached, or greeted in time."""


class HandshakeError(SessionEstablishmentError):
    """The engine answered but is not compatible."""

    def __init__(self, message: str, versions: dict[str, str] | None = None) -> None:
        self.versions = versions or {}
        super().__init__(message)


class SessionUnavailableError(SlicerError):
    """A request was made to a session that is not ready."""

    def __init__(self, state: object) -> None:
        self.state = state
        super().__init__(f"session is not ready (state: {getattr(state, 'value', state)})")


class BackendAnalysisError(SlicerError):
    """The engine rejected one request; the session stays usable."""

    def __init__(self, message: str, request_id: str | None = None) -> None:
        self.request_id = request_id
        super().__init__(message)


class BackendFatalError(SlicerError):
    """The engine process or connection died; the session is unusable."""
