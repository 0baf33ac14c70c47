"""Error taxonomy shared by the gate, handlers and the caller-facing API."""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Stable error kind strings recorded on failed runs and API bodies."""

    VALIDATION = "ValidationError"
    CONFLICT = "ConflictError"
    NOT_FOUND = "NotFoundError"
    DEPENDENCY = "DependencyError"
    INSUFFICIENT_DATA = "InsufficientDataError"
    TIMEOUT = "TimeoutError"
    INTERNAL = "InternalError"


class BrandMonitorError(RuntimeError):
    """Base class for expected, classified failures."""

    kind: ErrorKind = ErrorKind.INTERNAL

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(BrandMonitorError):
    """Malformed request or unknown formula/kind."""

    kind = ErrorKind.VALIDATION


class ConflictError(BrandMonitorError):
    """Transition rejected because the entity is no longer in the expected state."""

    kind = ErrorKind.CONFLICT


class NotFoundError(BrandMonitorError):
    kind = ErrorKind.NOT_FOUND


class DependencyError(BrandMonitorError):
    """A collaborator (classifier, renderer, content store) failed."""

    kind = ErrorKind.DEPENDENCY

    def __init__(
        self,
        message: str,
        *,
        transient: bool = False,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, details=details)
        self.transient = transient


class InsufficientDataError(BrandMonitorError):
    """Too few classified items; surfaced as ``insufficient_data``, never as a failed run."""

    kind = ErrorKind.INSUFFICIENT_DATA


class RunTimeoutError(BrandMonitorError):
    kind = ErrorKind.TIMEOUT
