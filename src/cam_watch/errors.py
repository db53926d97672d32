"""Exception hierarchy shared by the orchestration layer."""
from __future__ import annotations


class CamWatchError(RuntimeError):
    """Base class for orchestration failures."""


class InvalidRequestError(CamWatchError, ValueError):
    """Raised when a caller supplied a malformed identifier or filename."""


class ConfigurationError(CamWatchError, LookupError):
    """Raised when a camera or quality has no configured source."""


class ConflictError(CamWatchError):
    """Raised when an operation clashes with an active session."""


class NotRecordingError(ConflictError):
    """Raised when stopping a camera which has no active recording."""


class LaunchError(CamWatchError):
    """Raised when an encoder process could not be spawned or died immediately."""


__all__ = [
    "CamWatchError",
    "ConfigurationError",
    "ConflictError",
    "InvalidRequestError",
    "LaunchError",
    "NotRecordingError",
]
