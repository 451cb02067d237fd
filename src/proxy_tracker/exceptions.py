"""
Exception classes for the proxy tracker.

All exceptions inherit from TrackerError and carry a machine-readable code,
a human-readable message and optional structured details.
"""

from typing import Optional


class TrackerError(Exception):
    """Base exception for all tracker errors."""

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[dict] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"

    def to_dict(self) -> dict:
        """Convert exception to dictionary for serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ConfigError(TrackerError):
    """Raised when the configuration is invalid."""

    pass


class CaptureError(TrackerError):
    """Raised when the packet capture facility is unavailable or fails."""

    pass


class GeoLookupError(TrackerError):
    """Raised when an IP cannot be resolved to a country."""

    pass


class PersistenceError(TrackerError):
    """Raised when a record file cannot be read or written."""

    pass


class CorruptRecordError(PersistenceError):
    """Raised when a record file fails its integrity check."""

    pass


class InstanceControlError(TrackerError):
    """Raised when a monitored instance cannot be queried or controlled."""

    pass


class NotificationError(TrackerError):
    """Raised when alert delivery fails."""

    pass
