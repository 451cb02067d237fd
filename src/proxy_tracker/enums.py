"""
Enumeration types for the proxy tracker.
"""

from enum import Enum


class Direction(Enum):
    """Traffic direction relative to the local host."""

    IN = "in"
    OUT = "out"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class RestartOutcome(Enum):
    """Result of comparing an instance start marker with the stored one."""

    UNCHANGED = "unchanged"
    INITIALIZED = "initialized"
    RESET_EMPTY = "reset_empty"
    RESET_AND_RESTORED = "reset_and_restored"
    UNKNOWN_MARKER = "unknown_marker"


class InstanceActivity(Enum):
    """Watchdog view of a monitored instance."""

    ACTIVE = "active"
    IDLE = "idle"


class AlertKind(Enum):
    """Kinds of alerts emitted by the tracker."""

    RESTART = "restart"
    RESTART_FAILED = "restart_failed"
    INFO = "info"
