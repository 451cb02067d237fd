"""
Data models for the proxy tracker.

This module defines the per-window samples, the cumulative per-country
counters, the cache and history entries that get persisted, and the
in-memory watchdog bookkeeping.
"""

from dataclasses import dataclass, field
from typing import Optional

from .enums import Direction, InstanceActivity


UNKNOWN_COUNTRY = "Unknown"


@dataclass(frozen=True)
class SampleDelta:
    """Bytes exchanged with one remote address in one capture window."""

    direction: Direction
    remote_ip: str
    bytes: int


@dataclass
class CountryTotals:
    """Cumulative estimated bandwidth for one country."""

    country: str
    bytes_in: int = 0
    bytes_out: int = 0

    def add(self, direction: Direction, amount: int) -> None:
        if direction == Direction.IN:
            self.bytes_in += amount
        else:
            self.bytes_out += amount

    @property
    def total(self) -> int:
        return self.bytes_in + self.bytes_out


@dataclass(frozen=True)
class GeoCacheEntry:
    """Memoized IP to country mapping."""

    ip: str
    country: str


@dataclass(frozen=True)
class SnapshotRecord:
    """One raw flow record of the most recent window."""

    direction: Direction
    country: str
    bytes: int
    ip: str


@dataclass(frozen=True)
class ConnectionHistoryEntry:
    """Point-in-time peer count across all monitored instances."""

    timestamp: int  # Unix seconds
    connected: int
    connecting: int


@dataclass(frozen=True)
class PeerCount:
    """Peer count reported by a single instance's status feed."""

    connected: int
    connecting: int = 0


@dataclass
class WatchdogState:
    """Idle and restart bookkeeping for one monitored instance."""

    idle_since: Optional[float] = None
    last_restart_at: Optional[float] = None
    restart_failures: int = 0

    @property
    def activity(self) -> InstanceActivity:
        if self.idle_since is None:
            return InstanceActivity.ACTIVE
        return InstanceActivity.IDLE


@dataclass
class CaptureResult:
    """Outcome of one capture window."""

    deltas: list[SampleDelta] = field(default_factory=list)
    packets_seen: int = 0
    duration_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class CycleReport:
    """Summary of one scheduler iteration."""

    started_at: float
    deltas: int = 0
    bytes_observed: int = 0
    merged: bool = False
    capture_error: Optional[str] = None
    tasks_run: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
