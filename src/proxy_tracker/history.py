"""
Connection History Recorder for the proxy tracker.

Keeps a rolling ledger of peer counts sampled every few minutes so that
"how many peers were connected N hours ago" can be answered from the
nearest recorded point, without interpolation.
"""

import time
from typing import Callable, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel
from .exceptions import PersistenceError
from .models import ConnectionHistoryEntry
from .record_store import RecordFile


class ConnectionHistory:
    """
    Append-and-prune ledger of ConnectionHistoryEntry values.

    The retention horizon is enforced on every append: entries older than
    ``now - retention_seconds`` are removed in the same pass that adds the
    new entry.
    """

    COMPONENT = "ConnectionHistory"

    def __init__(
        self,
        history_file: Optional[RecordFile] = None,
        interval_seconds: float = 300.0,
        retention_seconds: float = 25 * 3600.0,
        tolerance_seconds: float = 1800.0,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._file = history_file
        self._interval = interval_seconds
        self._retention = retention_seconds
        self._tolerance = tolerance_seconds
        self._logger = logger
        self._clock = clock
        self._entries: list[ConnectionHistoryEntry] = []
        self._last_recorded_at: Optional[float] = None

    @property
    def entries(self) -> list[ConnectionHistoryEntry]:
        return list(self._entries)

    def load(self) -> int:
        """Load the persisted ledger; an unreadable file starts a new one."""
        if self._file is None:
            return 0
        try:
            records = self._file.load()
        except PersistenceError as e:
            if self._logger:
                self._logger.log_error(self.COMPONENT, "Discarding unreadable history", e)
            records = []

        self._entries = sorted(
            (
                ConnectionHistoryEntry(
                    timestamp=int(ts),
                    connected=int(connected),
                    connecting=int(connecting),
                )
                for ts, connected, connecting in records
            ),
            key=lambda e: e.timestamp,
        )
        if self._entries:
            self._last_recorded_at = float(self._entries[-1].timestamp)
        return len(self._entries)

    def due(self, now: Optional[float] = None) -> bool:
        """True if at least one interval has passed since the last record."""
        if self._last_recorded_at is None:
            return True
        current = self._clock() if now is None else now
        return current - self._last_recorded_at >= self._interval

    def record(
        self,
        connected: int,
        connecting: int,
        now: Optional[float] = None,
    ) -> ConnectionHistoryEntry:
        """
        Append an entry stamped ``now`` and prune expired entries.

        Raises:
            PersistenceError: If the ledger cannot be written; the in-memory
                ledger is still updated
        """
        current = self._clock() if now is None else now
        entry = ConnectionHistoryEntry(
            timestamp=int(current),
            connected=max(int(connected), 0),
            connecting=max(int(connecting), 0),
        )
        self._entries.append(entry)
        self._last_recorded_at = current
        removed = self.prune(current)

        if self._logger:
            self._logger.log(
                LogLevel.DEBUG,
                self.COMPONENT,
                "Peer counts recorded",
                {
                    "connected": entry.connected,
                    "connecting": entry.connecting,
                    "pruned": removed,
                },
            )

        if self._file is not None:
            self._file.save(
                [(e.timestamp, e.connected, e.connecting) for e in self._entries]
            )
        return entry

    def prune(self, now: Optional[float] = None) -> int:
        """
        Drop entries older than the retention horizon.

        Returns:
            Number of entries removed
        """
        current = self._clock() if now is None else now
        cutoff = current - self._retention
        kept = [e for e in self._entries if e.timestamp >= cutoff]
        removed = len(self._entries) - len(kept)
        self._entries = kept
        return removed

    def nearest(
        self,
        target_age_seconds: float,
        now: Optional[float] = None,
        tolerance_seconds: Optional[float] = None,
    ) -> Optional[ConnectionHistoryEntry]:
        """
        The entry closest to ``now - target_age_seconds``.

        Returns:
            The closest entry within the tolerance, or None if there is none
        """
        current = self._clock() if now is None else now
        tolerance = self._tolerance if tolerance_seconds is None else tolerance_seconds
        target = current - target_age_seconds

        best: Optional[ConnectionHistoryEntry] = None
        best_distance = 0.0
        for entry in self._entries:
            distance = abs(entry.timestamp - target)
            if distance > tolerance:
                continue
            if best is None or distance < best_distance:
                best, best_distance = entry, distance
        return best
