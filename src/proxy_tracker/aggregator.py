"""
Aggregator/Merger for the proxy tracker.

Folds one capture window into the cumulative per-country totals and the
unique IP ledger, and replaces the latest-window snapshot. Observed bytes
are scaled by the duty-cycle multiplier so that a window sampled for ``c``
out of every ``c + i`` seconds estimates the traffic of the whole cycle.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from fractions import Fraction
from typing import Iterable, Optional, Union

from .audit_logger import AuditLogger
from .enums import Direction, LogLevel
from .exceptions import PersistenceError
from .geo_resolver import GeoResolver
from .models import CountryTotals, SampleDelta, SnapshotRecord
from .record_store import RecordStore


Number = Union[int, float, Fraction]


def _exact(value: Number) -> Fraction:
    if isinstance(value, float):
        # Decimal string form keeps 0.1 as 1/10 instead of its binary value
        return Fraction(repr(value))
    return Fraction(value)


def duty_cycle_multiplier(capture_seconds: Number, idle_seconds: Number) -> Fraction:
    """
    Inverse of the fraction of wall-clock time spent capturing.

    Raises:
        ValueError: If the capture duration is not positive
    """
    capture = _exact(capture_seconds)
    idle = _exact(idle_seconds)
    if capture <= 0:
        raise ValueError("capture duration must be positive")
    if idle < 0:
        raise ValueError("idle duration must not be negative")
    return (capture + idle) / capture


def scale_bytes(raw_bytes: int, multiplier: Number) -> int:
    """Scale an observed byte count, rounding to whole bytes."""
    return round(raw_bytes * _exact(multiplier))


def totals_from_records(records: Iterable[tuple]) -> dict[str, CountryTotals]:
    totals: dict[str, CountryTotals] = {}
    for country, bytes_in, bytes_out in records:
        entry = totals.setdefault(str(country), CountryTotals(country=str(country)))
        entry.bytes_in += int(bytes_in)
        entry.bytes_out += int(bytes_out)
    return totals


def totals_to_records(totals: dict[str, CountryTotals]) -> list[tuple]:
    ordered = sorted(totals.values(), key=lambda t: (-t.total, t.country))
    return [(t.country, t.bytes_in, t.bytes_out) for t in ordered]


@dataclass
class PendingIncrement:
    """Window increments not yet written to disk."""

    totals: dict[str, CountryTotals] = field(default_factory=dict)
    unique_ips: set[tuple[str, str]] = field(default_factory=set)

    def is_empty(self) -> bool:
        return not self.totals and not self.unique_ips

    def add(self, country: str, direction: Direction, amount: int) -> None:
        entry = self.totals.setdefault(country, CountryTotals(country=country))
        entry.add(direction, amount)


@dataclass
class MergeResult:
    """Outcome of merging one window."""

    records: int
    bytes_scaled: int
    persisted: bool
    snapshot_written: bool
    errors: list[str] = field(default_factory=list)


class TrafficAggregator:
    """
    Merges capture windows into the persisted cumulative state.

    Totals and ledger are merged read-add-write against the files on disk.
    If that write fails the window's increment is kept in memory and folded
    into the next successful merge, so a failure costs at most the window
    that was in flight when the process died.
    """

    COMPONENT = "TrafficAggregator"

    def __init__(
        self,
        store: RecordStore,
        resolver: GeoResolver,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._resolver = resolver
        self._logger = logger
        self._pending = PendingIncrement()

    @property
    def pending(self) -> PendingIncrement:
        return self._pending

    def merge(self, deltas: list[SampleDelta], multiplier: Number) -> MergeResult:
        """
        Merge one window of deltas.

        Args:
            deltas: Per-remote byte counts of the window
            multiplier: Duty-cycle multiplier applied to the byte counts

        Returns:
            MergeResult describing what reached the disk
        """
        snapshot: list[SnapshotRecord] = []
        bytes_scaled = 0

        for delta in deltas:
            country = self._resolver.resolve(delta.remote_ip)
            scaled = scale_bytes(delta.bytes, multiplier)
            bytes_scaled += scaled
            self._pending.add(country, delta.direction, scaled)
            self._pending.unique_ips.add((country, delta.remote_ip))
            snapshot.append(
                SnapshotRecord(
                    direction=delta.direction,
                    country=country,
                    bytes=delta.bytes,
                    ip=delta.remote_ip,
                )
            )

        errors: list[str] = []

        snapshot_written = True
        try:
            self.write_snapshot(snapshot)
        except PersistenceError as e:
            snapshot_written = False
            errors.append(f"snapshot: {e.message}")
            self._log_error("Failed to replace snapshot", e)

        persisted = self.flush()
        if not persisted:
            errors.append("cumulative merge deferred to next window")

        try:
            self._resolver.save()
        except PersistenceError as e:
            errors.append(f"geo cache: {e.message}")
            self._log_error("Failed to save geo cache", e)

        self._log(
            LogLevel.INFO,
            "Window merged",
            {
                "records": len(snapshot),
                "bytes_scaled": bytes_scaled,
                "multiplier": str(multiplier),
                "persisted": persisted,
            },
        )
        return MergeResult(
            records=len(snapshot),
            bytes_scaled=bytes_scaled,
            persisted=persisted,
            snapshot_written=snapshot_written,
            errors=errors,
        )

    def flush(self) -> bool:
        """
        Merge pending increments into the files on disk.

        Returns:
            True if nothing is pending anymore
        """
        if self._pending.is_empty():
            return True

        try:
            totals = totals_from_records(self._load_cumulative("country_totals"))
            ledger = {(str(c), str(ip)) for c, ip in self._load_cumulative("unique_ips")}
        except PersistenceError as e:
            self._log_error("Cannot read cumulative state, merge deferred", e)
            return False

        for country, increment in self._pending.totals.items():
            entry = totals.setdefault(country, CountryTotals(country=country))
            entry.bytes_in += increment.bytes_in
            entry.bytes_out += increment.bytes_out
        ledger |= self._pending.unique_ips

        try:
            self._store.totals.save(totals_to_records(totals))
            self._store.unique_ips.save(sorted(ledger))
        except PersistenceError as e:
            # Totals already on disk must not be added a second time
            if self._totals_written(totals):
                self._pending.totals.clear()
            self._log_error("Cannot write cumulative state, merge deferred", e)
            return False

        self._pending = PendingIncrement()
        return True

    def _load_cumulative(self, kind: str) -> list[tuple]:
        """
        Load a cumulative file, recovering from unusable content.

        A file that reads but fails validation is quarantined under the
        archive directory and replaced by its ``.bak`` copy when that one is
        valid, otherwise by an empty record list.

        Raises:
            PersistenceError: If the file cannot be read or moved at all
        """
        active = self._store.file(kind)
        try:
            return active.load()
        except PersistenceError as e:
            if e.code == "io_error":
                raise
            self._log_error(f"Unusable {kind} file", e)

        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        quarantined = self._store.quarantine(kind, stamp)

        records: list[tuple] = []
        backup = self._store.backup_of(kind)
        if backup.exists():
            try:
                records = backup.load()
            except PersistenceError as e:
                self._log_error(f"Ignoring unreadable {kind} backup", e)

        self._log(
            LogLevel.WARN,
            "Quarantined unusable cumulative file",
            {
                "kind": kind,
                "quarantined_to": str(quarantined.file_path),
                "restored_records": len(records),
            },
        )
        return records

    def write_snapshot(self, records: list[SnapshotRecord]) -> None:
        """Atomically replace the latest-window snapshot."""
        self._store.snapshot.save(
            [(r.direction.value, r.country, r.bytes, r.ip) for r in records]
        )

    def read_totals(self) -> dict[str, CountryTotals]:
        """Persisted totals plus anything still pending."""
        totals = totals_from_records(self._store.totals.load())
        for country, increment in self._pending.totals.items():
            entry = totals.setdefault(country, CountryTotals(country=country))
            entry.bytes_in += increment.bytes_in
            entry.bytes_out += increment.bytes_out
        return totals

    def read_snapshot(self) -> list[SnapshotRecord]:
        return [
            SnapshotRecord(
                direction=Direction(direction),
                country=str(country),
                bytes=int(count),
                ip=str(ip),
            )
            for direction, country, count, ip in self._store.snapshot.load()
        ]

    def read_unique_ips(self) -> set[tuple[str, str]]:
        ledger = {(str(c), str(ip)) for c, ip in self._store.unique_ips.load()}
        return ledger | self._pending.unique_ips

    def discard_pending(self) -> None:
        """Drop unwritten increments (used when the state is reset)."""
        self._pending = PendingIncrement()

    def _totals_written(self, expected: dict[str, CountryTotals]) -> bool:
        try:
            on_disk = totals_from_records(self._store.totals.load())
        except PersistenceError:
            return False
        return totals_to_records(on_disk) == totals_to_records(expected)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)
