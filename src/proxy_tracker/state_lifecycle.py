"""
State Lifecycle Manager for the proxy tracker.

Watches the monitored instance's start marker. When the marker changes the
instance has restarted: the active cumulative state is archived, cleared,
and then restored from the routine ``.bak`` backups when they exist, so
long-run statistics survive restarts unless the operator resets them.
"""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .audit_logger import AuditLogger
from .enums import LogLevel, RestartOutcome
from .exceptions import PersistenceError
from .record_store import RecordStore

if TYPE_CHECKING:
    from .aggregator import TrafficAggregator


CUMULATIVE_KINDS = ("country_totals", "unique_ips")
BACKUP_KINDS = ("country_totals", "unique_ips", "geo_cache")


class StateLifecycleManager:
    """
    Restart detection, backups and resets of the cumulative state.

    A start marker that cannot be fetched never causes a reset; the stored
    marker is only replaced once the reset sequence has completed, so a
    failure part-way is retried on the next iteration.
    """

    COMPONENT = "StateLifecycleManager"

    def __init__(
        self,
        store: RecordStore,
        aggregator: Optional["TrafficAggregator"] = None,
        archive_keep: int = 5,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        self._store = store
        self._aggregator = aggregator
        self._archive_keep = max(archive_keep, 0)
        self._logger = logger

    def check_restart(
        self,
        current_marker: Optional[str],
        now: Optional[datetime] = None,
    ) -> RestartOutcome:
        """
        Compare the instance's current start marker with the stored one.

        Args:
            current_marker: Start marker reported now, or None if unavailable
            now: Time used for archive names (defaults to current UTC time)

        Returns:
            The RestartOutcome of the comparison

        Raises:
            PersistenceError: If the reset sequence cannot complete
        """
        if current_marker is None or not current_marker.strip():
            self._log(
                LogLevel.WARN,
                "Start marker unavailable, keeping cumulative state",
                {},
            )
            return RestartOutcome.UNKNOWN_MARKER

        try:
            stored = self._store.read_marker()
        except PersistenceError as e:
            self._log_error("Stored start marker unreadable, re-initializing", e)
            stored = None

        if stored is None:
            self._store.write_marker(current_marker)
            self._log(
                LogLevel.INFO,
                "Start marker recorded",
                {"marker": current_marker},
            )
            return RestartOutcome.INITIALIZED

        if stored == current_marker:
            return RestartOutcome.UNCHANGED

        stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%dT%H%M%SZ")
        archived = self.archive(stamp)

        for kind in CUMULATIVE_KINDS:
            self._store.file(kind).save([])
        if self._aggregator is not None:
            self._aggregator.discard_pending()

        restored = self.restore_backups()
        self._store.write_marker(current_marker)

        outcome = (
            RestartOutcome.RESET_AND_RESTORED
            if "country_totals" in restored
            else RestartOutcome.RESET_EMPTY
        )
        self._log(
            LogLevel.INFO,
            "Instance restart detected",
            {
                "previous_marker": stored,
                "marker": current_marker,
                "archived": archived,
                "restored": restored,
                "outcome": outcome.value,
            },
        )
        return outcome

    def archive(self, stamp: str) -> list[str]:
        """
        Copy non-empty active state to timestamped archive files.

        Returns:
            Record kinds that were archived
        """
        archived = []
        for kind in BACKUP_KINDS:
            active = self._store.file(kind)
            if not self._has_records(kind):
                continue
            active.copy_to(self._store.archive_of(kind, stamp).file_path)
            archived.append(kind)
            self._prune_archives(kind)
        return archived

    def restore_backups(self) -> list[str]:
        """
        Replace active cumulative files with their ``.bak`` copies.

        Returns:
            Record kinds that were restored
        """
        restored = []
        for kind in CUMULATIVE_KINDS:
            backup = self._store.backup_of(kind)
            if not backup.exists():
                continue
            try:
                backup.load()
            except PersistenceError as e:
                self._log_error(f"Ignoring unreadable {kind} backup", e)
                continue
            backup.copy_to(self._store.file(kind).file_path)
            restored.append(kind)
        return restored

    def backup(self) -> list[str]:
        """
        Routine backup: copy non-empty active state to ``.bak`` files.

        A file that fails its integrity check is skipped so it cannot
        overwrite a good backup.

        Returns:
            Record kinds that were backed up
        """
        backed_up = []
        for kind in BACKUP_KINDS:
            try:
                if not self._store.file(kind).load():
                    continue
                self._store.file(kind).copy_to(self._store.backup_of(kind).file_path)
            except PersistenceError as e:
                self._log_error(f"Backup of {kind} failed", e)
                continue
            backed_up.append(kind)

        if backed_up:
            self._log(LogLevel.INFO, "Routine backup written", {"kinds": backed_up})
        return backed_up

    def reset(self, clear_backups: bool = True) -> None:
        """
        Operator reset of the cumulative state.

        Clears totals, ledger and snapshot. With ``clear_backups`` the
        ``.bak`` files are removed too, so the next restart starts empty.
        """
        for kind in CUMULATIVE_KINDS + ("snapshot",):
            self._store.file(kind).save([])
        if clear_backups:
            for kind in CUMULATIVE_KINDS:
                self._store.backup_of(kind).delete()
        if self._aggregator is not None:
            self._aggregator.discard_pending()
        self._log(
            LogLevel.INFO,
            "Cumulative state reset",
            {"backups_cleared": clear_backups},
        )

    def _has_records(self, kind: str) -> bool:
        try:
            return bool(self._store.file(kind).load())
        except PersistenceError as e:
            self._log_error(f"Skipping unreadable {kind} file", e)
            return False

    def _prune_archives(self, kind: str) -> None:
        archives = self._store.list_archives(kind)
        excess = len(archives) - self._archive_keep
        for path in archives[: max(excess, 0)]:
            try:
                path.unlink()
            except OSError as e:
                self._log_error(f"Cannot remove old archive {path.name}", e)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)
