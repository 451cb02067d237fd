"""
Record Store module for the tracker's persisted state.

Each kind of record (cumulative totals, unique IP ledger, latest snapshot,
geo cache, connection history, restart marker) lives in its own JSON
document carrying an explicit schema version, the record kind, the field
names and an HMAC-SHA256 over the content. Writes go to a temporary file in
the same directory and are moved into place with os.replace, so readers see
either the previous document or the new one and never a partial write.
"""

import hashlib
import hmac
import json
import os
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .exceptions import CorruptRecordError, PersistenceError


RECORD_FIELDS: dict[str, tuple[str, ...]] = {
    "country_totals": ("country", "bytes_in", "bytes_out"),
    "unique_ips": ("country", "ip"),
    "snapshot": ("direction", "country", "bytes", "ip"),
    "geo_cache": ("ip", "country"),
    "connection_history": ("timestamp", "connected", "connecting"),
    "restart_marker": ("marker",),
}


class RecordFile:
    """
    A single versioned, integrity-protected record file.

    Records are exchanged as tuples in the field order of RECORD_FIELDS for
    the file's kind.
    """

    VERSION = 1

    def __init__(self, file_path: Path, kind: str, hmac_secret: str) -> None:
        """
        Initialize the record file.

        Args:
            file_path: Location of the JSON document
            kind: One of the keys of RECORD_FIELDS
            hmac_secret: Secret key for the integrity HMAC
        """
        if kind not in RECORD_FIELDS:
            raise ValueError(f"Unknown record kind: {kind}")
        self._file_path = file_path
        self._kind = kind
        self._fields = RECORD_FIELDS[kind]
        self._hmac_secret = hmac_secret.encode("utf-8")

    @property
    def file_path(self) -> Path:
        return self._file_path

    @property
    def kind(self) -> str:
        return self._kind

    @property
    def fields(self) -> tuple[str, ...]:
        return self._fields

    def exists(self) -> bool:
        return self._file_path.exists()

    def load(self) -> list[tuple]:
        """
        Load and validate all records.

        Returns:
            Records in file order, or an empty list if the file doesn't exist

        Raises:
            CorruptRecordError: If the integrity HMAC does not match
            PersistenceError: If the file cannot be read, parsed or is of
                another kind or a newer version
        """
        if not self._file_path.exists():
            return []

        try:
            with open(self._file_path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except json.JSONDecodeError as e:
            raise PersistenceError(
                code="parse_error",
                message=f"Failed to parse record file: {e}",
                details={"file_path": str(self._file_path)},
            )
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to read record file: {e}",
                details={"file_path": str(self._file_path)},
            )

        if not isinstance(raw, dict):
            raise PersistenceError(
                code="parse_error",
                message="Record file is not a JSON object",
                details={"file_path": str(self._file_path)},
            )

        body = {
            "version": raw.get("version"),
            "kind": raw.get("kind"),
            "fields": raw.get("fields"),
            "records": raw.get("records", []),
            "updated_at": raw.get("updated_at"),
        }
        if not self.validate_hmac(raw.get("hmac", ""), self.compute_hmac(body)):
            raise CorruptRecordError(
                code="hmac_mismatch",
                message="Record file failed its integrity check",
                details={"file_path": str(self._file_path), "kind": self._kind},
            )

        if body["kind"] != self._kind:
            raise PersistenceError(
                code="kind_mismatch",
                message=f"Expected {self._kind} records, found {body['kind']}",
                details={"file_path": str(self._file_path)},
            )

        version = body["version"]
        if not isinstance(version, int) or version > self.VERSION:
            raise PersistenceError(
                code="unsupported_version",
                message=f"Unsupported record file version: {version}",
                details={"file_path": str(self._file_path)},
            )

        if tuple(body["fields"] or ()) != self._fields:
            raise PersistenceError(
                code="schema_mismatch",
                message="Record fields do not match the expected schema",
                details={
                    "file_path": str(self._file_path),
                    "expected": list(self._fields),
                    "found": body["fields"],
                },
            )

        records = []
        for row in body["records"]:
            if not isinstance(row, list) or len(row) != len(self._fields):
                raise PersistenceError(
                    code="schema_mismatch",
                    message=f"Malformed {self._kind} record: {row!r}",
                    details={"file_path": str(self._file_path)},
                )
            records.append(tuple(row))
        return records

    def save(self, records: list[tuple]) -> None:
        """
        Atomically replace the file with the given records.

        Raises:
            PersistenceError: If the file cannot be written
        """
        rows = []
        for record in records:
            if len(record) != len(self._fields):
                raise PersistenceError(
                    code="schema_mismatch",
                    message=f"{self._kind} record has {len(record)} fields, "
                    f"expected {len(self._fields)}",
                    details={"record": list(record)},
                )
            rows.append(list(record))

        body = {
            "version": self.VERSION,
            "kind": self._kind,
            "fields": list(self._fields),
            "records": rows,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        document = dict(body)
        document["hmac"] = self.compute_hmac(body)

        try:
            self._file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._file_path.name}.",
                suffix=".tmp",
                dir=self._file_path.parent,
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, separators=(",", ":"))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._file_path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to write record file: {e}",
                details={"file_path": str(self._file_path)},
            )

    def is_empty(self) -> bool:
        """True if the file is missing or holds no records."""
        return not self.load()

    def delete(self) -> bool:
        """Remove the file. Returns True if it existed."""
        try:
            self._file_path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to delete record file: {e}",
                details={"file_path": str(self._file_path)},
            )

    def copy_to(self, destination: Path) -> "RecordFile":
        """
        Atomically copy this file to another path.

        Returns:
            A RecordFile of the same kind at the destination
        """
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = destination.with_name(f".{destination.name}.tmp")
            shutil.copyfile(self._file_path, tmp_path)
            os.replace(tmp_path, destination)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to copy record file: {e}",
                details={
                    "source": str(self._file_path),
                    "destination": str(destination),
                },
            )
        return self.sibling(destination)

    def move_to(self, destination: Path) -> "RecordFile":
        """
        Move this file to another path, replacing whatever is there.

        Returns:
            A RecordFile of the same kind at the destination
        """
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            os.replace(self._file_path, destination)
        except OSError as e:
            raise PersistenceError(
                code="io_error",
                message=f"Failed to move record file: {e}",
                details={
                    "source": str(self._file_path),
                    "destination": str(destination),
                },
            )
        return self.sibling(destination)

    def sibling(self, file_path: Path) -> "RecordFile":
        """A RecordFile of the same kind and secret at another path."""
        return RecordFile(file_path, self._kind, self._hmac_secret.decode("utf-8"))

    def export_lines(self, delimiter: str = "|") -> list[str]:
        """Render records in the line-oriented delimited format."""
        return [delimiter.join(str(value) for value in record) for record in self.load()]

    def compute_hmac(self, data: dict) -> str:
        serialized = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hmac.new(
            self._hmac_secret,
            serialized.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def validate_hmac(self, stored_hmac: str, computed_hmac: str) -> bool:
        return hmac.compare_digest(str(stored_hmac), computed_hmac)


class RecordStore:
    """
    Layout of all record files under one data directory.

    Active files are ``<kind>.json``; routine backups are
    ``<kind>.json.bak``; restart archives go to ``backups/``.
    """

    ARCHIVE_DIR = "backups"

    def __init__(self, data_dir: Path, hmac_secret: str) -> None:
        self._data_dir = data_dir
        self._hmac_secret = hmac_secret
        self._files: dict[str, RecordFile] = {
            kind: RecordFile(data_dir / f"{kind}.json", kind, hmac_secret)
            for kind in RECORD_FIELDS
        }

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    @property
    def archive_dir(self) -> Path:
        return self._data_dir / self.ARCHIVE_DIR

    def file(self, kind: str) -> RecordFile:
        return self._files[kind]

    @property
    def totals(self) -> RecordFile:
        return self._files["country_totals"]

    @property
    def unique_ips(self) -> RecordFile:
        return self._files["unique_ips"]

    @property
    def snapshot(self) -> RecordFile:
        return self._files["snapshot"]

    @property
    def geo_cache(self) -> RecordFile:
        return self._files["geo_cache"]

    @property
    def history(self) -> RecordFile:
        return self._files["connection_history"]

    @property
    def marker(self) -> RecordFile:
        return self._files["restart_marker"]

    def backup_of(self, kind: str) -> RecordFile:
        """The routine backup file for a record kind."""
        active = self._files[kind]
        return active.sibling(active.file_path.with_name(active.file_path.name + ".bak"))

    def archive_of(self, kind: str, stamp: str) -> RecordFile:
        """A timestamped archive file for a record kind."""
        active = self._files[kind]
        return active.sibling(self.archive_dir / f"{kind}-{stamp}.json")

    def list_archives(self, kind: str) -> list[Path]:
        """Archive files of a kind, oldest first."""
        if not self.archive_dir.exists():
            return []
        return sorted(self.archive_dir.glob(f"{kind}-*.json"))

    def quarantine(self, kind: str, stamp: str) -> RecordFile:
        """
        Move an unusable active file out of the way.

        Quarantined files are named ``corrupt-<kind>-<stamp>.json`` so that
        archive rotation never prunes them.
        """
        active = self._files[kind]
        return active.move_to(self.archive_dir / f"corrupt-{kind}-{stamp}.json")

    def read_marker(self) -> Optional[str]:
        records = self.marker.load()
        if not records:
            return None
        return str(records[0][0])

    def write_marker(self, marker: str) -> None:
        self.marker.save([(marker,)])
