"""
Geolocation database refresh.

Periodically re-downloads the country database file. The download is
streamed into a temporary file next to the target with a hard size cap,
checked against a minimum plausible size, and only then moved over the live
database. The IP to country cache is left untouched: it is keyed by address,
not by database version.
"""

import gzip
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import httpx

from .audit_logger import AuditLogger
from .config import GeoConfig
from .enums import LogLevel
from .exceptions import GeoLookupError
from .geo_resolver import CountryLookup


@dataclass
class RefreshResult:
    """Outcome of a database refresh attempt."""

    success: bool
    bytes_written: int = 0
    error: Optional[str] = None


class GeoDatabaseUpdater:
    """Downloads and atomically installs the geolocation database."""

    COMPONENT = "GeoDatabaseUpdater"

    def __init__(
        self,
        config: GeoConfig,
        lookup: Optional[CountryLookup] = None,
        logger: Optional[AuditLogger] = None,
        timeout: float = 120.0,
        simulation_mode: bool = False,
    ) -> None:
        self._config = config
        self._lookup = lookup
        self._logger = logger
        self._timeout = timeout
        self._simulation_mode = simulation_mode

    async def refresh(self, client: Optional[httpx.AsyncClient] = None) -> RefreshResult:
        """
        Download the database and replace the installed copy.

        Args:
            client: Optional HTTP client (one is created if omitted)

        Returns:
            RefreshResult; failures leave the installed database in place
        """
        url = self._config.download_url
        if not url:
            return RefreshResult(success=False, error="No download URL configured")
        if self._simulation_mode:
            return RefreshResult(success=True)

        target = self._config.database_path
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.name}.", suffix=".download", dir=target.parent
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "wb") as f:
                if client is None:
                    async with httpx.AsyncClient(follow_redirects=True) as own_client:
                        written = await self._download(own_client, url, f)
                else:
                    written = await self._download(client, url, f)

            if url.endswith(".gz"):
                tmp_path = self._decompress(tmp_path)
                written = tmp_path.stat().st_size

            if written < self._config.min_database_bytes:
                raise GeoLookupError(
                    code="database_too_small",
                    message=f"Downloaded database is only {written} bytes",
                    details={"minimum": self._config.min_database_bytes},
                )

            os.replace(tmp_path, target)
        except (httpx.HTTPError, OSError, EOFError, GeoLookupError) as e:
            self._log_error("Geolocation database refresh failed", e, {"url": url})
            return RefreshResult(success=False, error=str(e))
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
            raw_tmp = Path(tmp_name)
            if raw_tmp.exists():
                raw_tmp.unlink()

        if self._lookup is not None:
            self._lookup.reload()

        self._log_info(
            "Geolocation database refreshed",
            {"path": str(target), "bytes": written},
        )
        return RefreshResult(success=True, bytes_written=written)

    async def _download(self, client: httpx.AsyncClient, url: str, out) -> int:
        written = 0
        limit = self._config.max_download_bytes
        async with client.stream("GET", url, timeout=self._timeout) as response:
            response.raise_for_status()
            async for chunk in response.aiter_bytes():
                written += len(chunk)
                if written > limit:
                    raise GeoLookupError(
                        code="database_too_large",
                        message=f"Download exceeded {limit} bytes",
                        details={"url": url},
                    )
                out.write(chunk)
        return written

    def _decompress(self, path: Path) -> Path:
        out_path = path.with_suffix(".mmdb")
        limit = self._config.max_download_bytes
        try:
            with gzip.open(path, "rb") as src, open(out_path, "wb") as dst:
                while True:
                    chunk = src.read(1024 * 1024)
                    if not chunk:
                        break
                    dst.write(chunk)
                    if dst.tell() > limit:
                        raise GeoLookupError(
                            code="database_too_large",
                            message=f"Decompressed database exceeded {limit} bytes",
                        )
        except BaseException:
            if out_path.exists():
                out_path.unlink()
            raise
        path.unlink()
        return out_path

    def _log_info(self, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(LogLevel.INFO, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception, data: dict) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error, data)
