"""
Geolocation Resolver for the proxy tracker.

Resolves remote IP addresses to display country names through a MaxMind
country database, with a persistent, size-bounded IP to country cache in
front of it. Failed lookups return the "Unknown" label and are never cached,
so the same address is retried once the database can answer for it.
"""

import re
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import geoip2.database
import geoip2.errors

from .audit_logger import AuditLogger
from .enums import LogLevel
from .exceptions import GeoLookupError, PersistenceError
from .models import UNKNOWN_COUNTRY, GeoCacheEntry
from .record_store import RecordFile


# Display-name variants collapsed to a single label
COUNTRY_ALIASES = {
    "Russian Federation": "Russia",
    "Iran, Islamic Republic of": "Iran",
    "Islamic Republic of Iran": "Iran",
    "Korea, Republic of": "South Korea",
    "Republic of Korea": "South Korea",
    "Korea, Democratic People's Republic of": "North Korea",
    "Viet Nam": "Vietnam",
    "Türkiye": "Turkey",
    "Turkiye": "Turkey",
    "Syrian Arab Republic": "Syria",
    "Moldova, Republic of": "Moldova",
    "Republic of Moldova": "Moldova",
    "Taiwan, Province of China": "Taiwan",
    "Tanzania, United Republic of": "Tanzania",
    "Venezuela, Bolivarian Republic of": "Venezuela",
    "Bolivia, Plurinational State of": "Bolivia",
    "Lao People's Democratic Republic": "Laos",
    "Czech Republic": "Czechia",
    "United States of America": "United States",
    "United Kingdom of Great Britain and Northern Ireland": "United Kingdom",
    "Hong Kong SAR": "Hong Kong",
    "Macao": "Macau",
    "The Netherlands": "Netherlands",
}

_EDITION_PREFIX = re.compile(r"^GeoIP[^:]*:\s*")
_CODE_PREFIX = re.compile(r"^[A-Z0-9]{2},\s*")
_NOT_FOUND_MARKERS = ("not found", "can't resolve", "unknown")


def normalize_country(raw: Optional[str]) -> str:
    """
    Normalize a database answer to a display country name.

    Strips edition and two-letter country-code prefixes
    (``"GeoIP Country Edition: DE, Germany"`` becomes ``"Germany"``) and
    canonicalizes known spelling variants. Empty or not-found answers map
    to the Unknown label.
    """
    if raw is None:
        return UNKNOWN_COUNTRY

    name = _EDITION_PREFIX.sub("", raw.strip())
    name = _CODE_PREFIX.sub("", name).strip()

    if not name or any(marker in name.lower() for marker in _NOT_FOUND_MARKERS):
        return UNKNOWN_COUNTRY

    # Pipe is the field delimiter of the exported line format
    name = name.replace("|", "/")
    return COUNTRY_ALIASES.get(name, name)


@runtime_checkable
class CountryLookup(Protocol):
    """Backend answering IP to country queries."""

    def lookup(self, ip: str) -> str:
        """
        Return the raw country name for an IP.

        Raises:
            GeoLookupError: If the address cannot be resolved
        """
        ...

    def reload(self) -> None:
        """Reopen the backing database after it has been replaced."""
        ...


class GeoIP2CountryLookup:
    """CountryLookup over a MaxMind GeoIP2/GeoLite2 country database."""

    def __init__(self, database_path: Path) -> None:
        self._database_path = database_path
        self._reader: Optional[geoip2.database.Reader] = None

    @property
    def database_path(self) -> Path:
        return self._database_path

    def _open(self) -> geoip2.database.Reader:
        if self._reader is None:
            try:
                self._reader = geoip2.database.Reader(str(self._database_path))
            except (OSError, ValueError, RuntimeError) as e:
                raise GeoLookupError(
                    code="database_unavailable",
                    message=f"Cannot open geolocation database: {e}",
                    details={"database_path": str(self._database_path)},
                )
        return self._reader

    def lookup(self, ip: str) -> str:
        reader = self._open()
        try:
            response = reader.country(ip)
        except geoip2.errors.AddressNotFoundError:
            raise GeoLookupError(
                code="not_found",
                message=f"Address not in database: {ip}",
                details={"ip": ip},
            )
        except (geoip2.errors.GeoIP2Error, ValueError, RuntimeError) as e:
            raise GeoLookupError(
                code="lookup_failed",
                message=f"Lookup failed for {ip}: {e}",
                details={"ip": ip},
            )

        name = response.country.name or response.registered_country.name
        if not name:
            raise GeoLookupError(
                code="no_country",
                message=f"No country recorded for {ip}",
                details={"ip": ip},
            )
        return name

    def reload(self) -> None:
        self.close()

    def close(self) -> None:
        if self._reader is not None:
            self._reader.close()
            self._reader = None


class GeoResolver:
    """
    Cached IP to country resolution.

    The cache keeps insertion order. Once it holds more than ``ceiling``
    entries the oldest appended entries are dropped, which approximates LRU
    without tracking reads. Cached entries are never rewritten.
    """

    COMPONENT = "GeoResolver"

    def __init__(
        self,
        lookup: CountryLookup,
        cache_file: Optional[RecordFile] = None,
        ceiling: int = 10000,
        logger: Optional[AuditLogger] = None,
    ) -> None:
        if ceiling < 1:
            raise ValueError("ceiling must be at least 1")
        self._lookup = lookup
        self._cache_file = cache_file
        self._ceiling = ceiling
        self._logger = logger
        self._cache: dict[str, str] = {}
        self._dirty = False

    @property
    def lookup_backend(self) -> CountryLookup:
        return self._lookup

    @property
    def ceiling(self) -> int:
        return self._ceiling

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, ip: str) -> bool:
        return ip in self._cache

    def get(self, ip: str) -> Optional[str]:
        """Cached country for an IP without querying the database."""
        return self._cache.get(ip)

    def entries(self) -> list[GeoCacheEntry]:
        return [GeoCacheEntry(ip=ip, country=country) for ip, country in self._cache.items()]

    def load(self) -> int:
        """
        Load the persisted cache, replacing the in-memory one.

        An unreadable cache file is logged and treated as empty; it is a
        pure optimization and can always be rebuilt.

        Returns:
            Number of entries loaded
        """
        if self._cache_file is None:
            return 0
        try:
            records = self._cache_file.load()
        except PersistenceError as e:
            self._log_error("Discarding unreadable geo cache", e)
            records = []

        self._cache = {}
        for ip, country in records:
            self._cache[str(ip)] = str(country)
        self._enforce_ceiling()
        self._dirty = False
        return len(self._cache)

    def save(self) -> bool:
        """
        Persist the cache if it changed since the last load or save.

        Raises:
            PersistenceError: If the cache file cannot be written
        """
        if self._cache_file is None or not self._dirty:
            return False
        self._cache_file.save(list(self._cache.items()))
        self._dirty = False
        return True

    def resolve(self, ip: str) -> str:
        """
        Resolve an IP to a country name.

        Returns:
            The normalized country name, or the Unknown label on failure
        """
        cached = self._cache.get(ip)
        if cached is not None:
            return cached

        try:
            country = normalize_country(self._lookup.lookup(ip))
        except GeoLookupError as e:
            self._log(
                LogLevel.DEBUG,
                f"Lookup failed for {ip}",
                {"ip": ip, "code": e.code},
            )
            return UNKNOWN_COUNTRY

        if country == UNKNOWN_COUNTRY:
            return UNKNOWN_COUNTRY

        self._cache[ip] = country
        self._dirty = True
        self._enforce_ceiling()
        return country

    def _enforce_ceiling(self) -> None:
        excess = len(self._cache) - self._ceiling
        if excess <= 0:
            return
        for ip in list(self._cache)[:excess]:
            del self._cache[ip]
        self._dirty = True

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)

    def _log_error(self, message: str, error: Exception) -> None:
        if self._logger:
            self._logger.log_error(self.COMPONENT, message, error)
