"""
Property-based tests for the geolocation database updater.

Uses Hypothesis to verify that a download only replaces the installed
database when it is complete and plausibly sized.
"""

import asyncio
import gzip
import tempfile
from pathlib import Path

import httpx
from hypothesis import given, settings
from hypothesis import strategies as st

from proxy_tracker.config import GeoConfig
from proxy_tracker.geo_updater import GeoDatabaseUpdater, RefreshResult


URL = "https://geo.invalid/GeoLite2-Country.mmdb"


class CountingLookup:
    """CountryLookup counting reloads."""

    def __init__(self) -> None:
        self.reloads = 0

    def lookup(self, ip: str) -> str:
        return "Germany"

    def reload(self) -> None:
        self.reloads += 1


def serve(body: bytes, status_code: int = 200) -> httpx.MockTransport:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status_code, content=body)
    return httpx.MockTransport(handler)


def refresh(updater: GeoDatabaseUpdater, transport: httpx.MockTransport) -> RefreshResult:
    async def scenario() -> RefreshResult:
        async with httpx.AsyncClient(transport=transport) as client:
            return await updater.refresh(client)
    return asyncio.run(scenario())


def make_config(tmpdir: str, url: str = URL) -> GeoConfig:
    return GeoConfig(
        database_path=Path(tmpdir) / "geo" / "country.mmdb",
        download_url=url,
        max_download_bytes=4096,
        min_database_bytes=64,
    )


class TestDatabaseReplacementProperty:
    """
    Property 1: The installed database is replaced only by a download whose
    size lies within the configured bounds.
    """

    @given(size=st.integers(min_value=0, max_value=6000))
    @settings(max_examples=30, deadline=None)
    def test_size_bounds(self, size: int) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir)
            config.database_path.parent.mkdir(parents=True)
            config.database_path.write_bytes(b"old")
            lookup = CountingLookup()
            updater = GeoDatabaseUpdater(config, lookup=lookup)

            result = refresh(updater, serve(b"x" * size))

            accepted = config.min_database_bytes <= size <= config.max_download_bytes
            assert result.success == accepted
            if accepted:
                assert config.database_path.read_bytes() == b"x" * size
                assert result.bytes_written == size
                assert lookup.reloads == 1
            else:
                assert config.database_path.read_bytes() == b"old"
                assert lookup.reloads == 0
            leftovers = [p.name for p in config.database_path.parent.iterdir()]
            assert leftovers == ["country.mmdb"]

    def test_http_error_keeps_database(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir)
            config.database_path.parent.mkdir(parents=True)
            config.database_path.write_bytes(b"old")

            result = refresh(GeoDatabaseUpdater(config), serve(b"x" * 100, status_code=404))

            assert not result.success
            assert config.database_path.read_bytes() == b"old"

    def test_gzip_download_is_decompressed(self) -> None:
        content = b"MMDB" * 100
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir, url=URL + ".gz")

            result = refresh(GeoDatabaseUpdater(config), serve(gzip.compress(content)))

            assert result.success
            assert config.database_path.read_bytes() == content
            assert result.bytes_written == len(content)
            assert [p.name for p in config.database_path.parent.iterdir()] == ["country.mmdb"]

    def test_corrupt_gzip_keeps_database(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir, url=URL + ".gz")

            result = refresh(GeoDatabaseUpdater(config), serve(b"not gzip data" * 10))

            assert not result.success
            assert not config.database_path.exists()


class TestRefreshPreconditionProperty:
    """
    Property 2: Without a URL, or in simulation mode, nothing is downloaded.
    """

    def test_no_url_configured(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir, url=None)

            result = refresh(GeoDatabaseUpdater(config), serve(b"x" * 100))

            assert not result.success
            assert result.error == "No download URL configured"

    def test_simulation_mode(self) -> None:
        requests: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(str(request.url))
            return httpx.Response(200, content=b"x" * 100)

        with tempfile.TemporaryDirectory() as tmpdir:
            config = make_config(tmpdir)

            result = refresh(
                GeoDatabaseUpdater(config, simulation_mode=True),
                httpx.MockTransport(handler),
            )

            assert result.success
            assert requests == []
            assert not config.database_path.exists()
