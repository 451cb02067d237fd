"""
Property-based tests for the traffic aggregator.

Uses Hypothesis to verify duty-cycle scaling, the order independence of
merges, snapshot replacement and the retention of increments across a
failed write.
"""

import tempfile
from fractions import Fraction
from pathlib import Path

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from proxy_tracker.aggregator import (
    TrafficAggregator,
    duty_cycle_multiplier,
    scale_bytes,
)
from proxy_tracker.enums import Direction
from proxy_tracker.exceptions import GeoLookupError
from proxy_tracker.geo_resolver import GeoResolver
from proxy_tracker.models import SampleDelta
from proxy_tracker.record_store import RecordStore


COUNTRY_TABLE = {
    "1.2.3.4": "Germany",
    "5.6.7.8": "Iran",
    "9.9.9.9": "Russian Federation",
    "8.8.8.8": "United States",
}


class TableLookup:
    """CountryLookup over COUNTRY_TABLE; anything else is not found."""

    def lookup(self, ip: str) -> str:
        try:
            return COUNTRY_TABLE[ip]
        except KeyError:
            raise GeoLookupError(code="not_found", message=f"Address not in database: {ip}")

    def reload(self) -> None:
        pass


def make_aggregator(data_dir: Path) -> tuple[RecordStore, TrafficAggregator]:
    store = RecordStore(data_dir, "secret-key")
    resolver = GeoResolver(TableLookup(), cache_file=store.geo_cache)
    return store, TrafficAggregator(store, resolver)


delta_strategy = st.builds(
    SampleDelta,
    direction=st.sampled_from([Direction.IN, Direction.OUT]),
    remote_ip=st.sampled_from(sorted(COUNTRY_TABLE) + ["203.0.113.9"]),
    bytes=st.integers(min_value=1, max_value=10**9),
)

window_strategy = st.lists(delta_strategy, max_size=10)


class TestDutyCycleScalingProperty:
    """
    Property 1: Scaling uses the exact (capture + idle) / capture ratio.
    """

    def test_equal_capture_and_idle_doubles(self) -> None:
        assert duty_cycle_multiplier(15, 15) == 2

    def test_decimal_durations_are_exact(self) -> None:
        assert duty_cycle_multiplier(0.1, 0.2) == Fraction(3)

    @given(
        capture=st.integers(min_value=1, max_value=3600),
        idle=st.integers(min_value=0, max_value=3600),
        raw=st.integers(min_value=0, max_value=10**12),
    )
    @settings(max_examples=200)
    def test_scaled_bytes_match_exact_ratio(self, capture: int, idle: int, raw: int) -> None:
        multiplier = duty_cycle_multiplier(capture, idle)

        scaled = scale_bytes(raw, multiplier)

        assert abs(scaled - Fraction(raw * (capture + idle), capture)) <= Fraction(1, 2)
        if idle == 0:
            assert scaled == raw

    @pytest.mark.parametrize("capture,idle", [(0, 10), (-1, 10), (10, -1)])
    def test_invalid_durations_are_rejected(self, capture: int, idle: int) -> None:
        with pytest.raises(ValueError):
            duty_cycle_multiplier(capture, idle)


class TestMergeProperty:
    """
    Property 2: Cumulative totals equal the sum of scaled window bytes.
    """

    def test_single_window_example(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, aggregator = make_aggregator(Path(tmpdir))
            deltas = [
                SampleDelta(Direction.IN, "1.2.3.4", 500),
                SampleDelta(Direction.OUT, "5.6.7.8", 300),
            ]

            result = aggregator.merge(deltas, duty_cycle_multiplier(15, 15))

            assert result.persisted
            totals = aggregator.read_totals()
            assert (totals["Germany"].bytes_in, totals["Germany"].bytes_out) == (1000, 0)
            assert (totals["Iran"].bytes_in, totals["Iran"].bytes_out) == (0, 600)
            assert aggregator.read_unique_ips() == {("Germany", "1.2.3.4"), ("Iran", "5.6.7.8")}
            snapshot = {(r.direction, r.country, r.bytes, r.ip) for r in aggregator.read_snapshot()}
            assert snapshot == {
                (Direction.IN, "Germany", 500, "1.2.3.4"),
                (Direction.OUT, "Iran", 300, "5.6.7.8"),
            }

    @given(first=window_strategy, second=window_strategy)
    @settings(max_examples=30, deadline=None)
    def test_merge_order_does_not_matter(self, first: list, second: list) -> None:
        multiplier = duty_cycle_multiplier(15, 15)
        results = []
        for order in ((first, second), (second, first)):
            with tempfile.TemporaryDirectory() as tmpdir:
                _, aggregator = make_aggregator(Path(tmpdir))
                for window in order:
                    aggregator.merge(window, multiplier)
                results.append(
                    (
                        {c: (t.bytes_in, t.bytes_out) for c, t in aggregator.read_totals().items()},
                        aggregator.read_unique_ips(),
                    )
                )

        assert results[0] == results[1]

    @given(windows=st.lists(window_strategy, min_size=1, max_size=4))
    @settings(max_examples=30, deadline=None)
    def test_totals_are_sum_of_scaled_windows(self, windows: list) -> None:
        multiplier = duty_cycle_multiplier(10, 20)
        with tempfile.TemporaryDirectory() as tmpdir:
            _, aggregator = make_aggregator(Path(tmpdir))
            for window in windows:
                aggregator.merge(window, multiplier)

            expected = sum(scale_bytes(d.bytes, multiplier) for w in windows for d in w)
            assert sum(t.total for t in aggregator.read_totals().values()) == expected

    def test_unresolvable_address_counts_as_unknown(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            _, aggregator = make_aggregator(Path(tmpdir))

            aggregator.merge([SampleDelta(Direction.IN, "203.0.113.9", 10)], 1)

            assert aggregator.read_totals()["Unknown"].bytes_in == 10

    def test_snapshot_holds_only_latest_window(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            _, aggregator = make_aggregator(Path(tmpdir))
            aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 10)], 2)
            aggregator.merge([SampleDelta(Direction.OUT, "8.8.8.8", 20)], 2)

            assert [(r.ip, r.bytes) for r in aggregator.read_snapshot()] == [("8.8.8.8", 20)]
            assert aggregator.read_totals()["Germany"].bytes_in == 20

    def test_empty_window_clears_snapshot_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            _, aggregator = make_aggregator(Path(tmpdir))
            aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 10)], 1)

            aggregator.merge([], 1)

            assert aggregator.read_snapshot() == []
            assert aggregator.read_totals()["Germany"].bytes_in == 10


class TestDeferredMergeProperty:
    """
    Property 3: A window that cannot be written is folded into a later merge.
    """

    def test_increment_survives_unwritable_totals(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, aggregator = make_aggregator(Path(tmpdir))
            aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 100)], 1)

            # A directory in place of the totals file makes reads and writes fail
            blocked = store.totals.file_path
            blocked.unlink()
            blocked.mkdir()

            result = aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 50)], 1)
            assert not result.persisted
            assert not aggregator.pending.is_empty()

            blocked.rmdir()
            assert aggregator.flush()
            assert aggregator.pending.is_empty()
            assert aggregator.read_totals()["Germany"].bytes_in == 50

    @given(later_windows=st.integers(min_value=1, max_value=5))
    @settings(max_examples=10, deadline=None)
    def test_unparsable_totals_do_not_stall_merges(self, later_windows: int) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, aggregator = make_aggregator(Path(tmpdir))
            aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 100)], 1)
            store.totals.file_path.write_text("{not json", encoding="utf-8")

            results = [
                aggregator.merge([SampleDelta(Direction.IN, "5.6.7.8", 10)], 1)
                for _ in range(later_windows)
            ]

            assert all(r.persisted for r in results)
            assert aggregator.pending.is_empty()
            assert store.totals.load() == [("Iran", 10 * later_windows, 0)]
            [quarantined] = store.archive_dir.glob("corrupt-country_totals-*.json")
            assert quarantined.read_text(encoding="utf-8") == "{not json"
            assert store.list_archives("country_totals") == []

    def test_foreign_secret_totals_restored_from_backup(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, aggregator = make_aggregator(Path(tmpdir))
            store.backup_of("country_totals").save([("Germany", 100, 0)])
            RecordStore(Path(tmpdir), "another-secret").totals.save([("Germany", 999, 0)])

            result = aggregator.merge([SampleDelta(Direction.IN, "1.2.3.4", 50)], 1)

            assert result.persisted
            assert store.totals.load() == [("Germany", 150, 0)]
            assert store.unique_ips.load() == [("Germany", "1.2.3.4")]

    def test_discard_pending_drops_increment(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            store, aggregator = make_aggregator(Path(tmpdir))
            store.totals.file_path.mkdir(parents=True)

            aggregator.merge([SampleDelta(Direction.OUT, "5.6.7.8", 70)], 1)
            aggregator.discard_pending()

            assert aggregator.pending.is_empty()
