"""
Property-based tests for the packet sampler.

Uses Hypothesis to verify direction classification, the discarding of
non-public traffic and the aggregation of packets into per-remote deltas.
"""

import ipaddress
from typing import Optional

from hypothesis import given, settings
from hypothesis import strategies as st

from proxy_tracker.enums import Direction
from proxy_tracker.exceptions import CaptureError
from proxy_tracker.sampler import (
    PacketSampler,
    build_bpf_filter,
    classify_packet,
    is_public_address,
)


LOCAL_IP = "192.0.2.10"
LOCAL_IPS = frozenset({LOCAL_IP})


class FakePacketSource:
    """PacketSource replaying a fixed list of (src, dst, length) packets."""

    def __init__(self, packets: list[tuple[str, str, int]], error: Optional[str] = None) -> None:
        self._packets = packets
        self._error = error
        self.filters: list[str] = []

    def collect(self, duration, bpf_filter, callback, stop_event=None) -> None:
        self.filters.append(bpf_filter)
        if self._error:
            raise CaptureError(code="capture_failed", message=self._error)
        for src, dst, length in self._packets:
            callback(src, dst, length)


# Public addresses from ranges that are globally routable
public_ip_strategy = st.integers(min_value=1, max_value=250).map(lambda n: f"8.8.{n}.{n}")

private_ip_strategy = st.sampled_from(
    ["10.0.0.5", "172.16.4.4", "192.168.1.20", "127.0.0.1", "169.254.3.3", "224.0.0.251", "::1", "fe80::1"]
)


class TestDirectionClassificationProperty:
    """
    Property 1: Packets from the host are OUT, packets to the host are IN.
    """

    @given(remote=public_ip_strategy)
    @settings(max_examples=100)
    def test_direction_follows_local_endpoint(self, remote: str) -> None:
        assert classify_packet(LOCAL_IP, remote, LOCAL_IPS) == (Direction.OUT, remote)
        assert classify_packet(remote, LOCAL_IP, LOCAL_IPS) == (Direction.IN, remote)

    @given(remote=private_ip_strategy)
    @settings(max_examples=50)
    def test_non_public_remotes_are_discarded(self, remote: str) -> None:
        assert classify_packet(LOCAL_IP, remote, LOCAL_IPS) is None
        assert classify_packet(remote, LOCAL_IP, LOCAL_IPS) is None

    @given(a=public_ip_strategy, b=public_ip_strategy)
    @settings(max_examples=50)
    def test_transit_traffic_is_discarded(self, a: str, b: str) -> None:
        assert classify_packet(a, b, LOCAL_IPS) is None

    def test_host_to_itself_is_discarded(self) -> None:
        assert classify_packet(LOCAL_IP, LOCAL_IP, LOCAL_IPS) is None

    def test_public_address_detection(self) -> None:
        assert is_public_address("8.8.8.8")
        assert is_public_address("2001:4860:4860::8888")
        assert not is_public_address("10.1.2.3")
        assert not is_public_address("not-an-ip")


class TestDeltaAggregationProperty:
    """
    Property 2: Bytes per (direction, remote) equal the sum of packet lengths.
    """

    @given(
        packets=st.lists(
            st.tuples(
                public_ip_strategy,
                st.sampled_from([Direction.IN, Direction.OUT]),
                st.integers(min_value=1, max_value=65535),
            ),
            max_size=60,
        )
    )
    @settings(max_examples=100)
    def test_deltas_sum_packet_lengths(self, packets: list) -> None:
        raw = [
            (LOCAL_IP, remote, length) if direction == Direction.OUT else (remote, LOCAL_IP, length)
            for remote, direction, length in packets
        ]
        expected: dict[tuple[Direction, str], int] = {}
        for remote, direction, length in packets:
            key = (direction, remote)
            expected[key] = expected.get(key, 0) + length

        sampler = PacketSampler(FakePacketSource(raw), local_ips=[LOCAL_IP])
        result = sampler.capture(15)

        assert result.ok
        assert result.packets_seen == len(raw)
        assert {(d.direction, d.remote_ip): d.bytes for d in result.deltas} == expected
        assert all(d.bytes > 0 for d in result.deltas)

    def test_private_traffic_contributes_nothing(self) -> None:
        raw = [
            (LOCAL_IP, "10.0.0.1", 1500),
            ("192.168.0.9", LOCAL_IP, 900),
            (LOCAL_IP, "8.8.4.4", 100),
        ]
        result = PacketSampler(FakePacketSource(raw), local_ips=[LOCAL_IP]).capture(15)

        assert [(d.direction, d.remote_ip, d.bytes) for d in result.deltas] == [
            (Direction.OUT, "8.8.4.4", 100)
        ]

    def test_ipv6_traffic_is_classified(self) -> None:
        local6 = "2001:db8::10"
        remote6 = str(ipaddress.IPv6Address("2606:4700:4700::1111"))
        raw = [(remote6, local6, 1280)]

        result = PacketSampler(FakePacketSource(raw), local_ips=[local6]).capture(15)

        assert [(d.direction, d.remote_ip, d.bytes) for d in result.deltas] == [
            (Direction.IN, remote6, 1280)
        ]


class TestCaptureFailureProperty:
    """
    Property 3: A failing capture yields an empty result instead of raising.
    """

    def test_capture_error_returns_empty_result(self) -> None:
        sampler = PacketSampler(
            FakePacketSource([], error="permission denied"),
            local_ips=[LOCAL_IP],
        )

        result = sampler.capture(15)

        assert not result.ok
        assert result.deltas == []
        assert "permission denied" in result.error

    def test_exclude_filter_is_applied(self) -> None:
        source = FakePacketSource([])
        PacketSampler(source, local_ips=[LOCAL_IP]).capture(15, "port 22")

        assert source.filters == ["(ip or ip6) and not (port 22)"]

    def test_empty_exclude_captures_all_ip(self) -> None:
        assert build_bpf_filter(None) == "ip or ip6"
        assert build_bpf_filter("  ") == "ip or ip6"


class StoppedMidwaySource:
    """PacketSource whose capture is stopped after half of its packets."""

    def __init__(self, packets: list[tuple[str, str, int]]) -> None:
        self._packets = packets
        self.sampler: Optional[PacketSampler] = None
        self.stop_seen: list[bool] = []

    def collect(self, duration, bpf_filter, callback, stop_event=None) -> None:
        half = len(self._packets) // 2
        for src, dst, length in self._packets[:half]:
            callback(src, dst, length)
        self.sampler.stop()
        self.stop_seen.append(stop_event.is_set())
        for src, dst, length in self._packets[half:]:
            callback(src, dst, length)


class TestCaptureStopProperty:
    """
    Property 4: A stopped capture is discarded and the next one starts fresh.
    """

    @given(count=st.integers(min_value=0, max_value=20))
    @settings(max_examples=30)
    def test_stopped_capture_is_discarded(self, count: int) -> None:
        source = StoppedMidwaySource([("5.6.7.8", LOCAL_IP, 100)] * count)
        sampler = PacketSampler(source, local_ips=[LOCAL_IP])
        source.sampler = sampler

        result = sampler.capture(15)

        assert source.stop_seen == [True]
        assert result.error == "Capture stopped before completion"
        assert result.deltas == []

    def test_capture_after_stop_is_unaffected(self) -> None:
        source = FakePacketSource([("5.6.7.8", LOCAL_IP, 100)])
        sampler = PacketSampler(source, local_ips=[LOCAL_IP])

        sampler.stop()
        result = sampler.capture(15)

        assert result.ok
        assert [(d.direction, d.bytes) for d in result.deltas] == [(Direction.IN, 100)]
