"""
Packet Sampler for the proxy tracker.

Captures IP packet metadata (addresses and lengths, never payloads) for a
fixed window and accumulates the bytes exchanged with each public remote
address, split by direction relative to the local host. Packets whose remote
side is a private, loopback, link-local, multicast or otherwise non-routable
address are dropped.
"""

import ipaddress
import socket
import threading
import time
from collections import defaultdict
from typing import Callable, Iterable, Optional, Protocol, runtime_checkable

from .audit_logger import AuditLogger
from .enums import Direction, LogLevel
from .exceptions import CaptureError
from .models import CaptureResult, SampleDelta


PacketCallback = Callable[[str, str, int], None]


def is_public_address(address: str) -> bool:
    """True if the address is a globally routable unicast IP."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def classify_packet(
    src: str,
    dst: str,
    local_ips: frozenset[str],
) -> Optional[tuple[Direction, str]]:
    """
    Classify a packet relative to the local host.

    Returns:
        (direction, remote_ip), or None if the packet is not traffic between
        this host and a public remote address
    """
    if src in local_ips and dst not in local_ips:
        remote, direction = dst, Direction.OUT
    elif dst in local_ips and src not in local_ips:
        remote, direction = src, Direction.IN
    else:
        return None

    if not is_public_address(remote):
        return None
    return direction, remote


def build_bpf_filter(exclude_filter: Optional[str]) -> str:
    """BPF expression selecting IP traffic minus the excluded part."""
    exclude = (exclude_filter or "").strip()
    if not exclude:
        return "ip or ip6"
    return f"(ip or ip6) and not ({exclude})"


def detect_local_ips() -> list[str]:
    """
    Best-effort discovery of the host's outbound addresses.

    Opens unconnected UDP sockets towards public resolvers to learn which
    source address the kernel routes from; no packets are sent.
    """
    found = []
    targets = ((socket.AF_INET, "1.1.1.1"), (socket.AF_INET6, "2606:4700:4700::1111"))
    for family, target in targets:
        try:
            with socket.socket(family, socket.SOCK_DGRAM) as sock:
                sock.connect((target, 53))
                address = sock.getsockname()[0]
        except OSError:
            continue
        if address and address not in found:
            found.append(address)
    return found


@runtime_checkable
class PacketSource(Protocol):
    """Facility delivering (src, dst, length) for each captured packet."""

    def collect(
        self,
        duration: float,
        bpf_filter: str,
        callback: PacketCallback,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        """
        Capture for ``duration`` seconds, calling ``callback`` per packet.

        Returns early once ``stop_event`` is set.

        Raises:
            CaptureError: If the capture facility is unavailable
        """
        ...


class ScapyPacketSource:
    """PacketSource backed by scapy/libpcap."""

    def __init__(self, interface: Optional[str] = None) -> None:
        self._interface = interface

    def collect(
        self,
        duration: float,
        bpf_filter: str,
        callback: PacketCallback,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        try:
            from scapy.all import sniff
            from scapy.error import Scapy_Exception
            from scapy.layers.inet import IP
            from scapy.layers.inet6 import IPv6
        except ImportError as e:
            raise CaptureError(
                code="capture_unavailable",
                message=f"scapy is not available: {e}",
            )

        def _on_packet(pkt) -> None:
            layer = pkt.getlayer(IP)
            if layer is None:
                layer = pkt.getlayer(IPv6)
            if layer is None:
                return
            callback(str(layer.src), str(layer.dst), len(layer))

        kwargs = {
            "filter": bpf_filter,
            "prn": _on_packet,
            "store": False,
            "timeout": duration,
        }
        if self._interface:
            kwargs["iface"] = self._interface
        if stop_event is not None:
            # Checked per packet; the timeout still ends a quiet capture
            kwargs["stop_filter"] = lambda _pkt: stop_event.is_set()

        try:
            sniff(**kwargs)
        except (Scapy_Exception, OSError, RuntimeError, ValueError) as e:
            # Raised for missing privileges, unknown interfaces and bad filters
            raise CaptureError(
                code="capture_failed",
                message=f"Packet capture failed: {e}",
                details={"interface": self._interface, "filter": bpf_filter},
            )


class PacketSampler:
    """
    Samples per-remote byte counts over one capture window.

    A failed capture never raises: the result is empty and carries the
    error, and the caller simply moves on to the next cycle.
    """

    COMPONENT = "PacketSampler"

    def __init__(
        self,
        source: PacketSource,
        local_ips: Optional[Iterable[str]] = None,
        logger: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        configured = list(local_ips or [])
        self._local_ips = frozenset(configured or detect_local_ips())
        self._logger = logger
        self._clock = clock
        self._stop_event = threading.Event()

    @property
    def local_ips(self) -> frozenset[str]:
        return self._local_ips

    def stop(self) -> None:
        """Ask the capture in progress to end; later packets are ignored."""
        self._stop_event.set()

    def capture(
        self,
        duration: float,
        exclude_filter: Optional[str] = None,
    ) -> CaptureResult:
        """
        Capture for ``duration`` seconds and return one delta per
        (direction, remote address) pair seen.
        """
        if not self._local_ips:
            return self._failed("No local address known; cannot classify traffic", 0.0)

        totals: dict[tuple[Direction, str], int] = defaultdict(int)
        packets_seen = 0
        stop_event = threading.Event()
        self._stop_event = stop_event

        def _on_packet(src: str, dst: str, length: int) -> None:
            nonlocal packets_seen
            if stop_event.is_set():
                return
            packets_seen += 1
            classified = classify_packet(src, dst, self._local_ips)
            if classified is not None and length > 0:
                totals[classified] += length

        bpf_filter = build_bpf_filter(exclude_filter)
        started = self._clock()
        try:
            self._source.collect(duration, bpf_filter, _on_packet, stop_event=stop_event)
        except CaptureError as e:
            return self._failed(e.message, self._clock() - started)

        elapsed = self._clock() - started
        if stop_event.is_set():
            return self._failed("Capture stopped before completion", elapsed)

        deltas = [
            SampleDelta(direction=direction, remote_ip=ip, bytes=count)
            for (direction, ip), count in totals.items()
        ]
        self._log(
            LogLevel.DEBUG,
            "Capture window complete",
            {
                "packets": packets_seen,
                "remotes": len(deltas),
                "duration_seconds": round(elapsed, 3),
            },
        )
        return CaptureResult(
            deltas=deltas,
            packets_seen=packets_seen,
            duration_seconds=elapsed,
        )

    def _failed(self, message: str, elapsed: float) -> CaptureResult:
        self._log(LogLevel.WARN, "Capture unavailable, skipping window", {"error": message})
        return CaptureResult(duration_seconds=elapsed, error=message)

    def _log(self, level: LogLevel, message: str, data: dict) -> None:
        if self._logger:
            self._logger.log(level, self.COMPONENT, message, data)
