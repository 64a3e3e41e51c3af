"""
AeroLink Loopback Channel

A virtual channel driver that delivers frames to other loopback
drivers sharing the same in-process medium.

Useful for:
- Unit testing
- Integration testing
- Simulating multi-node topologies without hardware

Features:
- Simulated link quality reported through get_observation()
- Optional explicit link graph (nodes out of range do not hear each other)
- Frequency hopping across indexed sub-channels
- Forced send failures for stabilization testing
"""

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from ..metrics.collector import ChannelObservation
from .base import ChannelError, ChannelKind, SendResult


logger = logging.getLogger(__name__)


@dataclass
class LinkProfile:
    """Simulated link quality for a loopback channel."""
    signal_quality: float = 0.9
    latency_ms: float = 20.0
    peer_or_cell_count: int = 3
    error_rate: float = 0.0
    area_id: Optional[str] = None
    encryption_strength: Optional[int] = None
    fingerprint_id: Optional[str] = None
    fingerprint_similarity: Optional[float] = None


class LoopbackMedium:
    """
    Shared virtual medium.

    Without explicit links every attached station hears every other.
    Once link() has been called, only linked station names hear each
    other.

    Usage:
        medium = LoopbackMedium()
        a = LoopbackChannel("mesh0", ChannelKind.MESH, medium, station="A")
        b = LoopbackChannel("mesh0", ChannelKind.MESH, medium, station="B")
        medium.link("A", "B")
    """

    def __init__(self):
        self._stations: List['LoopbackChannel'] = []
        self._links: Set[Tuple[str, str]] = set()
        self._lock = threading.Lock()

    def attach(self, channel: 'LoopbackChannel') -> None:
        with self._lock:
            if channel not in self._stations:
                self._stations.append(channel)

    def detach(self, channel: 'LoopbackChannel') -> None:
        with self._lock:
            if channel in self._stations:
                self._stations.remove(channel)

    def link(self, a: str, b: str) -> None:
        """Put two stations in range of each other."""
        with self._lock:
            self._links.add((a, b))
            self._links.add((b, a))

    def unlink(self, a: str, b: str) -> None:
        with self._lock:
            self._links.discard((a, b))
            self._links.discard((b, a))

    def in_range(self, a: str, b: str) -> bool:
        with self._lock:
            return not self._links or (a, b) in self._links

    def broadcast(self, sender: 'LoopbackChannel', data: bytes) -> int:
        """Deliver data to every active station in range; returns count."""
        with self._lock:
            stations = list(self._stations)

        delivered = 0
        for station in stations:
            if station is sender or not station.is_active:
                continue
            if station.hop_index != sender.hop_index:
                continue
            if not self.in_range(sender.station, station.station):
                continue
            station._deliver(data)
            delivered += 1
        return delivered


class LoopbackChannel:
    """
    Virtual channel driver for tests and simulation.

    Implements the ChannelDriver interface. An inactive channel neither
    sends nor receives.
    """

    def __init__(
        self,
        channel_id: str,
        kind: ChannelKind,
        medium: LoopbackMedium,
        station: str = "",
        profile: Optional[LinkProfile] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.channel_id = channel_id
        self.kind = kind
        self.station = station or channel_id
        self.profile = profile or LinkProfile()

        self._medium = medium
        self._clock = clock
        self._rx_queue: "queue.Queue[bytes]" = queue.Queue()
        self._active = False
        self._hop_index = 0
        self._fail_sends = False

        self._frames_sent = 0
        self._frames_received = 0
        self._send_errors = 0

        medium.attach(self)

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def hop_index(self) -> int:
        return self._hop_index

    def activate(self) -> None:
        if not self._active:
            logger.debug(f"{self.channel_id}@{self.station} activated")
        self._active = True

    def deactivate(self) -> None:
        if self._active:
            logger.debug(f"{self.channel_id}@{self.station} deactivated")
        self._active = False

    def tune(self, index: int) -> None:
        """Retune to a hop sub-channel."""
        if index < 0:
            raise ChannelError(f"Invalid hop index: {index}")
        self._hop_index = index

    def set_fail_sends(self, fail: bool) -> None:
        """Make every subsequent send() fail (or stop failing)."""
        self._fail_sends = fail

    def get_observation(self) -> Optional[ChannelObservation]:
        p = self.profile
        return ChannelObservation(
            channel_id=self.channel_id,
            signal_quality=p.signal_quality,
            measured_latency_ms=p.latency_ms,
            peer_or_cell_count=p.peer_or_cell_count,
            error_rate=p.error_rate,
            timestamp=self._clock(),
            area_id=p.area_id,
            encryption_strength=p.encryption_strength,
            fingerprint_id=p.fingerprint_id,
            fingerprint_similarity=p.fingerprint_similarity,
        )

    def send(self, data: bytes) -> SendResult:
        if not self._active:
            self._send_errors += 1
            return SendResult.failure("channel inactive")

        if self._fail_sends or self.profile.signal_quality <= 0.0:
            self._send_errors += 1
            return SendResult.failure("no signal")

        self._medium.broadcast(self, data)
        self._frames_sent += 1
        return SendResult.success()

    def receive(self) -> Optional[bytes]:
        if not self._active:
            return None
        try:
            return self._rx_queue.get_nowait()
        except queue.Empty:
            return None

    def _deliver(self, data: bytes) -> None:
        self._rx_queue.put_nowait(data)
        self._frames_received += 1

    def get_statistics(self) -> Dict[str, object]:
        return {
            "channel_id": self.channel_id,
            "station": self.station,
            "active": self._active,
            "frames_sent": self._frames_sent,
            "frames_received": self._frames_received,
            "send_errors": self._send_errors,
        }

    def __repr__(self) -> str:
        return f"<LoopbackChannel {self.channel_id}@{self.station} active={self._active}>"
