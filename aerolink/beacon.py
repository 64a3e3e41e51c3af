"""
AeroLink Emergency Beacon

Cleartext broadcast used in EMERGENCY mode. Every beacon carries the
node ID, position and battery level so any listener can locate the
node, and optionally one queued application message.

Each beacon is sent on the next entry of emergency.hop_channels; the
hop index travels in the beacon so listeners can follow the sequence.
"""

import logging
import threading
import time
from typing import Callable, Optional, Sequence

from .packet.format import BeaconPayload, FrameFlags, FrameType, build_frame


logger = logging.getLogger(__name__)


class EmergencyBeacon:
    """
    Hopping beacon transmitter.

    Usage:
        beacon = EmergencyBeacon(config, node_id, emergency_channels)
        if beacon.is_due():
            beacon.emit()
    """

    def __init__(
        self,
        config,
        node_id: bytes,
        channels: Sequence,
        context=None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._node_id = node_id
        self._channels = list(channels)
        self._context = context
        self._clock = clock

        self._sequence = 0
        self._last_sent: Optional[float] = None
        self._lock = threading.Lock()

        self._beacons_sent = 0
        self._send_errors = 0

    @property
    def sequence(self) -> int:
        return self._sequence

    def is_due(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        if self._last_sent is None:
            return True
        return now - self._last_sent >= self._config.emergency.beacon_interval_s

    def _next_hop(self) -> int:
        hops = self._config.emergency.hop_channels
        return hops[self._sequence % len(hops)]

    def emit(self, message: bytes = b"", now: Optional[float] = None) -> int:
        """
        Send one beacon on the next hop channel.

        Returns:
            Number of drivers that accepted the frame
        """
        now = self._clock() if now is None else now

        with self._lock:
            hop_index = self._next_hop()

            latitude = longitude = altitude = 0.0
            battery = 1.0
            if self._context is not None:
                ctx = self._context.get_context()
                longitude, latitude, altitude = ctx.position
                battery = ctx.battery_level

            payload = BeaconPayload(
                node_id=self._node_id,
                sequence=self._sequence,
                hop_index=hop_index,
                latitude=latitude,
                longitude=longitude,
                altitude=altitude,
                battery_level=battery,
                message=message,
            )
            flags = FrameFlags.URGENT if message else FrameFlags.NONE
            data = build_frame(FrameType.BEACON, payload.to_bytes(), flags=flags, ttl=1).to_bytes()

            accepted = 0
            for channel in self._channels:
                channel.tune(hop_index)
                result = channel.send(data)
                if result.ok:
                    accepted += 1
                else:
                    self._send_errors += 1
                    logger.debug(f"Beacon on {channel.channel_id} hop {hop_index} failed: {result.error}")

            self._sequence = (self._sequence + 1) & 0xFFFF
            self._last_sent = now
            if accepted:
                self._beacons_sent += 1

        return accepted

    def reset(self) -> None:
        """Restart the hop sequence (on leaving EMERGENCY)."""
        with self._lock:
            self._sequence = 0
            self._last_sent = None

    def get_stats(self) -> dict:
        return {
            "sequence": self._sequence,
            "beacons_sent": self._beacons_sent,
            "send_errors": self._send_errors,
            "last_sent": self._last_sent,
        }
