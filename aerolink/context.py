"""
AeroLink Flight/Mission Context

Read-only view of the airframe used by the mode forecast and the
EMERGENCY entry policy. The flight controller integration supplies a
FlightContextProvider; StaticFlightContext is used by tests and the
simulator.

Positions are local east/north/up metres.
"""

import math
import threading
import time
from dataclasses import dataclass, field, replace
from typing import List, Optional, Protocol, Tuple


Vector = Tuple[float, float, float]


@dataclass(frozen=True)
class FlightContext:
    """Snapshot of position, motion and mission state."""
    position: Vector = (0.0, 0.0, 0.0)
    velocity: Vector = (0.0, 0.0, 0.0)     # m/s
    mission_criticality: float = 0.5       # 0.0-1.0
    battery_level: float = 1.0             # 0.0-1.0
    emergency_requested: bool = False
    timestamp: float = field(default_factory=time.time)

    def extrapolate(self, seconds: float) -> Vector:
        """Position after flying the current velocity for seconds."""
        return tuple(p + v * seconds for p, v in zip(self.position, self.velocity))


class FlightContextProvider(Protocol):

    def get_context(self) -> FlightContext:
        ...


class StaticFlightContext:
    """
    Provider holding a settable context.

    Usage:
        provider = StaticFlightContext()
        provider.update(battery_level=0.05)
    """

    def __init__(self, context: Optional[FlightContext] = None):
        self._context = context or FlightContext()
        self._lock = threading.Lock()

    def get_context(self) -> FlightContext:
        with self._lock:
            return self._context

    def update(self, **changes) -> FlightContext:
        with self._lock:
            self._context = replace(self._context, **changes)
            return self._context


class CoverageModel(Protocol):
    """
    Expected link quality for a mode at a position.

    Returns None where the model has no opinion.
    """

    def coverage(self, mode_name: str, position: Vector) -> Optional[float]:
        ...


@dataclass(frozen=True)
class CoverageZone:
    """Circular (horizontal) zone where a mode is known to work."""
    mode_name: str
    center: Vector
    radius_m: float
    quality: float = 1.0

    def contains(self, position: Vector) -> bool:
        dx = position[0] - self.center[0]
        dy = position[1] - self.center[1]
        return math.hypot(dx, dy) <= self.radius_m


class ZoneCoverageModel:
    """
    Coverage from a list of known zones.

    A mode with at least one zone is expected to have no coverage
    outside its zones; a mode with no zones is unknown.
    """

    def __init__(self, zones: Optional[List[CoverageZone]] = None):
        self._zones = list(zones or [])

    def add_zone(self, zone: CoverageZone) -> None:
        self._zones.append(zone)

    def coverage(self, mode_name: str, position: Vector) -> Optional[float]:
        zones = [z for z in self._zones if z.mode_name == mode_name]
        if not zones:
            return None
        return max((z.quality for z in zones if z.contains(position)), default=0.0)
