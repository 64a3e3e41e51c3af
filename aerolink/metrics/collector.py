"""
AeroLink Channel Metrics Collector

Normalizes link-quality samples from every channel driver into
ChannelObservation records and keeps a bounded sliding window per
channel for trend and prediction use.

Design:
- Observations are immutable once recorded
- History is never rewritten: a sample older than the newest retained
  sample for its channel is rejected
- Readers get copies, never the live window
- Predictions are advisory; the default predictor is a least-squares
  linear extrapolation so the controller works without a real model
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional, Protocol, Sequence, Tuple


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChannelObservation:
    """
    One normalized link-quality sample.

    The optional fields are only reported by drivers that can measure
    them; the threat rules use them when present.
    """
    channel_id: str
    signal_quality: float        # 0.0-1.0
    measured_latency_ms: float
    peer_or_cell_count: int
    error_rate: float            # 0.0-1.0
    timestamp: float

    # Supplemental measurements
    area_id: Optional[str] = None
    encryption_strength: Optional[int] = None       # negotiated key bits
    fingerprint_id: Optional[str] = None            # base station / relay id
    fingerprint_similarity: Optional[float] = None  # vs last known-good, 0.0-1.0

    def __post_init__(self):
        if not 0.0 <= self.signal_quality <= 1.0:
            raise ValueError(f"signal_quality out of range: {self.signal_quality}")
        if not 0.0 <= self.error_rate <= 1.0:
            raise ValueError(f"error_rate out of range: {self.error_rate}")
        if self.measured_latency_ms < 0:
            raise ValueError(f"Negative latency: {self.measured_latency_ms}")
        if self.peer_or_cell_count < 0:
            raise ValueError(f"Negative peer count: {self.peer_or_cell_count}")

    @property
    def has_signal(self) -> bool:
        return self.signal_quality > 0.0


@dataclass(frozen=True)
class Forecast:
    """Advisory extrapolation of a channel's quality."""
    channel_id: str
    horizon_s: float
    signal_quality: float
    latency_ms: float
    error_rate: float
    samples: int

    @property
    def confidence(self) -> float:
        """Crude confidence from sample count (0.0-1.0)."""
        return min(1.0, self.samples / 10.0)


class Predictor(Protocol):
    """Pluggable connectivity predictor."""

    def predict(self, window: Sequence[ChannelObservation], horizon_s: float) -> Forecast:
        ...


def _clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def _linear_fit(points: List[Tuple[float, float]]) -> Tuple[float, float]:
    """Least-squares fit; returns (slope, intercept)."""
    n = len(points)
    mean_x = sum(p[0] for p in points) / n
    mean_y = sum(p[1] for p in points) / n
    var_x = sum((p[0] - mean_x) ** 2 for p in points)
    if var_x == 0:
        return 0.0, mean_y
    cov = sum((p[0] - mean_x) * (p[1] - mean_y) for p in points)
    slope = cov / var_x
    return slope, mean_y - slope * mean_x


class LinearPredictor:
    """
    Deterministic fallback predictor.

    Fits a line through the window and evaluates it at the newest
    sample time plus the horizon.
    """

    def predict(self, window: Sequence[ChannelObservation], horizon_s: float) -> Forecast:
        if not window:
            raise ValueError("Cannot predict from an empty window")

        newest = window[-1]
        if len(window) < 2:
            return Forecast(
                channel_id=newest.channel_id,
                horizon_s=horizon_s,
                signal_quality=newest.signal_quality,
                latency_ms=newest.measured_latency_ms,
                error_rate=newest.error_rate,
                samples=1,
            )

        target = newest.timestamp + horizon_s

        def extrapolate(value_of: Callable[[ChannelObservation], float]) -> float:
            slope, intercept = _linear_fit([(o.timestamp, value_of(o)) for o in window])
            return slope * target + intercept

        return Forecast(
            channel_id=newest.channel_id,
            horizon_s=horizon_s,
            signal_quality=_clamp(extrapolate(lambda o: o.signal_quality)),
            latency_ms=max(0.0, extrapolate(lambda o: o.measured_latency_ms)),
            error_rate=_clamp(extrapolate(lambda o: o.error_rate)),
            samples=len(window),
        )


class MetricsCollector:
    """
    Per-channel sliding window of observations.

    Usage:
        collector = MetricsCollector(config)
        collector.record(driver.get_observation())

        window = collector.snapshot("cell0")
        forecast = collector.predict("cell0", horizon_s=30)
    """

    def __init__(
        self,
        config,
        predictor: Optional[Predictor] = None,
    ):
        """
        Args:
            config: Shared Config (reads config.metrics.window_s on every record)
            predictor: Optional predictor; LinearPredictor if omitted
        """
        self._config = config
        self._predictor = predictor or LinearPredictor()
        self._windows: Dict[str, Deque[ChannelObservation]] = {}
        self._lock = threading.RLock()

        self._accepted = 0
        self._rejected = 0

    def record(self, observation: ChannelObservation) -> bool:
        """
        Record one observation.

        Returns:
            True if accepted, False if rejected as out of order
        """
        with self._lock:
            window = self._windows.setdefault(observation.channel_id, deque())

            if window and observation.timestamp < window[-1].timestamp:
                self._rejected += 1
                logger.warning(
                    f"Rejected out-of-order sample for {observation.channel_id}: "
                    f"{observation.timestamp:.3f} < {window[-1].timestamp:.3f}"
                )
                return False

            window.append(observation)
            self._accepted += 1

            cutoff = observation.timestamp - self._config.metrics.window_s
            while window and window[0].timestamp < cutoff:
                window.popleft()

            return True

    def snapshot(self, channel_id: str) -> Tuple[ChannelObservation, ...]:
        """Read-only copy of the retained window for a channel."""
        with self._lock:
            return tuple(self._windows.get(channel_id, ()))

    def latest(self, channel_id: str) -> Optional[ChannelObservation]:
        """Newest retained observation for a channel."""
        with self._lock:
            window = self._windows.get(channel_id)
            return window[-1] if window else None

    def channels(self) -> List[str]:
        """Channel IDs with at least one retained observation."""
        with self._lock:
            return [cid for cid, window in self._windows.items() if window]

    def predict(self, channel_id: str, horizon_s: float) -> Optional[Forecast]:
        """
        Extrapolate a channel's quality horizon_s seconds ahead.

        Returns None when nothing is retained for the channel. A failing
        predictor falls back to the linear extrapolation.
        """
        window = self.snapshot(channel_id)
        if not window:
            return None

        try:
            return self._predictor.predict(window, horizon_s)
        except Exception as e:
            if isinstance(self._predictor, LinearPredictor):
                raise
            logger.warning(f"Predictor failed for {channel_id}, using linear fallback: {e}")
            return LinearPredictor().predict(window, horizon_s)

    def get_stats(self) -> dict:
        """Get collector statistics."""
        with self._lock:
            return {
                "channels": len(self._windows),
                "retained": sum(len(w) for w in self._windows.values()),
                "accepted": self._accepted,
                "rejected": self._rejected,
            }
