"""
AeroLink Threat Detector

Runs the anomaly rules over channel observations and relay telemetry
and pushes the resulting ThreatEvents down a one-way pipeline.

Dispatch:
- Severities with a zero entry in the response-latency table
  (HIGH and CRITICAL by default) are delivered to subscribers as soon
  as they are generated
- Other severities are held and released by flush() once their
  allowed latency has elapsed, oldest first
- Events from one rule are always delivered in generation order

Subscribers never call back into the detector.
"""

import logging
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from ..metrics.collector import ChannelObservation
from .rules import (
    DensityRule,
    DowngradeRule,
    FingerprintRule,
    Severity,
    ThreatEvent,
    TimingRule,
)


logger = logging.getLogger(__name__)

# Event log retention
MAX_LOGGED_EVENTS = 10000

ThreatCallback = Callable[[ThreatEvent], None]


class ThreatDetector:
    """
    Rule-based threat detector.

    Usage:
        detector = ThreatDetector(config)
        detector.subscribe(link.on_threat)

        detector.observe(observation)
        detector.observe_path_latency(path.path_id, rtt_ms, path.latency_estimate_ms)
        detector.flush()
    """

    def __init__(
        self,
        config,
        clock: Callable[[], float] = time.time,
        store=None,
    ):
        """
        Args:
            config: Shared Config (reads config.threat on every evaluation)
            clock: Time source
            store: Optional StateStore for last good session strengths
                and known-good fingerprints
        """
        self._config = config
        self._clock = clock
        self._store = store

        self._density = DensityRule()
        self._downgrade = DowngradeRule()
        self._timing = TimingRule()
        self._fingerprint = FingerprintRule()

        # channel_id -> negotiated strength of the last successful session
        self._session_strength: Dict[str, int] = (
            store.load_session_strengths() if store is not None else {}
        )
        # channel_id -> fingerprint id seen on the last successful session
        self._known_fingerprint: Dict[str, str] = (
            store.load_known_fingerprints() if store is not None else {}
        )
        # channel_id -> (latest fingerprint id, matched the known-good one)
        self._last_fingerprint: Dict[str, Tuple[str, bool]] = {}

        self._log: Deque[ThreatEvent] = deque(maxlen=MAX_LOGGED_EVENTS)
        self._pending: List[ThreatEvent] = []
        self._subscribers: List[ThreatCallback] = []
        self._lock = threading.RLock()

        self._counts: Dict[str, int] = {s.name: 0 for s in Severity}

    def subscribe(self, callback: ThreatCallback) -> None:
        """Register an event consumer."""
        with self._lock:
            self._subscribers.append(callback)

    def record_session(self, channel_id: str, strength: int) -> None:
        """
        Remember the negotiated strength of a successful session.

        The fingerprint last observed on the channel becomes its
        known-good fingerprint, unless that observation was flagged.
        """
        with self._lock:
            self._session_strength[channel_id] = strength
            latest = self._last_fingerprint.get(channel_id)
        if self._store is not None:
            self._store.record_session_strength(channel_id, strength, self._clock())
        if latest is not None and latest[1]:
            self.mark_fingerprint_known_good(channel_id, latest[0])

    def mark_fingerprint_known_good(self, channel_id: str, fingerprint_id: str) -> None:
        with self._lock:
            if self._known_fingerprint.get(channel_id) == fingerprint_id:
                return
            self._known_fingerprint[channel_id] = fingerprint_id
        logger.info(f"Known-good fingerprint for {channel_id} is now {fingerprint_id}")
        if self._store is not None:
            self._store.record_known_fingerprint(channel_id, fingerprint_id, self._clock())

    def known_fingerprint(self, channel_id: str) -> Optional[str]:
        with self._lock:
            return self._known_fingerprint.get(channel_id)

    def last_session_strength(self, channel_id: str) -> Optional[int]:
        with self._lock:
            return self._session_strength.get(channel_id)

    def observe(self, observation: ChannelObservation) -> List[ThreatEvent]:
        """
        Run the channel rules over one observation.

        Returns:
            Events generated (already queued or delivered)
        """
        cfg = self._config.threat
        candidates = [
            self._density.evaluate(
                observation,
                cfg.expected_density(observation.area_id),
                cfg.density_multiplier,
            ),
            self._downgrade.evaluate(
                observation,
                self.last_session_strength(observation.channel_id),
            ),
        ]
        spoofing = self._fingerprint.evaluate(
            observation,
            cfg.fingerprint_threshold,
            self.known_fingerprint(observation.channel_id),
        )
        candidates.append(spoofing)

        if observation.fingerprint_id is not None:
            with self._lock:
                self._last_fingerprint[observation.channel_id] = (
                    observation.fingerprint_id,
                    spoofing is None,
                )

        events = [e for e in candidates if e is not None]
        for event in events:
            self._emit(event)
        return events

    def observe_path_latency(
        self,
        path_id: str,
        measured_ms: float,
        expected_ms: float,
        node_ids: Sequence[str] = (),
    ) -> Optional[ThreatEvent]:
        """Run the timing rule over one path latency measurement."""
        event = self._timing.evaluate(
            path_id,
            measured_ms,
            expected_ms,
            self._config.threat.timing_multiplier,
            self._clock(),
            node_ids,
        )
        if event is not None:
            self._emit(event)
        return event

    def _response_latency(self, severity: Severity) -> float:
        return float(self._config.threat.response_latency_s.get(severity.name, 0.0))

    def _emit(self, event: ThreatEvent) -> None:
        logger.warning(
            f"Threat {event.kind.value} [{event.severity.name}] on {event.affected}"
        )
        with self._lock:
            self._log.append(event)
            self._counts[event.severity.name] += 1

            if self._response_latency(event.severity) > 0:
                self._pending.append(event)
                return

        self._deliver([event])

    def flush(self, now: Optional[float] = None, force: bool = False) -> int:
        """
        Release held events whose allowed latency has elapsed.

        Args:
            now: Current time (defaults to the detector clock)
            force: Release everything regardless of age

        Returns:
            Number of events delivered
        """
        now = self._clock() if now is None else now

        with self._lock:
            due = [
                e for e in self._pending
                if force or now - e.timestamp >= self._response_latency(e.severity)
            ]
            if not due:
                return 0
            self._pending = [e for e in self._pending if e not in due]

        due.sort(key=lambda e: e.sequence)
        self._deliver(due)
        return len(due)

    def _deliver(self, events: List[ThreatEvent]) -> None:
        with self._lock:
            subscribers = list(self._subscribers)

        for event in events:
            for callback in subscribers:
                try:
                    callback(event)
                except Exception:
                    logger.exception(f"Threat subscriber failed on {event.kind.value}")

    def events(self, since_sequence: int = 0) -> List[ThreatEvent]:
        """Read the event log (oldest first)."""
        with self._lock:
            return [e for e in self._log if e.sequence > since_sequence]

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "logged": len(self._log),
                "pending": len(self._pending),
                "by_severity": dict(self._counts),
            }
