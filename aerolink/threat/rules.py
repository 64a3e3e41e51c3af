"""
AeroLink Threat Rules

Each rule inspects one input and yields zero or one ThreatEvent.
Rules hold no state between evaluations; anything they compare
against (expected density, last good session strength) is passed in.

Rules:
- DensityRule:      impossible base-station/peer density (IMSI catcher)
- DowngradeRule:    negotiated encryption weaker than last good session
- TimingRule:       path latency far above its expected value
- FingerprintRule:  base-station/relay fingerprint drifted from known-good
"""

import itertools
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Sequence

from ..metrics.collector import ChannelObservation


class Severity(IntEnum):
    """Threat severity; ordering is precedence."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4


class ThreatKind(Enum):
    """Kinds of detected threats."""
    IMSI_CATCHER_SUSPECTED = "imsi_catcher_suspected"
    PROTOCOL_DOWNGRADE = "protocol_downgrade"
    TRAFFIC_ANALYSIS_OR_TAMPERING = "traffic_analysis_or_tampering"
    SPOOFING_SUSPECTED = "spoofing_suspected"


_sequence = itertools.count(1)


@dataclass(frozen=True)
class ThreatEvent:
    """
    Immutable record of one detected threat.

    affected names a channel ID, a relay node ID (hex) or a path ID,
    depending on the rule.
    """
    kind: ThreatKind
    severity: Severity
    affected: str
    timestamp: float
    evidence: Mapping[str, Any] = field(default_factory=dict)
    rule: str = ""
    sequence: int = field(default_factory=lambda: next(_sequence))

    def __post_init__(self):
        object.__setattr__(self, "evidence", MappingProxyType(dict(self.evidence)))

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "severity": self.severity.name,
            "affected": self.affected,
            "timestamp": self.timestamp,
            "evidence": dict(self.evidence),
            "rule": self.rule,
            "sequence": self.sequence,
        }


class ThreatRule:
    """Base class for rules."""

    name = "rule"
    kind: ThreatKind
    severity: Severity

    def _event(self, affected: str, timestamp: float, **evidence) -> ThreatEvent:
        return ThreatEvent(
            kind=self.kind,
            severity=self.severity,
            affected=affected,
            timestamp=timestamp,
            evidence=evidence,
            rule=self.name,
        )


class DensityRule(ThreatRule):
    """More cells/peers visible than the area can plausibly have."""

    name = "impossible_density"
    kind = ThreatKind.IMSI_CATCHER_SUSPECTED
    severity = Severity.HIGH

    def evaluate(
        self,
        observation: ChannelObservation,
        expected_density: float,
        multiplier: float,
    ) -> Optional[ThreatEvent]:
        limit = expected_density * multiplier
        if observation.peer_or_cell_count <= limit:
            return None

        return self._event(
            observation.channel_id,
            observation.timestamp,
            observed=observation.peer_or_cell_count,
            expected=expected_density,
            limit=limit,
            area_id=observation.area_id,
        )


class DowngradeRule(ThreatRule):
    """Encryption strength dropped relative to the last good session."""

    name = "protocol_downgrade"
    kind = ThreatKind.PROTOCOL_DOWNGRADE
    severity = Severity.CRITICAL

    def evaluate(
        self,
        observation: ChannelObservation,
        last_good_strength: Optional[int],
    ) -> Optional[ThreatEvent]:
        strength = observation.encryption_strength
        if strength is None or last_good_strength is None:
            return None
        if strength >= last_good_strength:
            return None

        return self._event(
            observation.channel_id,
            observation.timestamp,
            negotiated=strength,
            last_good=last_good_strength,
        )


class TimingRule(ThreatRule):
    """Measured path latency far above the path's expected latency."""

    name = "timing_anomaly"
    kind = ThreatKind.TRAFFIC_ANALYSIS_OR_TAMPERING
    severity = Severity.MEDIUM

    def evaluate(
        self,
        path_id: str,
        measured_ms: float,
        expected_ms: float,
        multiplier: float,
        timestamp: float,
        node_ids: Sequence[str] = (),
    ) -> Optional[ThreatEvent]:
        if expected_ms <= 0 or measured_ms <= expected_ms * multiplier:
            return None

        return self._event(
            path_id,
            timestamp,
            measured_ms=measured_ms,
            expected_ms=expected_ms,
            ratio=measured_ms / expected_ms,
            nodes=tuple(node_ids),
        )


class FingerprintRule(ThreatRule):
    """
    Cryptographic/RF fingerprint no longer matches the known-good one.

    Drivers that compare fingerprints themselves report a similarity.
    Otherwise the observed fingerprint id is compared with the one seen
    on the last successful session: same id scores 1.0, a different id
    scores 0.0.
    """

    name = "fingerprint_mismatch"
    kind = ThreatKind.SPOOFING_SUSPECTED
    severity = Severity.HIGH

    def evaluate(
        self,
        observation: ChannelObservation,
        threshold: float,
        known_good: Optional[str] = None,
    ) -> Optional[ThreatEvent]:
        similarity = observation.fingerprint_similarity
        if similarity is None:
            if known_good is None or observation.fingerprint_id is None:
                return None
            similarity = 1.0 if observation.fingerprint_id == known_good else 0.0
        if similarity >= threshold:
            return None

        return self._event(
            observation.channel_id,
            observation.timestamp,
            similarity=similarity,
            threshold=threshold,
            fingerprint_id=observation.fingerprint_id,
            known_good=known_good,
        )
