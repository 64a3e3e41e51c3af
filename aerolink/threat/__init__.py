"""
AeroLink Threat Module

Rule-based detection of network-level attacks and relay misbehaviour.
"""

from .rules import (
    Severity,
    ThreatKind,
    ThreatEvent,
    DensityRule,
    DowngradeRule,
    TimingRule,
    FingerprintRule,
)

from .detector import ThreatDetector

__all__ = [
    'Severity',
    'ThreatKind',
    'ThreatEvent',
    'DensityRule',
    'DowngradeRule',
    'TimingRule',
    'FingerprintRule',
    'ThreatDetector',
]
