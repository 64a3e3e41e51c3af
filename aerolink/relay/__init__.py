"""
AeroLink Relay Module

Relay registry, diverse path selection and proof-of-relay.
"""

from .registry import (
    RelayNode,
    RelayRegistry,
    LinkMetrics,
    CAP_RELAY,
    CAP_EGRESS,
)

from .proof import (
    ProbeChallenge,
    ProbeRequest,
    ProbeReply,
    ProbeResult,
    RelayProber,
    RelayCompromised,
    build_probe,
    answer_probe,
    assign_blame,
)

from .paths import (
    RelayPath,
    PathSelection,
    PathHealth,
    RelayEvent,
    RelayEventKind,
    RelayPathManager,
    NoPathAvailable,
    select_diverse,
    score_path,
)

__all__ = [
    'RelayNode',
    'RelayRegistry',
    'LinkMetrics',
    'CAP_RELAY',
    'CAP_EGRESS',
    'ProbeChallenge',
    'ProbeRequest',
    'ProbeReply',
    'ProbeResult',
    'RelayProber',
    'RelayCompromised',
    'build_probe',
    'answer_probe',
    'assign_blame',
    'RelayPath',
    'PathSelection',
    'PathHealth',
    'RelayEvent',
    'RelayEventKind',
    'RelayPathManager',
    'NoPathAvailable',
    'select_diverse',
    'score_path',
]
