"""
AeroLink Mode Module

Communication mode state machine and per-mode session credentials.
"""

from .controller import (
    Mode,
    Phase,
    ModeState,
    ModeController,
    TransitionOutcome,
    TransitionRecord,
    StabilizationFailed,
    ModeTransitioning,
    MODE_CHANNEL_KINDS,
    RELAY_MODES,
    SECURITY_ORDER,
)
from .keyring import (
    AuthenticationFailed,
    ModeKeyring,
    SessionCredential,
    observation_authenticator,
)

__all__ = [
    'Mode',
    'Phase',
    'ModeState',
    'ModeController',
    'TransitionOutcome',
    'TransitionRecord',
    'StabilizationFailed',
    'ModeTransitioning',
    'MODE_CHANNEL_KINDS',
    'RELAY_MODES',
    'SECURITY_ORDER',
    'AuthenticationFailed',
    'ModeKeyring',
    'SessionCredential',
    'observation_authenticator',
]
