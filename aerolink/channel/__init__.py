"""
AeroLink Channel Abstraction Layer

Provides a unified capability interface for every medium:
- Cellular modem
- Mesh radio
- Satellite terminal
- Emergency radio
- Loopback (testing and simulation)
"""

from .base import (
    ChannelDriver,
    HoppingDriver,
    ChannelKind,
    ChannelError,
    SendResult,
)

from .loopback import (
    LoopbackChannel,
    LoopbackMedium,
    LinkProfile,
)

__all__ = [
    'ChannelDriver',
    'HoppingDriver',
    'ChannelKind',
    'ChannelError',
    'SendResult',
    'LoopbackChannel',
    'LoopbackMedium',
    'LinkProfile',
]
