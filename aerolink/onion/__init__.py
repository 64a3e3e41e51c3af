"""
AeroLink Onion Module

Layered encryption over relay paths.
"""

from .codec import (
    OnionPacket,
    PeelResult,
    OnionError,
    DecryptionFailed,
    DESTINATION,
    ROUTING_HEADER_SIZE,
    wrap,
    wrap_probe,
    onion_size,
    peel,
)

__all__ = [
    'OnionPacket',
    'PeelResult',
    'OnionError',
    'DecryptionFailed',
    'DESTINATION',
    'ROUTING_HEADER_SIZE',
    'wrap',
    'wrap_probe',
    'onion_size',
    'peel',
]
