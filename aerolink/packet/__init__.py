"""
AeroLink Packet Module

Frame wire format and duplicate suppression.
"""

from .format import (
    Frame,
    FrameHeader,
    FrameType,
    FrameFlags,
    MessagePayload,
    BeaconPayload,
    build_frame,
    parse_frame,
    HEADER_SIZE,
    MAX_PAYLOAD_SIZE,
)

from .dedup import DeduplicationCache

__all__ = [
    'Frame',
    'FrameHeader',
    'FrameType',
    'FrameFlags',
    'MessagePayload',
    'BeaconPayload',
    'build_frame',
    'parse_frame',
    'HEADER_SIZE',
    'MAX_PAYLOAD_SIZE',
    'DeduplicationCache',
]
