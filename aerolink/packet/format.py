"""
AeroLink Frame Wire Format

Defines the structure of frames handed to channel drivers.

Frame Structure:
    Header (fixed size) + Payload (variable)

Header Format (10 bytes):
    version     (1 byte)  - Protocol version
    type        (1 byte)  - Frame type
    flags       (1 byte)  - Frame flags
    hop_count   (1 byte)  - Number of relay hops traversed
    ttl         (1 byte)  - Time-to-live (max remaining hops)
    payload_len (2 bytes) - Payload length (big-endian)
    checksum    (2 bytes) - CRC-16 of header fields
    reserved    (1 byte)  - Reserved for future use

Payloads:
    ONION        OnionPacket bytes (see onion.codec); proof-of-relay probes
                 travel as ONION frames too
    DIRECT       MessagePayload (cellular/satellite, already channel-encrypted)
    BEACON       BeaconPayload, cleartext by design (EMERGENCY mode)
    PROBE_REPLY  ProbeReply (see relay.proof)
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .. import PROTOCOL_VERSION


# Maximum frame size (2-byte length field)
HEADER_SIZE = 10
MAX_PAYLOAD_SIZE = 0xFFFF
MAX_FRAME_SIZE = HEADER_SIZE + MAX_PAYLOAD_SIZE

DEFAULT_TTL = 16


class FrameType(IntEnum):
    """Frame type identifiers."""
    # Data frames
    ONION = 0x01          # Onion-routed message
    DIRECT = 0x02         # Direct (non-relay) message

    # Emergency
    BEACON = 0x10         # Cleartext emergency beacon

    # Proof-of-relay
    PROBE_REPLY = 0x31    # Relay attestation


class FrameFlags(IntEnum):
    """Frame flag bits."""
    NONE = 0x00
    URGENT = 0x01         # EMERGENCY/CRITICAL priority
    DUPLICATE = 0x02      # Copy sent on the second channel set during overlap
    SEALED = 0x04         # DIRECT payload sealed to the destination


def _crc16(data: bytes) -> int:
    """
    Compute CRC-16-CCITT checksum.

    Uses polynomial 0x1021 (CRC-16-CCITT).
    """
    crc = 0xFFFF
    for byte in data:
        crc ^= byte << 8
        for _ in range(8):
            if crc & 0x8000:
                crc = (crc << 1) ^ 0x1021
            else:
                crc <<= 1
            crc &= 0xFFFF
    return crc


@dataclass
class FrameHeader:
    """Fixed 10-byte header preceding all frames."""
    version: int
    frame_type: FrameType
    flags: int
    hop_count: int
    ttl: int
    payload_len: int
    reserved: int = 0

    def to_bytes(self) -> bytes:
        """Serialize header to bytes (checksum computed here)."""
        header_data = struct.pack(
            ">BBBBBHB",
            self.version,
            self.frame_type,
            self.flags,
            self.hop_count,
            self.ttl,
            self.payload_len,
            self.reserved,
        )
        checksum = _crc16(header_data)

        # Checksum sits at bytes 7-8
        return header_data[:7] + struct.pack(">H", checksum) + header_data[7:]

    @classmethod
    def from_bytes(cls, data: bytes) -> 'FrameHeader':
        """
        Parse header from bytes.

        Raises:
            ValueError: On short data, bad checksum or unknown type
        """
        if len(data) < HEADER_SIZE:
            raise ValueError(f"Header too short: {len(data)} < {HEADER_SIZE}")

        (version, frame_type, flags, hop_count, ttl,
         payload_len, checksum, reserved) = struct.unpack(
            ">BBBBBHHB",
            data[:HEADER_SIZE]
        )

        expected_crc = _crc16(data[:7] + data[9:10])
        if checksum != expected_crc:
            raise ValueError(f"Header checksum mismatch: {checksum:#06x} != {expected_crc:#06x}")

        if version != PROTOCOL_VERSION:
            raise ValueError(f"Unsupported protocol version: {version}")

        return cls(
            version=version,
            frame_type=FrameType(frame_type),
            flags=flags,
            hop_count=hop_count,
            ttl=ttl,
            payload_len=payload_len,
            reserved=reserved,
        )


@dataclass
class Frame:
    """Complete frame with header and payload."""
    header: FrameHeader
    payload: bytes

    # Reception metadata
    channel_id: Optional[str] = None
    received_at: Optional[float] = None

    @property
    def frame_type(self) -> FrameType:
        return self.header.frame_type

    @property
    def is_urgent(self) -> bool:
        return bool(self.header.flags & FrameFlags.URGENT)

    def to_bytes(self) -> bytes:
        return self.header.to_bytes() + self.payload

    @classmethod
    def from_bytes(
        cls,
        data: bytes,
        channel_id: Optional[str] = None,
        received_at: Optional[float] = None,
    ) -> 'Frame':
        """Parse frame from bytes."""
        header = FrameHeader.from_bytes(data)

        expected_size = HEADER_SIZE + header.payload_len
        if len(data) < expected_size:
            raise ValueError(f"Frame truncated: {len(data)} < {expected_size}")

        return cls(
            header=header,
            payload=data[HEADER_SIZE:expected_size],
            channel_id=channel_id,
            received_at=received_at,
        )

    def forwarded(self, payload: bytes) -> 'Frame':
        """
        Create the next-hop frame carrying a new payload.

        Raises:
            ValueError: If TTL would reach 0
        """
        if self.header.ttl <= 1:
            raise ValueError("Cannot forward: TTL expired")

        return build_frame(
            self.header.frame_type,
            payload,
            flags=self.header.flags,
            ttl=self.header.ttl - 1,
            hop_count=self.header.hop_count + 1,
        )


def build_frame(
    frame_type: FrameType,
    payload: bytes,
    flags: int = FrameFlags.NONE,
    ttl: int = DEFAULT_TTL,
    hop_count: int = 0,
) -> Frame:
    """
    Build a new frame.

    Raises:
        ValueError: If payload too large
    """
    if len(payload) > MAX_PAYLOAD_SIZE:
        raise ValueError(f"Payload too large: {len(payload)} > {MAX_PAYLOAD_SIZE}")

    header = FrameHeader(
        version=PROTOCOL_VERSION,
        frame_type=frame_type,
        flags=flags,
        hop_count=hop_count,
        ttl=ttl,
        payload_len=len(payload),
    )
    return Frame(header=header, payload=payload)


def parse_frame(
    data: bytes,
    channel_id: Optional[str] = None,
    received_at: Optional[float] = None,
) -> Frame:
    """
    Parse a frame from wire format.

    Raises:
        ValueError: If frame is invalid
    """
    return Frame.from_bytes(data, channel_id, received_at)


@dataclass
class MessagePayload:
    """
    Application message as seen by the destination.

    Carried inside the innermost onion layer, inside DIRECT frames and
    inside emergency beacons.
    """
    message_id: bytes      # 16 bytes
    sender_id: bytes       # 16 bytes
    destination_id: bytes  # 16 bytes (all zero for broadcast)
    priority: int          # 1 byte
    body: bytes

    _FORMAT = ">16s16s16sB"
    _FIXED = struct.calcsize(_FORMAT)

    def to_bytes(self) -> bytes:
        return struct.pack(
            self._FORMAT,
            self.message_id,
            self.sender_id,
            self.destination_id,
            self.priority,
        ) + self.body

    @classmethod
    def from_bytes(cls, data: bytes) -> 'MessagePayload':
        if len(data) < cls._FIXED:
            raise ValueError(f"Message payload too short: {len(data)}")

        message_id, sender_id, destination_id, priority = struct.unpack(
            cls._FORMAT, data[:cls._FIXED]
        )
        return cls(
            message_id=message_id,
            sender_id=sender_id,
            destination_id=destination_id,
            priority=priority,
            body=data[cls._FIXED:],
        )


@dataclass
class BeaconPayload:
    """
    Emergency beacon payload.

    Sent in the clear so any listener can locate the node.
    """
    node_id: bytes        # 16 bytes
    sequence: int         # 2 bytes (rolling counter)
    hop_index: int        # 1 byte
    latitude: float       # 4 bytes
    longitude: float      # 4 bytes
    altitude: float       # 4 bytes
    battery_level: float  # 4 bytes
    message: bytes = b""  # Optional MessagePayload bytes

    _FORMAT = ">16sHBffff"
    _FIXED = struct.calcsize(_FORMAT)

    def to_bytes(self) -> bytes:
        return struct.pack(
            self._FORMAT,
            self.node_id,
            self.sequence & 0xFFFF,
            self.hop_index,
            self.latitude,
            self.longitude,
            self.altitude,
            self.battery_level,
        ) + self.message

    @classmethod
    def from_bytes(cls, data: bytes) -> 'BeaconPayload':
        if len(data) < cls._FIXED:
            raise ValueError(f"Beacon payload too short: {len(data)}")

        node_id, sequence, hop_index, lat, lon, alt, battery = struct.unpack(
            cls._FORMAT, data[:cls._FIXED]
        )
        return cls(
            node_id=node_id,
            sequence=sequence,
            hop_index=hop_index,
            latitude=lat,
            longitude=lon,
            altitude=alt,
            battery_level=battery,
            message=data[cls._FIXED:],
        )
