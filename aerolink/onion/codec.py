"""
AeroLink Onion Codec

Layered encryption for relay paths. Each relay can remove exactly one
layer and learns only the next hop.

Packet Structure:
    routing_header (fixed 97 bytes) || ciphertext

    routing_header = seal(hop.public_key,
                          layer_type (1) || next_hop_id (16) || layer_key (32))
    ciphertext     = ChaCha20-Poly1305(layer_key, nonce=0, AD=routing_header,
                                       inner_packet | payload)

Each layer key is fresh and used once, so the fixed nonce never
repeats under a key.

Probe layers (proof-of-relay) use the same header and carry a
challenge block ahead of the inner packet:

    plaintext = block_len (2) || block || inner_packet | padding

On the wire a probe is an ordinary onion; only the addressed hop sees
its layer type.

SECURITY NOTES:
- Headers are fixed size; a relay cannot tell its position on the path
- A relay that is not addressed performs a decoy decryption of the
  same size before failing, so failure costs the same as success
- Layer keys live in bytearrays and are zeroed after use
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Sequence

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

from ..crypto.envelope import (
    ENVELOPE_OVERHEAD,
    EnvelopeError,
    open_envelope,
    seal_envelope_for_pubkey_bytes,
)
from ..crypto.keys import IdentityKey
from ..crypto.primitives import (
    CHACHA20_KEY_SIZE,
    CHACHA20_NONCE_SIZE,
    POLY1305_TAG_SIZE,
    random_bytes,
    secure_zero,
)
from .. import NODE_ID_LENGTH


class OnionError(Exception):
    """Exception raised for onion encoding errors."""
    pass


class DecryptionFailed(OnionError):
    """Packet is not addressed to this node (or was tampered with)."""
    pass


class LayerType(IntEnum):
    FORWARD = 1       # Relay layer: pass inner packet to next hop
    DESTINATION = 2   # Final layer: ciphertext holds the payload
    PROBE = 3         # Relay layer carrying a proof-of-relay challenge


# Next-hop marker in a destination layer
DESTINATION = b"\x00" * NODE_ID_LENGTH

_HEADER_PLAIN_FORMAT = f">B{NODE_ID_LENGTH}s{CHACHA20_KEY_SIZE}s"
HEADER_PLAINTEXT_SIZE = struct.calcsize(_HEADER_PLAIN_FORMAT)
ROUTING_HEADER_SIZE = HEADER_PLAINTEXT_SIZE + ENVELOPE_OVERHEAD

LAYER_OVERHEAD = ROUTING_HEADER_SIZE + POLY1305_TAG_SIZE

_PROBE_BLOCK_FORMAT = ">H"
PROBE_LAYER_OVERHEAD = LAYER_OVERHEAD + struct.calcsize(_PROBE_BLOCK_FORMAT)

_LAYER_NONCE = b"\x00" * CHACHA20_NONCE_SIZE
_HEADER_AD = b"aerolink-onion-v1"


@dataclass(frozen=True)
class OnionPacket:
    """One onion layer as handed to a relay."""
    routing_header: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return self.routing_header + self.ciphertext

    @classmethod
    def from_bytes(cls, data: bytes) -> 'OnionPacket':
        if len(data) < ROUTING_HEADER_SIZE + POLY1305_TAG_SIZE:
            raise OnionError(f"Onion packet too short: {len(data)} bytes")
        return cls(
            routing_header=data[:ROUTING_HEADER_SIZE],
            ciphertext=data[ROUTING_HEADER_SIZE:],
        )

    def __len__(self) -> int:
        return len(self.routing_header) + len(self.ciphertext)


@dataclass(frozen=True)
class PeelResult:
    """Result of removing one layer."""
    next_hop: bytes                        # node id, or DESTINATION
    inner: Optional[OnionPacket] = None    # set when forwarding
    payload: Optional[bytes] = None        # set at the destination
    probe: Optional[bytes] = None          # challenge block of a probe layer

    @property
    def is_destination(self) -> bool:
        return self.next_hop == DESTINATION


def _seal_layer(
    layer_type: LayerType,
    next_hop: bytes,
    recipient_public: bytes,
    plaintext: bytes,
) -> OnionPacket:
    layer_key = bytearray(random_bytes(CHACHA20_KEY_SIZE))
    try:
        header = seal_envelope_for_pubkey_bytes(
            struct.pack(_HEADER_PLAIN_FORMAT, layer_type, next_hop, bytes(layer_key)),
            recipient_public,
            _HEADER_AD,
        )
        ciphertext = ChaCha20Poly1305(bytes(layer_key)).encrypt(_LAYER_NONCE, plaintext, header)
    except EnvelopeError as e:
        raise OnionError(f"Cannot seal layer: {e}")
    finally:
        secure_zero(layer_key)

    return OnionPacket(routing_header=header, ciphertext=ciphertext)


def wrap(
    payload: bytes,
    path,
    destination_id: bytes,
    destination_key: bytes,
) -> OnionPacket:
    """
    Build an onion for a relay path.

    Args:
        payload: Data for the destination
        path: RelayPath (or sequence of RelayNode) from first hop to egress
        destination_id: Final recipient's node ID
        destination_key: Final recipient's X25519 public key (32 bytes)

    Returns:
        OnionPacket to hand to the first hop
    """
    hops: Sequence = getattr(path, "nodes", path)

    if len(destination_id) != NODE_ID_LENGTH:
        raise OnionError(f"Invalid destination ID length: {len(destination_id)}")

    packet = _seal_layer(LayerType.DESTINATION, DESTINATION, destination_key, payload)

    next_hop = destination_id
    for node in reversed(hops):
        if node.node_id == next_hop:
            # Egress is the destination itself
            continue
        packet = _seal_layer(LayerType.FORWARD, next_hop, node.public_key, packet.to_bytes())
        next_hop = node.node_id

    return packet


def onion_size(hop_count: int, payload_len: int) -> int:
    """Size of a data onion with hop_count forward layers."""
    return (hop_count + 1) * LAYER_OVERHEAD + payload_len


def _probe_plaintext(block: bytes, rest: bytes) -> bytes:
    return struct.pack(_PROBE_BLOCK_FORMAT, len(block)) + block + rest


def wrap_probe(path, blocks: Sequence[bytes], size: int = 0) -> List[OnionPacket]:
    """
    Build a probe onion, one PROBE layer per hop.

    Hop i's block is sealed inside hop i's layer, so it only exists once
    hop i-1 has peeled and forwarded. The innermost layer is padded so
    the whole packet is at least `size` bytes.

    Args:
        path: RelayPath (or sequence of RelayNode), first hop to egress
        blocks: One challenge block per hop
        size: Target packet size

    Returns:
        Every layer, outermost first; layers[i] is what hop i receives
    """
    hops: Sequence = getattr(path, "nodes", path)
    if not hops:
        raise OnionError("Probe path is empty")
    if len(blocks) != len(hops):
        raise OnionError(f"Expected {len(hops)} probe blocks, got {len(blocks)}")

    overhead = sum(PROBE_LAYER_OVERHEAD + len(block) for block in blocks)
    padding = random_bytes(max(0, size - overhead))

    packet = _seal_layer(
        LayerType.PROBE, DESTINATION, hops[-1].public_key,
        _probe_plaintext(blocks[-1], padding),
    )
    layers = [packet]
    for index in range(len(hops) - 2, -1, -1):
        packet = _seal_layer(
            LayerType.PROBE, hops[index + 1].node_id, hops[index].public_key,
            _probe_plaintext(blocks[index], packet.to_bytes()),
        )
        layers.append(packet)

    layers.reverse()
    return layers


def _decoy_decrypt(packet: OnionPacket) -> None:
    key = bytearray(random_bytes(CHACHA20_KEY_SIZE))
    try:
        ChaCha20Poly1305(bytes(key)).decrypt(_LAYER_NONCE, packet.ciphertext, packet.routing_header)
    except InvalidTag:
        pass
    finally:
        secure_zero(key)


def peel(packet: OnionPacket, identity: IdentityKey) -> PeelResult:
    """
    Remove the layer addressed to this node.

    Raises:
        DecryptionFailed: If the layer is not addressed to this node
    """
    try:
        header = bytearray(open_envelope(packet.routing_header, identity, _HEADER_AD))
    except EnvelopeError:
        _decoy_decrypt(packet)
        raise DecryptionFailed("Onion layer not addressed to this node")

    try:
        layer_type, next_hop, key_bytes = struct.unpack(_HEADER_PLAIN_FORMAT, bytes(header))
        layer_key = bytearray(key_bytes)
    except struct.error:
        raise DecryptionFailed("Malformed routing header")
    finally:
        secure_zero(header)

    try:
        plaintext = ChaCha20Poly1305(bytes(layer_key)).decrypt(
            _LAYER_NONCE, packet.ciphertext, packet.routing_header
        )
    except InvalidTag:
        raise DecryptionFailed("Onion layer failed authentication")
    finally:
        secure_zero(layer_key)

    if layer_type == LayerType.DESTINATION:
        return PeelResult(next_hop=DESTINATION, payload=plaintext)

    probe = None
    if layer_type == LayerType.PROBE:
        probe, plaintext = _split_probe(plaintext)
        if next_hop == DESTINATION:
            return PeelResult(next_hop=DESTINATION, probe=probe)
    elif layer_type != LayerType.FORWARD:
        raise DecryptionFailed(f"Unknown layer type: {layer_type}")

    try:
        inner = OnionPacket.from_bytes(plaintext)
    except OnionError as e:
        raise DecryptionFailed(f"Malformed inner packet: {e}")

    return PeelResult(next_hop=next_hop, inner=inner, probe=probe)


def _split_probe(plaintext: bytes):
    prefix = struct.calcsize(_PROBE_BLOCK_FORMAT)
    if len(plaintext) < prefix:
        raise DecryptionFailed("Probe layer too short")
    (block_len,) = struct.unpack(_PROBE_BLOCK_FORMAT, plaintext[:prefix])
    if len(plaintext) < prefix + block_len:
        raise DecryptionFailed("Probe block truncated")
    return plaintext[prefix:prefix + block_len], plaintext[prefix + block_len:]
