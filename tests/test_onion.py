"""
Unit tests for onion.codec and the sealed envelope it builds on.

Tests:
- Layer-by-layer peel along a path
- Relays learn only the next hop
- Non-addressed nodes fail with DecryptionFailed
- Tamper detection
"""

import pytest

from aerolink.crypto.envelope import EnvelopeError, open_envelope, seal_envelope
from aerolink.crypto.keys import generate_identity
from aerolink.onion.codec import (
    DESTINATION,
    ROUTING_HEADER_SIZE,
    DecryptionFailed,
    OnionError,
    OnionPacket,
    peel,
    wrap,
)

from conftest import make_relay


BODY = b"waypoint 7 reached; holding at 120m"


@pytest.fixture
def route():
    """Two relays, then an egress that is also the destination."""
    return [make_relay(), make_relay(), make_relay(egress=True)]


def walk(packet: OnionPacket, route):
    """Peel the packet hop by hop; returns (next hops seen, final payload)."""
    seen = []
    for identity, _ in route:
        result = peel(OnionPacket.from_bytes(packet.to_bytes()), identity)
        if result.is_destination:
            return seen, result.payload
        seen.append(result.next_hop)
        packet = result.inner
    raise AssertionError("onion never reached its destination")


# ============================================================================
# Envelope Tests
# ============================================================================


class TestEnvelope:
    """Tests for sealed envelopes."""

    def test_open_with_recipient_key(self) -> None:
        """Test the recipient opens what was sealed to it."""
        recipient = generate_identity()
        sealed = seal_envelope(BODY, recipient.public_key, b"ad")
        assert open_envelope(sealed, recipient, b"ad") == BODY

    def test_wrong_key(self) -> None:
        """Test another identity cannot open the envelope."""
        sealed = seal_envelope(BODY, generate_identity().public_key)
        with pytest.raises(EnvelopeError):
            open_envelope(sealed, generate_identity())

    def test_wrong_associated_data(self) -> None:
        """Test associated data is authenticated."""
        recipient = generate_identity()
        sealed = seal_envelope(BODY, recipient.public_key, b"one")
        with pytest.raises(EnvelopeError):
            open_envelope(sealed, recipient, b"two")


# ============================================================================
# Onion Tests
# ============================================================================


class TestOnion:
    """Tests for wrap and peel."""

    def test_path_delivers_payload(self, route) -> None:
        """Test every hop peels one layer and the destination gets the payload."""
        destination, dest_node = route[-1]
        packet = wrap(BODY, [node for _, node in route], destination.node_id, dest_node.public_key)

        seen, payload = walk(packet, route)

        assert payload == BODY
        assert seen == [route[1][0].node_id, destination.node_id]

    def test_relay_learns_only_next_hop(self, route) -> None:
        """Test a relay's peel yields the next hop and an opaque inner packet."""
        destination, dest_node = route[-1]
        packet = wrap(BODY, [node for _, node in route], destination.node_id, dest_node.public_key)

        result = peel(packet, route[0][0])

        assert not result.is_destination
        assert result.payload is None
        assert result.next_hop == route[1][0].node_id
        assert BODY not in result.inner.to_bytes()
        assert destination.node_id not in result.inner.to_bytes()

    def test_separate_destination(self, route) -> None:
        """Test a destination behind the egress gets its own final layer."""
        final = generate_identity()
        packet = wrap(BODY, [node for _, node in route], final.node_id, final.public_bytes)

        seen, _ = walk(packet, route + [(final, None)])
        assert seen[-1] == final.node_id

    def test_not_addressed(self, route) -> None:
        """Test a node that is not the next hop fails with DecryptionFailed."""
        destination, dest_node = route[-1]
        packet = wrap(BODY, [node for _, node in route], destination.node_id, dest_node.public_key)

        with pytest.raises(DecryptionFailed):
            peel(packet, route[1][0])
        with pytest.raises(DecryptionFailed):
            peel(packet, generate_identity())

    def test_tampered_ciphertext(self, route) -> None:
        """Test a flipped ciphertext bit fails authentication."""
        destination, dest_node = route[-1]
        packet = wrap(BODY, [node for _, node in route], destination.node_id, dest_node.public_key)
        data = bytearray(packet.to_bytes())
        data[-1] ^= 0x01

        with pytest.raises(DecryptionFailed):
            peel(OnionPacket.from_bytes(bytes(data)), route[0][0])

    def test_header_size_fixed(self, route) -> None:
        """Test the routing header does not reveal the hop position."""
        destination, dest_node = route[-1]
        packet = wrap(BODY, [node for _, node in route], destination.node_id, dest_node.public_key)
        inner = peel(packet, route[0][0]).inner

        assert len(packet.routing_header) == ROUTING_HEADER_SIZE
        assert len(inner.routing_header) == ROUTING_HEADER_SIZE

    def test_direct_to_destination(self) -> None:
        """Test an empty path produces only the destination layer."""
        destination = generate_identity()
        packet = wrap(BODY, [], destination.node_id, destination.public_bytes)

        result = peel(packet, destination)
        assert result.is_destination
        assert result.next_hop == DESTINATION
        assert result.payload == BODY

    def test_short_packet(self) -> None:
        """Test truncated packets are rejected."""
        with pytest.raises(OnionError):
            OnionPacket.from_bytes(b"\x00" * 20)

    def test_invalid_destination_id(self, route) -> None:
        """Test malformed destination IDs are rejected."""
        with pytest.raises(OnionError):
            wrap(BODY, [], b"short", route[0][1].public_key)
