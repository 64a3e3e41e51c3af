"""
AeroLink Envelope Encryption

ECIES-style sealed envelopes: X25519 ephemeral key agreement, HKDF,
ChaCha20-Poly1305.

Envelope format:
    ephemeral_pubkey (32 bytes) || ciphertext || tag (16 bytes)
"""

from typing import Tuple

from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PublicKey
from cryptography.exceptions import InvalidTag

from .primitives import (
    hkdf_derive,
    CHACHA20_KEY_SIZE,
    CHACHA20_NONCE_SIZE,
    POLY1305_TAG_SIZE,
    X25519_KEY_SIZE,
)
from .keys import (
    EphemeralKey,
    IdentityKey,
    KeyError as KeyMaterialError,
    public_key_from_bytes,
)


class EnvelopeError(Exception):
    """Exception raised for envelope encryption/decryption errors."""
    pass


# Domain separation constants for HKDF
ENVELOPE_KEY_INFO = b"aerolink-envelope-key-v1"
ENVELOPE_NONCE_INFO = b"aerolink-envelope-nonce-v1"

# Bytes added to the plaintext by seal_envelope()
ENVELOPE_OVERHEAD = X25519_KEY_SIZE + POLY1305_TAG_SIZE


def _derive_envelope_keys(shared_secret: bytes) -> Tuple[bytes, bytes]:
    """
    Derive encryption key and nonce from an ECDH shared secret.

    The nonce is deterministic because every envelope uses a fresh
    ephemeral key, so a (key, nonce) pair is never reused.
    """
    enc_key = hkdf_derive(
        input_key_material=shared_secret,
        length=CHACHA20_KEY_SIZE,
        info=ENVELOPE_KEY_INFO,
    )
    nonce = hkdf_derive(
        input_key_material=shared_secret,
        length=CHACHA20_NONCE_SIZE,
        info=ENVELOPE_NONCE_INFO,
    )
    return enc_key, nonce


def seal_envelope(
    plaintext: bytes,
    recipient_public: X25519PublicKey,
    associated_data: bytes = b"",
) -> bytes:
    """
    Encrypt plaintext for a recipient.

    Args:
        plaintext: Data to encrypt
        recipient_public: Recipient's X25519 public key
        associated_data: Additional authenticated data

    Returns:
        bytes: Encrypted envelope (32 + len(plaintext) + 16 bytes)
    """
    ephemeral = EphemeralKey()
    shared_secret = ephemeral.exchange(recipient_public)
    enc_key, nonce = _derive_envelope_keys(shared_secret)

    ciphertext = ChaCha20Poly1305(enc_key).encrypt(nonce, plaintext, associated_data)
    return ephemeral.public_bytes + ciphertext


def seal_envelope_for_pubkey_bytes(
    plaintext: bytes,
    recipient_public_bytes: bytes,
    associated_data: bytes = b"",
) -> bytes:
    """Seal an envelope given raw 32-byte X25519 public key bytes."""
    try:
        recipient_public = public_key_from_bytes(recipient_public_bytes)
    except KeyMaterialError as e:
        raise EnvelopeError(f"Invalid recipient key: {e}")
    return seal_envelope(plaintext, recipient_public, associated_data)


def open_envelope(
    envelope: bytes,
    recipient_identity: IdentityKey,
    associated_data: bytes = b"",
) -> bytes:
    """
    Decrypt an envelope using the recipient's private key.

    Raises:
        EnvelopeError: If decryption or authentication fails
    """
    if len(envelope) < ENVELOPE_OVERHEAD:
        raise EnvelopeError(f"Envelope too short: {len(envelope)} bytes")

    ephemeral_pub_bytes = envelope[:X25519_KEY_SIZE]
    ciphertext = envelope[X25519_KEY_SIZE:]

    try:
        ephemeral_public = public_key_from_bytes(ephemeral_pub_bytes)
        shared_secret = recipient_identity.exchange(ephemeral_public)
    except (KeyMaterialError, ValueError) as e:
        raise EnvelopeError(f"Invalid ephemeral public key: {e}")

    enc_key, nonce = _derive_envelope_keys(shared_secret)

    try:
        return ChaCha20Poly1305(enc_key).decrypt(nonce, ciphertext, associated_data)
    except InvalidTag:
        raise EnvelopeError("Decryption failed: invalid tag (tampering or wrong key)")
