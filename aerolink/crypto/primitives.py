"""
AeroLink Cryptographic Primitives

Low-level cryptographic functions wrapping the cryptography library.

SECURITY NOTES:
- All randomness from os.urandom (kernel CSPRNG)
- All comparisons use constant-time operations
- Key buffers are zeroed after use where Python allows it
"""

import os
import hmac
from typing import Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


# Encryption constants
CHACHA20_KEY_SIZE = 32  # bytes
CHACHA20_NONCE_SIZE = 12  # bytes
POLY1305_TAG_SIZE = 16  # bytes
X25519_KEY_SIZE = 32  # bytes


def random_bytes(length: int) -> bytes:
    """
    Generate cryptographically secure random bytes.

    Args:
        length: Number of random bytes to generate

    Returns:
        bytes: Cryptographically secure random bytes

    Raises:
        ValueError: If length is negative
    """
    if length < 0:
        raise ValueError("Length must be non-negative")
    return os.urandom(length)


def blake2b_hash(
    data: bytes,
    digest_size: int = 32,
    key: Optional[bytes] = None,
    person: Optional[bytes] = None,
) -> bytes:
    """
    Compute BLAKE2b hash of data.

    Args:
        data: Data to hash
        digest_size: Output hash size in bytes (1-64, default 32)
        key: Optional key, prepended padded to the block size (MAC mode)
        person: Optional personalization string (up to 16 bytes)

    Returns:
        bytes: BLAKE2b hash digest

    Raises:
        ValueError: If parameters are invalid
    """
    if not 1 <= digest_size <= 64:
        raise ValueError("Digest size must be 1-64 bytes")

    if key is not None and len(key) > 64:
        raise ValueError("Key must be at most 64 bytes")

    if person is not None and len(person) > 16:
        raise ValueError("Personalization must be at most 16 bytes")

    # cryptography only exposes the full 64-byte BLAKE2b digest
    hasher = hashes.Hash(hashes.BLAKE2b(64))

    if key is not None:
        hasher.update(key.ljust(64, b'\x00'))

    if person is not None:
        hasher.update(person.ljust(16, b'\x00'))

    hasher.update(data)
    return hasher.finalize()[:digest_size]


def hkdf_derive(
    input_key_material: bytes,
    length: int,
    info: bytes,
    salt: Optional[bytes] = None,
) -> bytes:
    """
    Derive key material using HKDF-SHA256 (RFC 5869).

    Args:
        input_key_material: Source key material (e.g., ECDH shared secret)
        length: Desired output length in bytes
        info: Context info for domain separation
        salt: Optional salt

    Returns:
        bytes: Derived key material
    """
    if length < 1:
        raise ValueError("Length must be at least 1")

    if length > 255 * 32:
        raise ValueError("Length too large for HKDF")

    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=length,
        salt=salt,
        info=info,
    )
    return hkdf.derive(input_key_material)


def constant_time_compare(a: bytes, b: bytes) -> bool:
    """Compare two byte strings in constant time."""
    return hmac.compare_digest(a, b)


def secure_zero(data: bytearray) -> None:
    """
    Zero a bytearray in place.

    Best-effort: Python may still hold copies elsewhere. Only works
    with bytearray, not bytes.
    """
    for i in range(len(data)):
        data[i] = 0


def generate_message_id(sender_id: bytes, timestamp: int) -> bytes:
    """
    Generate a unique 16-byte message ID.

    Message ID = BLAKE2b(sender || timestamp || random)
    """
    data = sender_id + timestamp.to_bytes(8, byteorder='big') + random_bytes(16)
    return blake2b_hash(data, digest_size=16, person=b"aerolink-msgid")
