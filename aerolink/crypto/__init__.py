"""
AeroLink Cryptographic Module

Provides all cryptographic operations for AeroLink:
- Key agreement (X25519)
- Authenticated encryption (ChaCha20-Poly1305)
- Hashing (BLAKE2b)
- Key derivation (HKDF)

All implementations use python3-cryptography (OpenSSL backend).
"""

from .primitives import (
    random_bytes,
    blake2b_hash,
    hkdf_derive,
    constant_time_compare,
    secure_zero,
)

from .keys import (
    IdentityKey,
    EphemeralKey,
    KeyStore,
    MemoryKeyStore,
    generate_identity,
    derive_node_id,
)

from .envelope import (
    seal_envelope,
    seal_envelope_for_pubkey_bytes,
    open_envelope,
    EnvelopeError,
)

__all__ = [
    # Primitives
    'random_bytes',
    'blake2b_hash',
    'hkdf_derive',
    'constant_time_compare',
    'secure_zero',
    # Keys
    'IdentityKey',
    'EphemeralKey',
    'KeyStore',
    'MemoryKeyStore',
    'generate_identity',
    'derive_node_id',
    # Envelope
    'seal_envelope',
    'seal_envelope_for_pubkey_bytes',
    'open_envelope',
    'EnvelopeError',
]
