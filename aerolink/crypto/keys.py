"""
AeroLink Key Management

Handles:
- Node identity keys (X25519, used for onion layers and probe challenges)
- Ephemeral keys for per-envelope key agreement
- The key/identity store interface the controller depends on

Key material is owned by the key store. In production that store is
hardware-backed; load_identity() is the file-backed fallback used by
the daemon in development and simulation.
"""

import os
import stat
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives import serialization

from .primitives import (
    blake2b_hash,
    random_bytes,
    X25519_KEY_SIZE,
)


# Node ID is first 16 bytes of BLAKE2b hash of public key
NODE_ID_LENGTH = 16

# Session key length handed out by rotate_session_key()
SESSION_KEY_LENGTH = 32

# Scope of the node identity in a KeyStore
NODE_SCOPE = "node"

IDENTITY_KEY_FILE = "identity.key"


class KeyError(Exception):
    """Exception raised for key-related errors."""
    pass


class IdentityKey:
    """
    Node identity key pair.

    Contains the X25519 key pair and the node ID derived from its
    public half.
    """

    def __init__(self, private_key: X25519PrivateKey):
        self._private = private_key
        self._public = private_key.public_key()
        self.node_id = derive_node_id(self.public_bytes)

    def exchange(self, peer_public: X25519PublicKey) -> bytes:
        """
        Perform X25519 key exchange.

        Args:
            peer_public: Peer's X25519 public key

        Returns:
            bytes: 32-byte shared secret
        """
        return self._private.exchange(peer_public)

    @property
    def public_bytes(self) -> bytes:
        """Get X25519 public key as bytes."""
        return self._public.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    @property
    def public_key(self) -> X25519PublicKey:
        """Get X25519 public key object."""
        return self._public

    def to_bytes(self) -> bytes:
        """
        Serialize private key.

        Security:
            Output contains secret key material. Handle with care.
        """
        return self._private.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> 'IdentityKey':
        """Load identity key from 32 raw private key bytes."""
        if len(data) != 32:
            raise KeyError("Invalid key length (expected 32 bytes)")
        return cls(X25519PrivateKey.from_private_bytes(data))

    def __repr__(self) -> str:
        return f"<IdentityKey node_id={self.node_id.hex()}>"


class EphemeralKey:
    """
    Ephemeral X25519 key pair.

    Generated per envelope and discarded after use for forward secrecy.
    """

    def __init__(self):
        self._private = X25519PrivateKey.generate()
        self._public = self._private.public_key()

    def exchange(self, peer_public: X25519PublicKey) -> bytes:
        """Perform X25519 key exchange."""
        return self._private.exchange(peer_public)

    @property
    def public_bytes(self) -> bytes:
        """Get public key as bytes (32 bytes)."""
        return self._public.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )


def derive_node_id(public_bytes: bytes) -> bytes:
    """
    Derive node ID from an X25519 public key.

    NodeID = BLAKE2b(public_key)[:16]
    """
    return blake2b_hash(
        public_bytes,
        digest_size=NODE_ID_LENGTH,
        person=b"aerolink-nodeid",
    )


def generate_identity() -> IdentityKey:
    """Generate a new node identity."""
    return IdentityKey(X25519PrivateKey.generate())


def public_key_from_bytes(data: bytes) -> X25519PublicKey:
    """
    Load X25519 public key from bytes.

    Raises:
        KeyError: If the key has the wrong length
    """
    if len(data) != X25519_KEY_SIZE:
        raise KeyError(f"Invalid public key length: {len(data)} (expected {X25519_KEY_SIZE})")

    return X25519PublicKey.from_public_bytes(data)


class KeyStore(Protocol):
    """
    Key/identity store used by the controller.

    Assumed hardware-backed in deployment.
    """

    def get_private_key(self, scope: str) -> IdentityKey:
        ...

    def get_peer_public_key(self, node_id: bytes) -> bytes:
        ...

    def rotate_session_key(self, scope: str) -> bytes:
        ...


class MemoryKeyStore:
    """
    In-process key store.

    Holds one identity per scope (the "node" scope is created on
    construction) and a directory of peer public keys.

    Usage:
        store = MemoryKeyStore()
        store.add_peer(peer.node_id, peer.public_bytes)
        identity = store.get_private_key("node")
    """

    NODE_SCOPE = NODE_SCOPE

    def __init__(self, identity: Optional[IdentityKey] = None):
        self._identities: Dict[str, IdentityKey] = {
            self.NODE_SCOPE: identity or generate_identity(),
        }
        self._peers: Dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    @property
    def node_id(self) -> bytes:
        return self._identities[self.NODE_SCOPE].node_id

    def get_private_key(self, scope: str) -> IdentityKey:
        with self._lock:
            if scope not in self._identities:
                self._identities[scope] = generate_identity()
            return self._identities[scope]

    def add_peer(self, node_id: bytes, public_key: bytes) -> None:
        """Register a peer's X25519 public key."""
        if len(public_key) != X25519_KEY_SIZE:
            raise KeyError(f"Invalid public key length: {len(public_key)}")
        with self._lock:
            self._peers[node_id] = public_key

    def get_peer_public_key(self, node_id: bytes) -> bytes:
        with self._lock:
            try:
                return self._peers[node_id]
            except LookupError:
                raise KeyError(f"Unknown peer: {node_id.hex()}")

    def rotate_session_key(self, scope: str) -> bytes:
        return random_bytes(SESSION_KEY_LENGTH)


def load_identity(key_dir: Path, create_if_missing: bool = True) -> IdentityKey:
    """
    Load the node identity from key_dir, creating it if necessary.

    Key file format: 32-byte raw X25519 private key

    Raises:
        KeyError: If the key file exists but is invalid
        FileNotFoundError: If the key file is missing and create_if_missing=False

    Security:
        - Key file permissions set to 0600 (owner read/write only)
        - Directory permissions set to 0700 (owner only)
    """
    key_dir = Path(key_dir)
    key_file = key_dir / IDENTITY_KEY_FILE

    if key_file.exists():
        try:
            return IdentityKey.from_bytes(key_file.read_bytes())
        except (KeyError, ValueError) as e:
            raise KeyError(f"Failed to load identity key: {e}")

    if not create_if_missing:
        raise FileNotFoundError(f"Identity key not found: {key_file}")

    identity = generate_identity()

    key_dir.mkdir(parents=True, exist_ok=True)
    os.chmod(key_dir, stat.S_IRWXU)

    key_file.write_bytes(identity.to_bytes())
    os.chmod(key_file, stat.S_IRUSR | stat.S_IWUSR)

    return identity
