"""
AeroLink Mode Session Keyring

Holds the session credentials established for each communication
mode. A mode's credentials are created by authenticating its channels
(pre-transition), and purged when the controller commits away from the
mode. Using a purged mode fails with AuthenticationFailed; it never
silently succeeds.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Sequence

from ..crypto.keys import KeyStore
from ..crypto.primitives import secure_zero


logger = logging.getLogger(__name__)

# Strength reported when a driver does not negotiate one
DEFAULT_SESSION_STRENGTH = 256


class AuthenticationFailed(Exception):
    """Channel authentication failed, or credentials are missing/purged."""
    pass


class ChannelAuthenticator(Protocol):
    """
    Authenticates one channel with a fresh session key.

    Returns the negotiated encryption strength in bits; raises
    AuthenticationFailed on failure.
    """

    def __call__(self, channel, session_key: bytes) -> int:
        ...


def observation_authenticator(channel, session_key: bytes) -> int:
    """
    Default authenticator.

    Requires the channel to report signal and accepts the strength it
    reports (drivers perform the actual key exchange when activated).
    """
    observation = channel.get_observation()
    if observation is None or not observation.has_signal:
        raise AuthenticationFailed(f"{channel.channel_id}: no signal")
    if observation.encryption_strength is not None:
        return observation.encryption_strength
    return DEFAULT_SESSION_STRENGTH


@dataclass
class SessionCredential:
    """Credentials for one mode."""
    mode_name: str
    channel_ids: List[str]
    strengths: Dict[str, int]
    established_at: float
    _key: bytearray

    @property
    def is_wiped(self) -> bool:
        return not any(self._key)

    @property
    def key(self) -> bytes:
        if self.is_wiped:
            raise AuthenticationFailed(f"Credentials for {self.mode_name} have been purged")
        return bytes(self._key)

    def wipe(self) -> None:
        secure_zero(self._key)


class ModeKeyring:
    """
    Session credentials per mode.

    Usage:
        keyring = ModeKeyring(keystore)
        keyring.establish("INFRASTRUCTURE", channels)   # may raise AuthenticationFailed
        credential = keyring.authenticate("SATCOM", channels)
        keyring.store(credential)
        keyring.require("INFRASTRUCTURE")
        keyring.purge("TACTICAL")
    """

    def __init__(
        self,
        keystore: KeyStore,
        authenticator: Optional[ChannelAuthenticator] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._keystore = keystore
        self._authenticate = authenticator or observation_authenticator
        self._clock = clock
        self._credentials: Dict[str, SessionCredential] = {}
        self._lock = threading.Lock()

    def establish(self, mode_name: str, channels: Sequence) -> SessionCredential:
        """
        Authenticate every channel of a mode and store the credentials.

        Safe to call from an executor thread. Existing credentials for
        the mode are replaced only on success.

        Raises:
            AuthenticationFailed: If any channel fails
        """
        return self.store(self.authenticate(mode_name, channels))

    def authenticate(self, mode_name: str, channels: Sequence) -> SessionCredential:
        """
        Authenticate every channel of a mode without storing the result.

        The caller either passes the credential to store() or wipes it.

        Raises:
            AuthenticationFailed: If any channel fails
        """
        if not channels:
            raise AuthenticationFailed(f"{mode_name}: no channels to authenticate")

        key = bytearray(self._keystore.rotate_session_key(f"mode:{mode_name}"))
        strengths = {}
        try:
            for channel in channels:
                strengths[channel.channel_id] = self._authenticate(channel, bytes(key))
        except AuthenticationFailed:
            secure_zero(key)
            raise
        except Exception as e:
            secure_zero(key)
            raise AuthenticationFailed(f"{mode_name}: {e}")

        return SessionCredential(
            mode_name=mode_name,
            channel_ids=[c.channel_id for c in channels],
            strengths=strengths,
            established_at=self._clock(),
            _key=key,
        )

    def store(self, credential: SessionCredential) -> SessionCredential:
        mode_name = credential.mode_name
        with self._lock:
            previous = self._credentials.get(mode_name)
            self._credentials[mode_name] = credential
        if previous is not None:
            previous.wipe()

        logger.info(f"Session established for {mode_name} ({', '.join(credential.channel_ids)})")
        return credential

    def require(self, mode_name: str) -> SessionCredential:
        """
        Raises:
            AuthenticationFailed: If the mode has no valid credentials
        """
        with self._lock:
            credential = self._credentials.get(mode_name)
        if credential is None:
            raise AuthenticationFailed(f"No session credentials for {mode_name}")
        if credential.is_wiped:
            raise AuthenticationFailed(f"Credentials for {mode_name} have been purged")
        return credential

    def is_valid(self, mode_name: str) -> bool:
        try:
            self.require(mode_name)
        except AuthenticationFailed:
            return False
        return True

    def purge(self, mode_name: str) -> bool:
        """Zero and drop a mode's credentials."""
        with self._lock:
            credential = self._credentials.pop(mode_name, None)
        if credential is None:
            return False
        credential.wipe()
        logger.info(f"Session keys for {mode_name} purged")
        return True

    def modes(self) -> List[str]:
        with self._lock:
            return list(self._credentials)
