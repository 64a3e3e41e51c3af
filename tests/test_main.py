"""
Tests for the aerolinkd daemon wiring and node identity handling.
"""

import stat

import pytest

from aerolink.crypto.keys import IDENTITY_KEY_FILE, KeyError, MemoryKeyStore, load_identity
from aerolink.main import AeroLinkDaemon
from aerolink.mode.controller import Mode


# ============================================================================
# Identity Tests
# ============================================================================


class TestIdentity:
    """Tests for the file-backed identity and the memory key store."""

    def test_created_with_owner_only_permissions(self, tmp_path) -> None:
        """Test a new identity file is readable by the owner only."""
        key_dir = tmp_path / "keys"
        identity = load_identity(key_dir)

        key_file = key_dir / IDENTITY_KEY_FILE
        assert stat.S_IMODE(key_file.stat().st_mode) == 0o600
        assert stat.S_IMODE(key_dir.stat().st_mode) == 0o700
        assert load_identity(key_dir).node_id == identity.node_id

    def test_missing_without_create(self, tmp_path) -> None:
        """Test a missing key is an error when creation is disabled."""
        with pytest.raises(FileNotFoundError):
            load_identity(tmp_path, create_if_missing=False)

    def test_corrupt_key_file(self, tmp_path) -> None:
        """Test a truncated key file is rejected."""
        (tmp_path / IDENTITY_KEY_FILE).write_bytes(b"\x00" * 5)
        with pytest.raises(KeyError):
            load_identity(tmp_path)

    def test_unknown_peer(self) -> None:
        """Test looking up an unregistered peer raises KeyError."""
        with pytest.raises(KeyError):
            MemoryKeyStore().get_peer_public_key(b"\x05" * 16)

    def test_session_keys_rotate(self) -> None:
        """Test every rotation returns fresh key material."""
        keystore = MemoryKeyStore()
        assert keystore.rotate_session_key("mode:SATCOM") != keystore.rotate_session_key("mode:SATCOM")


# ============================================================================
# Daemon Tests
# ============================================================================


class TestDaemon:
    """Tests for AeroLinkDaemon start/stop."""

    def test_requires_drivers(self, config) -> None:
        """Test starting without drivers or simulation fails."""
        daemon = AeroLinkDaemon(config)
        with pytest.raises(RuntimeError):
            daemon.start()

    def test_simulation_lifecycle(self, config) -> None:
        """Test a simulated node starts in its initial mode with relay paths and stops cleanly."""
        daemon = AeroLinkDaemon(config, simulate=True)
        daemon.start()
        try:
            assert daemon.is_running
            assert daemon.link.current_mode().mode == Mode.TACTICAL
            assert len(daemon.link.registry) == 3
            assert (config.storage.data_dir / IDENTITY_KEY_FILE).exists()
        finally:
            daemon.stop()

        assert not daemon.is_running
