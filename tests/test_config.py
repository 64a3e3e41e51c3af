"""
Unit tests for configuration loading, validation and reload.
"""

from pathlib import Path

import pytest

from aerolink.config import Config


# ============================================================================
# Loading Tests
# ============================================================================


class TestConfigLoad:
    """Tests for Config.load and Config.from_dict."""

    def test_defaults(self) -> None:
        """Test defaults match the documented thresholds."""
        config = Config()
        assert config.relay.trust_floor == 0.3
        assert config.relay.path_diversity_n == 3
        assert config.mode.blackout_to_emergency_s == 300.0
        assert config.threat.fingerprint_threshold == 0.8
        assert config.threat.response_latency_s["CRITICAL"] == 0.0
        config.validate()

    def test_missing_file_uses_defaults(self, tmp_path) -> None:
        """Test a missing file is not an error."""
        config = Config.load(tmp_path / "absent.toml")
        assert config.mode.initial_mode == "TACTICAL"
        assert config.config_path == tmp_path / "absent.toml"

    def test_load_file(self, tmp_path) -> None:
        """Test sections are applied with type coercion."""
        path = tmp_path / "config.toml"
        path.write_text(
            'node_name = "scout-3"\n'
            'log_level = "debug"\n'
            "[relay]\n"
            "trust_floor = 0.4\n"
            "path_diversity_n = 2\n"
            "[mode]\n"
            'initial_mode = "SATCOM"\n'
            "overlap_window_s = 40\n"
            "[threat.expected_density_per_area]\n"
            "city = 25\n"
            "[storage]\n"
            'data_dir = "/tmp/aerolink-test"\n'
        )

        config = Config.load(path)

        assert config.node_name == "scout-3"
        assert config.log_level == "DEBUG"
        assert config.relay.trust_floor == 0.4
        assert config.relay.path_diversity_n == 2
        assert config.mode.initial_mode == "SATCOM"
        assert isinstance(config.mode.overlap_window_s, float)
        assert config.threat.expected_density("city") == 25.0
        assert config.threat.expected_density("field") == config.threat.default_expected_density
        assert config.storage.state_db_path == Path("/tmp/aerolink-test/state.db")

    def test_malformed_file(self, tmp_path) -> None:
        """Test unparsable TOML is a ValueError."""
        path = tmp_path / "config.toml"
        path.write_text("[relay\ntrust_floor = ")
        with pytest.raises(ValueError):
            Config.load(path)

    def test_unknown_option_ignored(self) -> None:
        """Test unknown keys are skipped."""
        config = Config.from_dict({"relay": {"no_such_option": 1}})
        assert not hasattr(config.relay, "no_such_option")

    def test_bad_value_type(self) -> None:
        """Test values that cannot be coerced are rejected."""
        with pytest.raises(ValueError):
            Config.from_dict({"relay": {"trust_floor": "high"}})


# ============================================================================
# Validation Tests
# ============================================================================


class TestConfigValidate:
    """Tests for Config.validate."""

    @pytest.mark.parametrize("data", [
        {"mode": {"initial_mode": "WARP"}},
        {"mode": {"preference": ["HYBRID", "CARRIER_PIGEON"]}},
        {"mode": {"force_switch_severity": "SEVERE"}},
        {"mode": {"overlap_trigger_s": 20.0, "pretransition_s": 10.0}},
        {"mode": {"stabilization_window_s": 40.0, "overlap_window_s": 30.0}},
        {"mode": {"reauth_backoff_s": 0.0}},
        {"mode": {"critical_battery_level": 0.2}},
        {"relay": {"trust_floor": 1.5}},
        {"relay": {"path_diversity_n": 0}},
        {"relay": {"max_hops": 0}},
        {"relay": {"node_stale_s": 0}},
        {"metrics": {"window_s": 0}},
        {"emergency": {"hop_channels": []}},
        {"threat": {"response_latency_s": {"URGENT": 1.0}}},
    ])
    def test_invalid(self, data) -> None:
        """Test invalid settings are rejected."""
        with pytest.raises(ValueError):
            Config.from_dict(data)

    def test_lowercase_mode_accepted(self) -> None:
        """Test mode names are case-insensitive."""
        Config.from_dict({"mode": {"initial_mode": "hybrid"}})


# ============================================================================
# Reload Tests
# ============================================================================


class TestConfigReload:
    """Tests for in-place reload."""

    def test_reload_applies_in_place(self, tmp_path) -> None:
        """Test reload updates the shared object."""
        path = tmp_path / "config.toml"
        path.write_text("[relay]\ntrust_floor = 0.3\n")
        config = Config.load(path)
        section = config.relay

        path.write_text("[relay]\ntrust_floor = 0.6\n")
        assert config.reload()

        assert config.relay is section
        assert section.trust_floor == 0.6

    def test_invalid_reload_rejected(self, tmp_path) -> None:
        """Test an invalid file leaves the running config untouched."""
        path = tmp_path / "config.toml"
        path.write_text("[relay]\ntrust_floor = 0.3\n")
        config = Config.load(path)

        path.write_text("[relay]\ntrust_floor = 7.0\n")
        assert not config.reload()
        assert config.relay.trust_floor == 0.3

    def test_reload_without_file(self) -> None:
        """Test reload without a config path does nothing."""
        assert not Config().reload()
