"""
AeroLink Configuration Management

Handles loading and validation of configuration from a TOML file.

Components keep a reference to the shared Config object and read the
tunables on every use, so Config.reload() takes effect without a restart.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional
from dataclasses import dataclass, field, fields

import toml


logger = logging.getLogger(__name__)

# Default configuration path
DEFAULT_CONFIG_PATH = Path("/etc/aerolink/config.toml")

# Default data directory
DEFAULT_DATA_DIR = Path("/var/lib/aerolink")

MODE_NAMES = ("TACTICAL", "HYBRID", "INFRASTRUCTURE", "SATCOM", "EMERGENCY")
SEVERITY_NAMES = ("LOW", "MEDIUM", "HIGH", "CRITICAL")


@dataclass
class MetricsConfig:
    """Channel metrics collection."""
    window_s: float = 30.0
    poll_interval_s: float = 1.0


@dataclass
class ThreatConfig:
    """Threat detection thresholds."""
    density_multiplier: float = 2.0
    expected_density_per_area: Dict[str, float] = field(default_factory=dict)
    default_expected_density: float = 4.0
    timing_multiplier: float = 1.5
    fingerprint_threshold: float = 0.8
    # Maximum seconds an event of each severity may wait before delivery
    response_latency_s: Dict[str, float] = field(default_factory=lambda: {
        "LOW": 1.0,
        "MEDIUM": 1.0,
        "HIGH": 0.0,
        "CRITICAL": 0.0,
    })

    def expected_density(self, area_id: Optional[str]) -> float:
        if area_id is not None and area_id in self.expected_density_per_area:
            return self.expected_density_per_area[area_id]
        return self.default_expected_density


@dataclass
class RelayConfig:
    """Relay registry and path selection."""
    trust_floor: float = 0.3
    path_diversity_n: int = 3
    max_hops: int = 6
    latency_reference_ms: float = 50.0
    probe_interval_s: float = 60.0
    probe_latency_multiplier: float = 1.5
    # Probe onions are padded to a data onion carrying this many payload bytes
    probe_message_size: int = 256
    trust_reward: float = 0.05
    threat_trust_penalty: float = 0.3
    quarantine_expiry_s: float = 86400.0
    recompute_interval_s: float = 5.0
    node_stale_s: float = 120.0


@dataclass
class ModeConfig:
    """Mode controller timing and policy."""
    initial_mode: str = "TACTICAL"
    tick_interval_s: float = 1.0
    lookahead_s: float = 30.0
    forecast_step_s: float = 5.0
    sustain_s: float = 3.0
    pretransition_s: float = 15.0
    overlap_trigger_s: float = 5.0
    overlap_window_s: float = 30.0
    stabilization_window_s: float = 10.0
    cooldown_s: float = 120.0
    auth_timeout_s: float = 5.0
    # Retry delay for the current mode's session, doubled per failure
    reauth_backoff_s: float = 2.0
    reauth_backoff_max_s: float = 60.0
    blackout_to_emergency_s: float = 300.0
    viability_threshold: float = 0.3
    max_error_rate: float = 0.5
    emergency_battery_level: float = 0.1
    # Missions at or above this criticality keep flying down to critical_battery_level
    critical_mission_level: float = 0.8
    critical_battery_level: float = 0.05
    force_switch_severity: str = "HIGH"
    preference: List[str] = field(default_factory=lambda: [
        "HYBRID", "INFRASTRUCTURE", "TACTICAL", "SATCOM",
    ])


@dataclass
class EmergencyConfig:
    """Emergency beacon behaviour."""
    hop_channels: List[int] = field(default_factory=lambda: [0, 1, 2, 3])
    beacon_interval_s: float = 2.0


@dataclass
class LinkConfig:
    """Facade send/receive behaviour."""
    retry_interval_s: float = 2.0
    default_emergency_deadline_s: float = 120.0
    dedup_ttl_s: int = 60
    dedup_max_entries: int = 4096


@dataclass
class StorageConfig:
    """Persisted state."""
    data_dir: Path = field(default_factory=lambda: DEFAULT_DATA_DIR)
    state_db: str = "state.db"

    @property
    def state_db_path(self) -> Path:
        return self.data_dir / self.state_db


@dataclass
class Config:
    """
    Complete AeroLink configuration.
    """
    node_name: str = ""

    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    threat: ThreatConfig = field(default_factory=ThreatConfig)
    relay: RelayConfig = field(default_factory=RelayConfig)
    mode: ModeConfig = field(default_factory=ModeConfig)
    emergency: EmergencyConfig = field(default_factory=EmergencyConfig)
    link: LinkConfig = field(default_factory=LinkConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    config_path: Optional[Path] = None

    # Logging
    log_level: str = "INFO"
    log_file: Optional[Path] = None

    _SECTIONS = ("metrics", "threat", "relay", "mode", "emergency", "link", "storage")

    def __post_init__(self):
        self._reload_lock = threading.Lock()

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> 'Config':
        """
        Load configuration from file.

        A missing file yields the defaults. A malformed file raises
        ValueError; config problems at startup are fatal.
        """
        path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
        config = cls()
        config.config_path = path

        if not path.exists():
            logger.info(f"No config file at {path}, using defaults")
            return config

        config._apply_dict(_read_toml(path))
        config.validate()
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Build a validated configuration from a plain dictionary."""
        config = cls()
        config._apply_dict(data)
        config.validate()
        return config

    def reload(self) -> bool:
        """
        Re-read the config file and apply it in place.

        The new values are validated on a scratch copy first, so a bad
        file leaves the running configuration untouched.

        Returns:
            True if the file was applied
        """
        if self.config_path is None or not self.config_path.exists():
            return False

        try:
            data = _read_toml(self.config_path)
            Config.from_dict(data)
        except ValueError as e:
            logger.error(f"Config reload rejected: {e}")
            return False

        with self._reload_lock:
            self._apply_dict(data)
        logger.info(f"Configuration reloaded from {self.config_path}")
        return True

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        """Apply dictionary data to config."""
        if "node_name" in data:
            self.node_name = str(data["node_name"])
        if "log_level" in data:
            self.log_level = str(data["log_level"]).upper()
        if "log_file" in data:
            self.log_file = Path(data["log_file"])

        for name in self._SECTIONS:
            if name in data:
                _apply_section(getattr(self, name), name, data[name])

    def validate(self) -> None:
        """
        Validate configuration.

        Raises:
            ValueError: If configuration is invalid
        """
        if self.mode.initial_mode.upper() not in MODE_NAMES:
            raise ValueError(f"Invalid initial mode: {self.mode.initial_mode}")

        for name in self.mode.preference:
            if name.upper() not in MODE_NAMES:
                raise ValueError(f"Invalid mode in preference list: {name}")

        if self.mode.force_switch_severity.upper() not in SEVERITY_NAMES:
            raise ValueError(f"Invalid severity: {self.mode.force_switch_severity}")

        if not 0.0 <= self.relay.trust_floor <= 1.0:
            raise ValueError(f"Invalid trust floor: {self.relay.trust_floor}")

        if self.relay.path_diversity_n < 1:
            raise ValueError(f"Invalid path diversity: {self.relay.path_diversity_n}")

        if self.relay.max_hops < 1:
            raise ValueError(f"Invalid max hops: {self.relay.max_hops}")

        if self.relay.probe_message_size < 0:
            raise ValueError(f"Invalid probe message size: {self.relay.probe_message_size}")

        if self.relay.node_stale_s <= 0:
            raise ValueError(f"Invalid node staleness: {self.relay.node_stale_s}")

        if self.metrics.window_s <= 0:
            raise ValueError(f"Invalid metrics window: {self.metrics.window_s}")

        if self.mode.overlap_trigger_s > self.mode.pretransition_s:
            raise ValueError("overlap_trigger_s must not exceed pretransition_s")

        if self.mode.stabilization_window_s > self.mode.overlap_window_s:
            raise ValueError("stabilization_window_s must not exceed overlap_window_s")

        if self.mode.reauth_backoff_s <= 0 or self.mode.reauth_backoff_max_s < self.mode.reauth_backoff_s:
            raise ValueError("reauth_backoff_s must be positive and not exceed reauth_backoff_max_s")

        if self.mode.critical_battery_level > self.mode.emergency_battery_level:
            raise ValueError("critical_battery_level must not exceed emergency_battery_level")

        if not self.emergency.hop_channels:
            raise ValueError("At least one emergency hop channel is required")

        for severity in self.threat.response_latency_s:
            if severity.upper() not in SEVERITY_NAMES:
                raise ValueError(f"Invalid severity in latency table: {severity}")


def _read_toml(path: Path) -> Dict[str, Any]:
    try:
        return toml.load(path)
    except toml.TomlDecodeError as e:
        raise ValueError(f"Invalid config file {path}: {e}")


def _apply_section(section: Any, name: str, values: Dict[str, Any]) -> None:
    """Apply one [section] table, coercing each value to the field's type."""
    known = {f.name for f in fields(section)}

    for key, value in values.items():
        if key not in known:
            logger.warning(f"Unknown config option: {name}.{key}")
            continue

        current = getattr(section, key)
        try:
            if isinstance(current, bool):
                value = bool(value)
            elif isinstance(current, float):
                value = float(value)
            elif isinstance(current, int):
                value = int(value)
            elif isinstance(current, Path):
                value = Path(value)
            elif isinstance(current, dict):
                value = {str(k): float(v) for k, v in dict(value).items()}
            elif isinstance(current, list):
                value = list(value)
            else:
                value = str(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Invalid value for {name}.{key}: {e}")

        setattr(section, key, value)
