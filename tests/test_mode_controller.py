"""
Unit tests for mode.controller and mode.keyring.

Tests:
- Viability scoring (staleness, error rate, coverage, relay paths)
- Forecast-driven transitions through pre-transition and overlap
- Failed authentication never commits, late results are discarded
- Session retry with backoff for the current mode
- Rollback and blacklist cooldown
- Threat-forced switches and preemption
- EMERGENCY entry and exit
"""

import pytest

from aerolink.channel.base import ChannelKind
from aerolink.channel.loopback import LoopbackMedium
from aerolink.context import CoverageZone, StaticFlightContext, ZoneCoverageModel
from aerolink.crypto.keys import MemoryKeyStore
from aerolink.metrics.collector import MetricsCollector
from aerolink.mode.controller import (
    Mode,
    ModeController,
    Phase,
    StabilizationFailed,
    TransitionOutcome,
)
from aerolink.mode.keyring import AuthenticationFailed, ModeKeyring
from aerolink.relay.paths import PathHealth
from aerolink.store import StateStore
from aerolink.threat.rules import Severity, ThreatEvent, ThreatKind

from conftest import DeferredExecutor, make_channel, make_observation


KINDS = {
    "mesh0": ChannelKind.MESH,
    "cell0": ChannelKind.CELLULAR,
    "sat0": ChannelKind.SATELLITE,
    "emg0": ChannelKind.EMERGENCY,
}


class StubPaths:
    """Path manager stand-in reporting a fixed availability."""

    def __init__(self, available: bool = True):
        self.available = available

    def health(self) -> PathHealth:
        return PathHealth(
            available=self.available,
            path_count=1 if self.available else 0,
            degraded=False,
            best_score=0.9 if self.available else 0.0,
            best_latency_ms=30.0 if self.available else None,
        )


class SessionLog:
    """Detector stand-in recording successful sessions."""

    def __init__(self):
        self.sessions = []

    def record_session(self, channel_id: str, strength: int) -> None:
        self.sessions.append(channel_id)


class Harness:
    """One controller over loopback channels with hand-fed observations."""

    def __init__(
        self,
        config,
        clock,
        executor,
        signals,
        initial="INFRASTRUCTURE",
        failing=(),
        paths=None,
        context=None,
        coverage=None,
        store=None,
        detector=None,
    ):
        config.mode.initial_mode = initial
        self.config = config
        self.clock = clock
        self.signals = dict(signals)
        self.failing = set(failing)
        self.attempts = []

        medium = LoopbackMedium()
        self.channels = {cid: make_channel(cid, KINDS[cid], medium) for cid in self.signals}
        self.collector = MetricsCollector(config)
        self.keyring = ModeKeyring(MemoryKeyStore(), self.authenticate, clock=clock)
        self.feed()

        self.controller = ModeController(
            config,
            list(self.channels.values()),
            self.collector,
            self.keyring,
            path_manager=paths,
            context=context,
            coverage=coverage,
            executor=executor,
            store=store,
            detector=detector,
            clock=clock,
        )

    def authenticate(self, channel, session_key: bytes) -> int:
        self.attempts.append(channel.channel_id)
        if channel.channel_id in self.failing:
            raise AuthenticationFailed(f"{channel.channel_id} rejected credentials")
        return 256

    def feed(self) -> None:
        for channel_id, signal in self.signals.items():
            self.collector.record(make_observation(
                channel_id, timestamp=self.clock(), signal_quality=signal,
            ))

    def run(self, seconds: int):
        for _ in range(seconds):
            self.clock.advance(1.0)
            self.feed()
            self.controller.tick()
        return self.controller.state()

    def active(self):
        return {cid for cid, channel in self.channels.items() if channel.is_active}


def threat(channel_id: str, severity: Severity = Severity.HIGH) -> ThreatEvent:
    return ThreatEvent(ThreatKind.SPOOFING_SUSPECTED, severity, channel_id, 0.0)


@pytest.fixture
def degrading(config, clock, executor) -> Harness:
    """INFRASTRUCTURE with a failing cell link and healthy satellite."""
    return Harness(config, clock, executor, {"cell0": 0.2, "sat0": 0.8, "emg0": 0.9})


@pytest.fixture
def full(config, clock, executor) -> Harness:
    """Every channel kind healthy, relay paths available."""
    return Harness(
        config, clock, executor,
        {"mesh0": 0.9, "cell0": 0.9, "sat0": 0.8, "emg0": 0.9},
        paths=StubPaths(),
    )


# ============================================================================
# Construction Tests
# ============================================================================


class TestConstruction:
    """Tests for controller start-up."""

    def test_initial_mode_active(self, degrading) -> None:
        """Test the initial mode's channels are activated and authenticated."""
        assert degrading.controller.current_mode == Mode.INFRASTRUCTURE
        assert degrading.active() == {"cell0"}
        assert degrading.keyring.is_valid("INFRASTRUCTURE")

    def test_unsupported_initial_mode(self, config, clock, executor) -> None:
        """Test an initial mode without drivers is rejected."""
        with pytest.raises(ValueError):
            Harness(config, clock, executor, {"cell0": 0.9}, initial="SATCOM")

    def test_unknown_initial_mode(self, config, clock, executor) -> None:
        """Test an unknown mode name is rejected."""
        with pytest.raises(ValueError):
            Harness(config, clock, executor, {"cell0": 0.9}, initial="WARP")


# ============================================================================
# Session Retry Tests
# ============================================================================


class TestSessionRetry:
    """Tests for re-establishing the current mode's session."""

    def test_failed_initial_session_retried(self, config, clock, executor) -> None:
        """Test an initial authentication failure is retried once the channel recovers."""
        harness = Harness(config, clock, executor, {"cell0": 0.9}, failing={"cell0"})
        assert not harness.keyring.is_valid("INFRASTRUCTURE")

        harness.failing.clear()
        harness.run(2)

        assert harness.keyring.is_valid("INFRASTRUCTURE")
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE

    def test_retry_backs_off(self, config, clock, executor) -> None:
        """Test repeated failures double the delay between attempts."""
        harness = Harness(config, clock, executor, {"cell0": 0.9}, failing={"cell0"})

        # Attempts at start-up, +2 s and +7 s; the next is due at +16 s
        harness.run(15)
        assert len(harness.attempts) == 3
        assert harness.controller.get_stats()["session_retry_at"] == 1016.0

        harness.run(1)
        assert len(harness.attempts) == 4

    def test_no_retry_while_valid(self, degrading) -> None:
        """Test a valid session is not re-authenticated."""
        degrading.run(2)
        assert degrading.attempts == ["cell0"]


# ============================================================================
# Viability Tests
# ============================================================================


class TestViability:
    """Tests for mode scoring."""

    def test_quality(self, degrading) -> None:
        """Test viability is the best channel quality of the mode."""
        assert degrading.controller.viability(Mode.SATCOM) == pytest.approx(0.8)
        assert degrading.controller.viability(Mode.EMERGENCY) == 1.0

    def test_unsupported(self, degrading) -> None:
        """Test modes without drivers score zero."""
        assert degrading.controller.viability(Mode.TACTICAL) == 0.0

    def test_stale_sample(self, degrading, clock) -> None:
        """Test samples older than the metrics window count as no signal."""
        clock.advance(31.0)
        assert degrading.controller.viability(Mode.SATCOM) == 0.0

    def test_error_rate_above_limit(self, degrading, clock) -> None:
        """Test a channel with too many errors scores zero."""
        degrading.collector.record(make_observation(
            "sat0", timestamp=clock(), signal_quality=0.9, error_rate=0.6,
        ))
        assert degrading.controller.viability(Mode.SATCOM) == 0.0

    def test_error_rate_discounts(self, degrading, clock) -> None:
        """Test errors below the limit scale quality down."""
        degrading.collector.record(make_observation(
            "sat0", timestamp=clock(), signal_quality=0.8, error_rate=0.25,
        ))
        assert degrading.controller.viability(Mode.SATCOM) == pytest.approx(0.6)

    def test_suspect_channel_excluded(self, full) -> None:
        """Test a suspect channel does not count toward viability."""
        full.controller.on_threat(threat("sat0"))
        assert full.controller.is_suspect("sat0")
        assert full.controller.viability(Mode.SATCOM) == 0.0

    def test_relay_mode_needs_path(self, config, clock, executor) -> None:
        """Test TACTICAL scores zero without a relay path."""
        harness = Harness(
            config, clock, executor, {"mesh0": 0.9, "emg0": 0.9},
            initial="TACTICAL", paths=StubPaths(available=False),
        )
        assert harness.controller.viability(Mode.TACTICAL) == 0.0

    def test_coverage_caps(self, config, clock, executor) -> None:
        """Test the coverage model caps viability at the forecast position."""
        coverage = ZoneCoverageModel([CoverageZone("SATCOM", (0.0, 0.0, 0.0), 100.0, quality=0.5)])
        context = StaticFlightContext()
        harness = Harness(
            config, clock, executor, {"cell0": 0.9, "sat0": 0.9},
            context=context, coverage=coverage,
        )
        assert harness.controller.viability(Mode.SATCOM) == pytest.approx(0.5)

        context.update(velocity=(20.0, 0.0, 0.0))
        assert harness.controller.viability(Mode.SATCOM, horizon_s=10.0) == 0.0
        assert harness.controller.viability(Mode.INFRASTRUCTURE) == pytest.approx(0.9)


# ============================================================================
# Predictive Transition Tests
# ============================================================================


class TestPredictiveTransition:
    """Tests for forecast, pre-transition and overlap."""

    def test_sustain_before_initiating(self, degrading) -> None:
        """Test a recommendation must persist before a transition starts."""
        state = degrading.run(2)
        assert state.phase == Phase.STABLE

    def test_overlap_runs_both_sets(self, degrading) -> None:
        """Test the overlap activates the target next to the current mode."""
        state = degrading.run(4)

        assert state.phase == Phase.OVERLAP
        assert state.pending_target == Mode.SATCOM
        assert degrading.active() == {"cell0", "sat0"}
        sets = degrading.controller.sending_sets()
        assert [mode for mode, _ in sets] == [Mode.INFRASTRUCTURE, Mode.SATCOM]

    def test_commit_after_stabilization(self, degrading) -> None:
        """Test a clean stabilization window commits and purges old keys."""
        degrading.run(14)

        assert degrading.controller.current_mode == Mode.SATCOM
        assert degrading.active() == {"sat0"}
        record = degrading.controller.history()[-1]
        assert record.outcome == TransitionOutcome.COMMITTED
        assert not record.forced

    def test_purged_credentials_fail(self, degrading) -> None:
        """Test the source mode's credentials are unusable after commit."""
        degrading.run(14)

        with pytest.raises(AuthenticationFailed):
            degrading.keyring.require("INFRASTRUCTURE")
        assert degrading.keyring.require("SATCOM").key

    def test_failed_auth_never_commits(self, config, clock, executor) -> None:
        """Test pre-transition authentication failure cancels without switching."""
        harness = Harness(
            config, clock, executor, {"cell0": 0.2, "sat0": 0.8}, failing={"sat0"},
        )
        state = harness.run(4)

        assert state.mode == Mode.INFRASTRUCTURE
        assert state.phase == Phase.STABLE
        assert harness.active() == {"cell0"}
        record = harness.controller.history()[0]
        assert record.outcome == TransitionOutcome.CANCELLED
        assert isinstance(record.error, AuthenticationFailed)
        assert not harness.keyring.is_valid("SATCOM")

    def test_auth_timeout(self, config, clock) -> None:
        """Test authentication that never finishes times out."""
        harness = Harness(config, clock, DeferredExecutor(), {"cell0": 0.2, "sat0": 0.8})

        assert harness.run(4).phase == Phase.AUTHENTICATING
        harness.run(6)

        record = harness.controller.history()[0]
        assert record.outcome == TransitionOutcome.CANCELLED
        assert "timed out" in str(record.error)
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE

    def test_late_authentication_discarded(self, config, clock) -> None:
        """Test authentication finishing after its timeout stores nothing."""
        deferred = DeferredExecutor(started=True)
        sessions = SessionLog()
        harness = Harness(
            config, clock, deferred, {"cell0": 0.2, "sat0": 0.8}, detector=sessions,
        )

        assert harness.run(4).phase == Phase.AUTHENTICATING
        harness.run(6)
        assert harness.controller.history()[0].outcome == TransitionOutcome.CANCELLED

        deferred.run_all()

        assert "sat0" in harness.attempts
        assert not harness.keyring.is_valid("SATCOM")
        assert sessions.sessions == ["cell0"]
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE

    def test_pretransition_waits_for_time_to_switch(self, config, clock, executor) -> None:
        """Test a distant switch time is authenticated early and overlapped late."""
        harness = Harness(config, clock, executor, {"cell0": 0.9, "sat0": 0.8}, initial="SATCOM")

        state = harness.run(4)
        assert state.phase == Phase.READY
        assert harness.keyring.is_valid("INFRASTRUCTURE")
        assert harness.active() == {"sat0"}

        assert harness.run(10).phase == Phase.OVERLAP
        harness.run(10)
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE


# ============================================================================
# Rollback and Cooldown Tests
# ============================================================================


class TestRollback:
    """Tests for stabilization failure and anti-flapping."""

    def test_rollback_blacklists_target(self, degrading) -> None:
        """Test an unstable target is rolled back and blacklisted."""
        degrading.run(4)
        degrading.signals["sat0"] = 0.1
        degrading.run(30)

        controller = degrading.controller
        assert controller.current_mode == Mode.INFRASTRUCTURE
        assert degrading.active() == {"cell0"}
        assert controller.is_blacklisted(Mode.SATCOM)
        record = controller.history()[-1]
        assert record.outcome == TransitionOutcome.ROLLED_BACK
        assert isinstance(record.error, StabilizationFailed)

    def test_delivery_failures_restart_stabilization(self, degrading, clock) -> None:
        """Test reported failures on the target delay the commit."""
        degrading.run(4)
        degrading.run(8)
        degrading.controller.report_delivery(Mode.SATCOM, False, clock())
        degrading.run(5)

        assert degrading.controller.state().phase == Phase.OVERLAP
        degrading.run(6)
        assert degrading.controller.current_mode == Mode.SATCOM

    def test_no_flapping_within_cooldown(self, degrading) -> None:
        """Test the controller does not return to the mode it just left."""
        degrading.run(14)
        degrading.signals["cell0"] = 0.9

        degrading.run(100)
        assert degrading.controller.current_mode == Mode.SATCOM
        assert len(degrading.controller.history()) == 1

        degrading.run(60)
        assert degrading.controller.current_mode == Mode.INFRASTRUCTURE

    def test_flapping_signals_after_rollback(self, config, clock, executor) -> None:
        """Test signals alternating every tick start at most one transition per cooldown."""
        harness = Harness(
            config, clock, executor,
            {"mesh0": 0.1, "cell0": 0.2, "sat0": 0.8, "emg0": 0.9},
            paths=StubPaths(),
        )
        harness.run(4)
        harness.signals["sat0"] = 0.1
        harness.run(30)

        history = harness.controller.history()
        assert history[-1].outcome == TransitionOutcome.ROLLED_BACK
        rolled_back = len(history)

        for second in range(int(config.mode.cooldown_s)):
            flip = second % 2 == 0
            harness.signals["mesh0"] = 0.9 if flip else 0.1
            harness.signals["cell0"] = 0.2 if flip else 0.9
            harness.signals["sat0"] = 0.1 if flip else 0.8
            harness.run(1)

        assert len(harness.controller.history()) - rolled_back <= 1

    def test_cooldown_persisted(self, config, clock, executor, tmp_path) -> None:
        """Test a blacklist survives a controller restart."""
        store = StateStore(tmp_path / "state.db")
        harness = Harness(config, clock, executor, {"cell0": 0.2, "sat0": 0.8}, store=store)
        harness.run(4)
        harness.signals["sat0"] = 0.1
        harness.run(30)

        restarted = Harness(config, clock, executor, {"cell0": 0.2, "sat0": 0.8}, store=store)
        assert restarted.controller.is_blacklisted(Mode.SATCOM)


# ============================================================================
# Threat Override Tests
# ============================================================================


class TestThreatOverride:
    """Tests for forced switches."""

    def test_critical_threat_switches_immediately(self, full) -> None:
        """Test a CRITICAL threat on a current channel forces the most secure mode."""
        full.controller.on_threat(threat("cell0", Severity.CRITICAL))

        assert full.controller.current_mode == Mode.TACTICAL
        assert full.active() == {"mesh0"}
        assert full.controller.is_suspect("cell0")
        assert full.controller.history()[-1].forced
        with pytest.raises(AuthenticationFailed):
            full.keyring.require("INFRASTRUCTURE")

    def test_forced_switch_completes_within_one_tick(self, config, clock) -> None:
        """Test a forced switch pending authentication commits on the next tick."""
        deferred = DeferredExecutor()
        harness = Harness(
            config, clock, deferred,
            {"mesh0": 0.9, "cell0": 0.9, "sat0": 0.8},
            paths=StubPaths(),
        )
        harness.controller.on_threat(threat("cell0", Severity.CRITICAL))

        state = harness.controller.state()
        assert state.phase == Phase.AUTHENTICATING
        assert state.forced

        deferred.run_all()
        harness.run(1)
        assert harness.controller.current_mode == Mode.TACTICAL

    def test_below_switch_severity(self, full) -> None:
        """Test MEDIUM threats do not force a switch."""
        full.controller.on_threat(threat("cell0", Severity.MEDIUM))

        assert full.controller.current_mode == Mode.INFRASTRUCTURE
        assert not full.controller.is_suspect("cell0")

    def test_threat_on_unused_channel(self, full) -> None:
        """Test a threat on a channel outside the current mode only marks it suspect."""
        full.controller.on_threat(threat("sat0"))

        assert full.controller.current_mode == Mode.INFRASTRUCTURE
        assert full.controller.is_suspect("sat0")

    def test_unknown_channel_ignored(self, full) -> None:
        """Test events not naming a channel are ignored."""
        full.controller.on_threat(threat("ab" * 16, Severity.CRITICAL))
        assert full.controller.current_mode == Mode.INFRASTRUCTURE

    def test_failed_forced_auth_tries_next(self, config, clock, executor) -> None:
        """Test a forced target failing authentication moves on to the next mode."""
        harness = Harness(
            config, clock, executor,
            {"mesh0": 0.9, "cell0": 0.9, "sat0": 0.8},
            failing={"mesh0"},
            paths=StubPaths(),
        )
        harness.controller.on_threat(threat("cell0"))

        assert harness.controller.current_mode == Mode.SATCOM
        outcomes = [(r.target, r.outcome) for r in harness.controller.history()]
        assert outcomes == [
            (Mode.TACTICAL, TransitionOutcome.CANCELLED),
            (Mode.SATCOM, TransitionOutcome.COMMITTED),
        ]

    def test_more_severe_threat_preempts(self, config, clock) -> None:
        """Test CRITICAL preempts a HIGH forced switch still in flight."""
        harness = Harness(
            config, clock, DeferredExecutor(),
            {"mesh0": 0.9, "cell0": 0.9, "sat0": 0.8},
            paths=StubPaths(),
        )
        harness.controller.on_threat(threat("cell0", Severity.HIGH))
        harness.controller.on_threat(threat("cell0", Severity.CRITICAL))

        history = harness.controller.history()
        assert [r.outcome for r in history] == [TransitionOutcome.CANCELLED]
        assert "preempted" in history[0].reason
        assert harness.controller.state().forced

    def test_equal_threat_does_not_restart(self, config, clock) -> None:
        """Test a second HIGH threat leaves the in-flight switch alone."""
        harness = Harness(
            config, clock, DeferredExecutor(),
            {"mesh0": 0.9, "cell0": 0.9, "sat0": 0.8},
            paths=StubPaths(),
        )
        harness.controller.on_threat(threat("cell0", Severity.HIGH))
        harness.controller.on_threat(threat("cell0", Severity.HIGH))

        assert harness.controller.history() == []

    def test_threat_on_target_abandons_transition(self, degrading) -> None:
        """Test a threat on the target's channel abandons the transition."""
        degrading.run(4)
        degrading.controller.on_threat(threat("sat0"))

        assert degrading.controller.current_mode == Mode.INFRASTRUCTURE
        assert degrading.controller.history()[-1].outcome == TransitionOutcome.ROLLED_BACK
        assert "sat0" not in degrading.active()


# ============================================================================
# EMERGENCY Tests
# ============================================================================


class TestEmergency:
    """Tests for EMERGENCY entry and exit."""

    def test_low_battery(self, config, clock, executor) -> None:
        """Test low battery enters EMERGENCY on the next tick."""
        context = StaticFlightContext()
        harness = Harness(
            config, clock, executor, {"cell0": 0.9, "emg0": 0.9}, context=context,
        )
        context.update(battery_level=0.05)
        harness.run(1)

        assert harness.controller.current_mode == Mode.EMERGENCY
        assert harness.active() == {"emg0"}

    def test_critical_mission_lowers_battery_floor(self, config, clock, executor) -> None:
        """Test a critical mission keeps flying below the normal battery floor."""
        context = StaticFlightContext()
        harness = Harness(
            config, clock, executor, {"cell0": 0.9, "emg0": 0.9}, context=context,
        )
        context.update(battery_level=0.07, mission_criticality=0.9)
        harness.run(1)
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE

        context.update(mission_criticality=0.5)
        harness.run(1)
        assert harness.controller.current_mode == Mode.EMERGENCY

    def test_critical_mission_battery_exhausted(self, config, clock, executor) -> None:
        """Test a critical mission still enters EMERGENCY below the critical floor."""
        context = StaticFlightContext()
        harness = Harness(
            config, clock, executor, {"cell0": 0.9, "emg0": 0.9}, context=context,
        )
        context.update(battery_level=0.04, mission_criticality=0.9)
        harness.run(1)
        assert harness.controller.current_mode == Mode.EMERGENCY

    def test_request_emergency(self, config, clock, executor) -> None:
        """Test an external request enters EMERGENCY immediately."""
        harness = Harness(config, clock, executor, {"cell0": 0.9, "emg0": 0.9})
        harness.controller.request_emergency("operator command")

        assert harness.controller.current_mode == Mode.EMERGENCY
        assert harness.controller.history()[-1].reason == "operator command"

    def test_blackout(self, config, clock, executor) -> None:
        """Test a sustained blackout enters EMERGENCY after the threshold."""
        harness = Harness(config, clock, executor, {"cell0": 0.0, "emg0": 0.9})

        # The first tick starts the blackout timer
        harness.run(300)
        assert harness.controller.current_mode == Mode.INFRASTRUCTURE
        harness.run(1)
        assert harness.controller.current_mode == Mode.EMERGENCY

    def test_blackout_reset_by_recovery(self, config, clock, executor) -> None:
        """Test a brief recovery restarts the blackout timer."""
        harness = Harness(config, clock, executor, {"cell0": 0.0, "emg0": 0.9})

        harness.run(200)
        harness.signals["cell0"] = 0.9
        harness.run(1)
        harness.signals["cell0"] = 0.0
        harness.run(200)

        assert harness.controller.current_mode == Mode.INFRASTRUCTURE

    def test_return_from_emergency(self, config, clock, executor) -> None:
        """Test restored connectivity leaves EMERGENCY through the normal path."""
        harness = Harness(config, clock, executor, {"cell0": 0.9, "emg0": 0.9})
        harness.controller.request_emergency("test")

        harness.run(40)

        assert harness.controller.current_mode == Mode.INFRASTRUCTURE
        assert harness.active() == {"cell0"}
