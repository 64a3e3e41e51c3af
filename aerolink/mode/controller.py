"""
AeroLink Mode Controller

Owns the communication mode state machine and is the only component
that activates or deactivates channel drivers.

Modes:
    TACTICAL        mesh relays only (onion routed)
    HYBRID          mesh relays + cellular
    INFRASTRUCTURE  cellular
    SATCOM          satellite
    EMERGENCY       cleartext beacon on the emergency radio, hopping

Predictive transitions (three stages):
    1. Forecast: every tick, score each mode over the look-ahead
       horizon (collector forecasts, flight-vector coverage, relay path
       health). A recommendation that differs from the current mode for
       the sustain window becomes a pending transition with a
       time-to-switch.
    2. Pre-transition: at time-to-switch <= pretransition_s the target's
       channels are authenticated on an executor without touching the
       current mode. Failure or timeout cancels the transition.
    3. Overlap: at time-to-switch <= overlap_trigger_s the target's
       channels are activated next to the current ones. A clean
       stabilization window commits (old channels deactivated, old keys
       purged); an overlap that runs out first rolls back and
       blacklists the target for the cooldown.

Threat overrides:
    A threat at or above mode.force_switch_severity on a channel of the
    current mode marks the channel suspect and forces a switch to the
    most secure available mode. Forced switches skip the forecast and
    the pre-transition wait but still authenticate before committing.
    A more severe threat preempts a forced switch already in flight.

EMERGENCY:
    Entered immediately on external policy (low battery, emergency
    request), or after every other mode has been unusable continuously
    for blackout_to_emergency_s.
    Missions at or above critical_mission_level use the lower
    critical_battery_level.

Sessions:
    The current mode must hold session credentials. A failed initial or
    post-rollback authentication is retried on the tick with exponential
    backoff (reauth_backoff_s doubling up to reauth_backoff_max_s).
    Every authentication attempt is numbered, and a result arriving after
    its attempt was timed out or superseded is wiped, never stored.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

from ..channel.base import ChannelKind
from ..threat.rules import Severity, ThreatEvent
from .keyring import AuthenticationFailed, ModeKeyring


logger = logging.getLogger(__name__)

# Transition records kept in memory
MAX_HISTORY = 100


class Mode(Enum):
    """Communication modes."""
    TACTICAL = "TACTICAL"
    HYBRID = "HYBRID"
    INFRASTRUCTURE = "INFRASTRUCTURE"
    SATCOM = "SATCOM"
    EMERGENCY = "EMERGENCY"


MODE_CHANNEL_KINDS: Dict[Mode, Tuple[ChannelKind, ...]] = {
    Mode.TACTICAL: (ChannelKind.MESH,),
    Mode.HYBRID: (ChannelKind.MESH, ChannelKind.CELLULAR),
    Mode.INFRASTRUCTURE: (ChannelKind.CELLULAR,),
    Mode.SATCOM: (ChannelKind.SATELLITE,),
    Mode.EMERGENCY: (ChannelKind.EMERGENCY,),
}

# Modes whose mesh traffic goes through onion-routed relay paths
RELAY_MODES = frozenset({Mode.TACTICAL, Mode.HYBRID})

# Most secure first
SECURITY_ORDER = (
    Mode.TACTICAL,
    Mode.HYBRID,
    Mode.INFRASTRUCTURE,
    Mode.SATCOM,
    Mode.EMERGENCY,
)


class Phase(Enum):
    """Transition phase of the controller."""
    STABLE = "stable"                  # no transition
    PENDING = "pending"                # forecast sustained, waiting for pre-transition
    AUTHENTICATING = "authenticating"  # target channels being authenticated
    READY = "ready"                    # authenticated, waiting for overlap trigger
    OVERLAP = "overlap"                # both channel sets active


class StabilizationFailed(Exception):
    """Target mode did not stabilize within the overlap window."""
    pass


class ModeTransitioning(Exception):
    """No usable channel right now because a forced switch is in flight."""
    pass


@dataclass(frozen=True)
class ModeState:
    """Read-only snapshot of the controller state."""
    mode: Mode
    phase: Phase = Phase.STABLE
    pending_target: Optional[Mode] = None
    transition_started_at: Optional[float] = None
    overlap_deadline: Optional[float] = None
    time_to_switch: Optional[float] = None
    forced: bool = False
    since: float = 0.0

    @property
    def in_transition(self) -> bool:
        return self.phase != Phase.STABLE

    @property
    def is_relay_mode(self) -> bool:
        return self.mode in RELAY_MODES


class TransitionOutcome(Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TransitionRecord:
    """One finished (or abandoned) transition."""
    source: Mode
    target: Mode
    outcome: TransitionOutcome
    reason: str
    forced: bool
    started_at: float
    finished_at: float
    error: Optional[Exception] = field(default=None, compare=False)


TransitionCallback = Callable[[TransitionRecord], None]


@dataclass
class _Transition:
    target: Mode
    forced: bool
    reason: str
    started_at: float
    switch_at: float
    phase: Phase
    severity: Optional[Severity] = None
    attempt: int = 0
    auth_future: Optional[Future] = None
    auth_started_at: Optional[float] = None
    overlap_deadline: Optional[float] = None
    stable_since: Optional[float] = None
    excluded: Set[Mode] = field(default_factory=set)


class ModeController:
    """
    Communication mode state machine.

    Usage:
        controller = ModeController(config, drivers, collector, keyring,
                                    path_manager=paths, context=provider)
        controller.tick()                 # on the mode cadence
        controller.on_threat(event)       # from the threat pipeline
        state = controller.state()
    """

    def __init__(
        self,
        config,
        channels: Sequence,
        collector,
        keyring: ModeKeyring,
        path_manager=None,
        detector=None,
        context=None,
        coverage=None,
        executor: Optional[Executor] = None,
        store=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Raises:
            ValueError: If the initial mode cannot be constructed
        """
        self._config = config
        self._channels = {c.channel_id: c for c in channels}
        self._collector = collector
        self._keyring = keyring
        self._paths = path_manager
        self._detector = detector
        self._context = context
        self._coverage = coverage
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2,
            thread_name_prefix="mode-auth",
        )
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()

        try:
            initial = Mode(config.mode.initial_mode.upper())
        except ValueError:
            raise ValueError(f"Invalid initial mode: {config.mode.initial_mode}")
        if not self.is_supported(initial):
            raise ValueError(f"No channel drivers for initial mode {initial.value}")

        now = clock()
        self._mode = initial
        self._since = now
        self._transition: Optional[_Transition] = None

        self._candidate: Optional[Tuple[Mode, float]] = None
        self._blackout_since: Optional[float] = None
        self._blacklist: Dict[Mode, float] = {}
        self._suspect: Dict[str, float] = {}
        self._failures: Dict[Mode, float] = {}
        self._last_commit: Optional[Tuple[Mode, float]] = None
        self._last_rollback_at: Optional[float] = None
        self._initiated_since_rollback = 0
        self._auth_attempts = 0
        self._reauth_future: Optional[Future] = None
        self._reauth_attempt: Optional[int] = None
        self._reauth_started_at = now
        self._reauth_failures = 0
        self._reauth_retry_at: Optional[float] = None

        self._history: Deque[TransitionRecord] = deque(maxlen=MAX_HISTORY)
        self._subscribers: List[TransitionCallback] = []

        if store is not None:
            for name, until in store.load_cooldowns(now).items():
                self._blacklist[Mode(name)] = until

        for channel in self.channels_for(initial):
            channel.activate()
        if initial != Mode.EMERGENCY:
            try:
                self._establish(initial)
            except AuthenticationFailed as e:
                self._reauth_failed(now, e)

        logger.info(f"Mode controller started in {initial.value}")

    # Read side

    def state(self) -> ModeState:
        """Snapshot of the current state."""
        with self._lock:
            t = self._transition
            now = self._clock()
            if t is None:
                return ModeState(mode=self._mode, since=self._since)
            return ModeState(
                mode=self._mode,
                phase=t.phase,
                pending_target=t.target,
                transition_started_at=t.started_at,
                overlap_deadline=t.overlap_deadline,
                time_to_switch=max(0.0, t.switch_at - now),
                forced=t.forced,
                since=self._since,
            )

    @property
    def current_mode(self) -> Mode:
        with self._lock:
            return self._mode

    def subscribe(self, callback: TransitionCallback) -> None:
        self._subscribers.append(callback)

    def history(self) -> List[TransitionRecord]:
        with self._lock:
            return list(self._history)

    def channels_for(self, mode: Mode) -> List:
        kinds = MODE_CHANNEL_KINDS[mode]
        return [c for c in self._channels.values() if c.kind in kinds]

    def is_supported(self, mode: Mode) -> bool:
        present = {c.kind for c in self._channels.values()}
        return all(kind in present for kind in MODE_CHANNEL_KINDS[mode])

    def is_suspect(self, channel_id: str, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            until = self._suspect.get(channel_id)
            return until is not None and now < until

    def is_blacklisted(self, mode: Mode, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        with self._lock:
            until = self._blacklist.get(mode)
            return until is not None and now < until

    def usable_channels(self, mode: Mode) -> List:
        """Channels of a mode that are not suspect."""
        now = self._clock()
        return [c for c in self.channels_for(mode) if not self.is_suspect(c.channel_id, now)]

    def sending_sets(self) -> List[Tuple[Mode, List]]:
        """
        Channel sets traffic may use, current mode first.

        During an overlap the target's channels are listed second.
        """
        with self._lock:
            sets = [(self._mode, self.usable_channels(self._mode))]
            t = self._transition
            if t is not None and t.phase == Phase.OVERLAP:
                sets.append((t.target, self.usable_channels(t.target)))
            return sets

    # Viability

    def _channel_quality(self, channel_id: str, horizon_s: float, now: float) -> float:
        max_error = self._config.mode.max_error_rate

        if horizon_s <= 0:
            obs = self._collector.latest(channel_id)
            if obs is None or now - obs.timestamp > self._config.metrics.window_s:
                return 0.0
            signal, error = obs.signal_quality, obs.error_rate
        else:
            forecast = self._collector.predict(channel_id, horizon_s)
            if forecast is None:
                return 0.0
            signal, error = forecast.signal_quality, forecast.error_rate

        if error > max_error:
            return 0.0
        return signal * (1.0 - error)

    def viability(self, mode: Mode, horizon_s: float = 0.0, now: Optional[float] = None) -> float:
        """
        Expected usability of a mode horizon_s seconds ahead (0.0-1.0).
        """
        now = self._clock() if now is None else now

        if not self.is_supported(mode):
            return 0.0
        if mode == Mode.EMERGENCY:
            return 1.0

        score = 1.0
        for kind in MODE_CHANNEL_KINDS[mode]:
            best = 0.0
            for channel in self._channels.values():
                if channel.kind != kind or self.is_suspect(channel.channel_id, now):
                    continue
                best = max(best, self._channel_quality(channel.channel_id, horizon_s, now))
            score = min(score, best)

        if self._coverage is not None and self._context is not None:
            position = self._context.get_context().extrapolate(horizon_s)
            expected = self._coverage.coverage(mode.value, position)
            if expected is not None:
                score = min(score, expected)

        if mode in RELAY_MODES and self._paths is not None:
            if not self._paths.health().available:
                score = 0.0

        return score

    def _forecast_horizons(self) -> List[float]:
        cfg = self._config.mode
        step = max(cfg.forecast_step_s, 0.1)
        horizons = [0.0]
        h = step
        while h <= cfg.lookahead_s:
            horizons.append(h)
            h += step
        return horizons

    def _recommend(self, now: float) -> Tuple[Optional[Mode], float]:
        """
        Recommended mode over the look-ahead horizon and time-to-switch.
        """
        cfg = self._config.mode
        threshold = cfg.viability_threshold
        horizons = self._forecast_horizons()

        recommended = None
        for name in cfg.preference:
            mode = Mode(name.upper())
            if mode == Mode.EMERGENCY or not self.is_supported(mode):
                continue
            if mode != self._mode and self.is_blacklisted(mode, now):
                continue
            if min(self.viability(mode, h, now) for h in horizons) >= threshold:
                recommended = mode
                break

        if recommended is None or recommended == self._mode:
            return recommended, 0.0

        # Switch when the current mode is forecast to drop below threshold
        if self._mode != Mode.EMERGENCY:
            for h in horizons:
                if self.viability(self._mode, h, now) < threshold:
                    return recommended, h

        return recommended, cfg.pretransition_s

    def _may_initiate(self, target: Mode, now: float) -> bool:
        cooldown = self._config.mode.cooldown_s

        if self.is_blacklisted(target, now):
            return False
        if self._last_rollback_at is not None and now - self._last_rollback_at < cooldown:
            if self._initiated_since_rollback >= 1:
                return False
        if self._last_commit is not None and self._mode != Mode.EMERGENCY:
            left, at = self._last_commit
            if left == target and now - at < cooldown:
                return False
        return True

    # Event inputs

    def on_threat(self, event: ThreatEvent) -> None:
        """
        Threat injection point.

        Only events naming one of our channels are acted on here; relay
        node verdicts belong to the path manager.
        """
        with self._lock:
            now = self._clock()
            channel = self._channels.get(event.affected)
            if channel is None:
                return

            minimum = Severity[self._config.mode.force_switch_severity.upper()]
            if event.severity < minimum:
                logger.debug(f"Threat {event.kind.value} on {event.affected} below switch severity")
                return

            self._suspect[channel.channel_id] = now + self._config.mode.cooldown_s

            t = self._transition
            if t is not None and channel in self.channels_for(t.target):
                self._abandon(now, f"target channel {channel.channel_id} under threat: {event.kind.value}")
                t = None

            if self._mode == Mode.EMERGENCY:
                return
            if channel not in self.channels_for(self._mode):
                return

            if t is not None and t.forced and t.severity is not None and t.severity >= event.severity:
                logger.info(f"Forced switch to {t.target.value} already in flight")
                return

            if t is not None:
                self._cancel(now, f"preempted by {event.severity.name} threat", None)

            self._force(now, event.severity, f"{event.kind.value} on {channel.channel_id}")

    def report_delivery(self, mode: Mode, ok: bool, now: Optional[float] = None) -> None:
        """Delivery feedback from the facade; failures restart stabilization."""
        if ok:
            return
        with self._lock:
            self._failures[mode] = self._clock() if now is None else now

    def request_emergency(self, reason: str) -> None:
        """External policy demands EMERGENCY now."""
        with self._lock:
            if self._mode != Mode.EMERGENCY:
                self._enter_emergency(self._clock(), reason)

    # Tick

    def tick(self, now: Optional[float] = None) -> ModeState:
        """Advance the state machine once."""
        with self._lock:
            now = self._clock() if now is None else now
            self._expire(now)
            self._harvest_reauth(now)

            policy = self._emergency_policy()
            if policy is not None:
                if self._mode != Mode.EMERGENCY:
                    self._enter_emergency(now, policy)
                return self.state()

            if self._check_blackout(now):
                return self.state()

            self._ensure_session(now)

            t = self._transition
            if t is None:
                self._tick_stable(now)
            elif t.phase == Phase.PENDING:
                self._tick_pending(now, t)
            elif t.phase == Phase.AUTHENTICATING:
                self._check_auth(now, t)
            elif t.phase == Phase.READY:
                self._tick_ready(now, t)
            elif t.phase == Phase.OVERLAP:
                self._tick_overlap(now, t)

            return self.state()

    def _expire(self, now: float) -> None:
        for channel_id in [c for c, until in self._suspect.items() if now >= until]:
            del self._suspect[channel_id]
            logger.info(f"Channel {channel_id} no longer suspect")
        for mode in [m for m, until in self._blacklist.items() if now >= until]:
            del self._blacklist[mode]
            if self._store is not None:
                self._store.clear_cooldown(mode.value)

    def _emergency_policy(self) -> Optional[str]:
        if self._context is None:
            return None
        cfg = self._config.mode
        ctx = self._context.get_context()
        if ctx.emergency_requested:
            return "emergency requested"
        floor = cfg.emergency_battery_level
        if ctx.mission_criticality >= cfg.critical_mission_level:
            floor = cfg.critical_battery_level
        if ctx.battery_level < floor:
            return f"battery at {ctx.battery_level:.0%}"
        return None

    def _check_blackout(self, now: float) -> bool:
        """Track continuous blackout; returns True if EMERGENCY was entered."""
        threshold = self._config.mode.viability_threshold
        others = [m for m in Mode if m != Mode.EMERGENCY]

        dark = all(
            self.is_blacklisted(m, now) or self.viability(m, 0.0, now) < threshold
            for m in others
        )
        if not dark:
            if self._blackout_since is not None:
                logger.info("Connectivity restored")
            self._blackout_since = None
            return False

        if self._blackout_since is None:
            self._blackout_since = now
            logger.warning("All non-emergency modes unusable")

        elapsed = now - self._blackout_since
        if self._mode != Mode.EMERGENCY and elapsed >= self._config.mode.blackout_to_emergency_s:
            self._enter_emergency(now, f"blackout for {elapsed:.0f}s")
            return True
        return False

    def _tick_stable(self, now: float) -> None:
        recommended, time_to_switch = self._recommend(now)

        if recommended is None or recommended == self._mode or not self._may_initiate(recommended, now):
            self._candidate = None
            return

        if self._candidate is None or self._candidate[0] != recommended:
            self._candidate = (recommended, now)
            return

        if now - self._candidate[1] < self._config.mode.sustain_s:
            return

        self._candidate = None
        self._initiated_since_rollback += 1
        self._transition = _Transition(
            target=recommended,
            forced=False,
            reason="forecast",
            started_at=now,
            switch_at=now + time_to_switch,
            phase=Phase.PENDING,
        )
        logger.info(
            f"Pending transition {self._mode.value} -> {recommended.value} "
            f"in {time_to_switch:.0f}s"
        )
        self._tick_pending(now, self._transition)

    def _still_recommended(self, now: float, t: _Transition) -> bool:
        recommended, time_to_switch = self._recommend(now)
        if recommended != t.target:
            self._cancel(now, "recommendation changed", None)
            return False
        t.switch_at = min(t.switch_at, now + time_to_switch)
        return True

    def _tick_pending(self, now: float, t: _Transition) -> None:
        if not self._still_recommended(now, t):
            return
        if t.switch_at - now <= self._config.mode.pretransition_s:
            self._start_auth(now, t)

    def _tick_ready(self, now: float, t: _Transition) -> None:
        if not self._still_recommended(now, t):
            return
        if t.switch_at - now <= self._config.mode.overlap_trigger_s:
            self._start_overlap(now, t)

    def _tick_overlap(self, now: float, t: _Transition) -> None:
        cfg = self._config.mode

        if self.viability(t.target, 0.0, now) < cfg.viability_threshold:
            self._failures[t.target] = now

        failed_at = self._failures.get(t.target)
        if failed_at is not None and failed_at > t.stable_since:
            t.stable_since = failed_at

        if now - t.stable_since >= cfg.stabilization_window_s:
            self._commit(now)
        elif now >= t.overlap_deadline:
            self._rollback(now, StabilizationFailed(
                f"{t.target.value} did not stabilize within {cfg.overlap_window_s:.0f}s"
            ))

    # Transition steps

    def _force(self, now: float, severity: Severity, reason: str, excluded: Optional[Set[Mode]] = None) -> None:
        target = self._most_secure_available(now, excluded or set())
        if target is None:
            logger.error(f"Forced switch ({reason}) found no target mode")
            return

        logger.warning(f"Forced switch {self._mode.value} -> {target.value}: {reason}")
        self._candidate = None
        self._transition = _Transition(
            target=target,
            forced=True,
            reason=reason,
            started_at=now,
            switch_at=now,
            phase=Phase.AUTHENTICATING,
            severity=severity,
            excluded=set(excluded or ()),
        )
        self._start_auth(now, self._transition)

    def _most_secure_available(self, now: float, excluded: Set[Mode]) -> Optional[Mode]:
        threshold = self._config.mode.viability_threshold
        for mode in SECURITY_ORDER:
            if mode == self._mode or mode in excluded or not self.is_supported(mode):
                continue
            if self.is_blacklisted(mode, now):
                continue
            if mode == Mode.EMERGENCY or self.viability(mode, 0.0, now) >= threshold:
                return mode
        return None

    def _establish(self, mode: Mode, attempt: Optional[int] = None):
        """
        Authenticate a mode's channels and keep the credentials.

        Runs on the executor. When the attempt is no longer the live one
        by the time authentication finishes (timed out, cancelled or
        superseded) the credential is wiped instead of stored.
        """
        credential = self._keyring.authenticate(mode.value, self.usable_channels(mode))
        with self._lock:
            if attempt is not None and not self._attempt_current(mode, attempt):
                credential.wipe()
                raise AuthenticationFailed(f"{mode.value} authentication attempt {attempt} is stale")
            self._keyring.store(credential)

        if self._detector is not None:
            for channel_id, strength in credential.strengths.items():
                self._detector.record_session(channel_id, strength)
        return credential

    def _attempt_current(self, mode: Mode, attempt: int) -> bool:
        t = self._transition
        if t is not None and t.attempt == attempt:
            return t.target == mode and t.phase == Phase.AUTHENTICATING
        return self._reauth_attempt == attempt and self._mode == mode

    def _start_auth(self, now: float, t: _Transition) -> None:
        t.phase = Phase.AUTHENTICATING
        t.auth_started_at = now

        if t.target == Mode.EMERGENCY:
            # Cleartext beacon mode has nothing to authenticate
            t.auth_future = None
            self._auth_succeeded(now, t)
            return

        logger.info(f"Authenticating {t.target.value}")
        self._auth_attempts += 1
        t.attempt = self._auth_attempts
        t.auth_future = self._executor.submit(self._establish, t.target, t.attempt)
        self._check_auth(now, t)

    def _check_auth(self, now: float, t: _Transition) -> None:
        future = t.auth_future
        if future is None:
            return

        if not future.done():
            if now - t.auth_started_at > self._config.mode.auth_timeout_s:
                future.cancel()
                self._auth_failed(now, t, AuthenticationFailed(
                    f"{t.target.value} authentication timed out"
                ))
            return

        error = future.exception()
        if error is not None:
            self._auth_failed(now, t, error)
        else:
            self._auth_succeeded(now, t)

    def _auth_failed(self, now: float, t: _Transition, error: BaseException) -> None:
        logger.warning(f"Pre-transition authentication for {t.target.value} failed: {error}")
        self._cancel(now, "authentication failed", error)

        if t.forced:
            self._force(now, t.severity or Severity.HIGH, t.reason, t.excluded | {t.target})

    def _auth_succeeded(self, now: float, t: _Transition) -> None:
        if t.forced:
            self._commit(now)
            return

        t.phase = Phase.READY
        if t.switch_at - now <= self._config.mode.overlap_trigger_s:
            self._start_overlap(now, t)

    def _start_overlap(self, now: float, t: _Transition) -> None:
        for channel in self.usable_channels(t.target):
            channel.activate()

        t.phase = Phase.OVERLAP
        t.stable_since = now
        t.overlap_deadline = now + self._config.mode.overlap_window_s
        self._failures.pop(t.target, None)
        logger.info(f"Overlap {self._mode.value} + {t.target.value} started")

    def _finish(self, record: TransitionRecord) -> None:
        self._history.append(record)
        for callback in list(self._subscribers):
            try:
                callback(record)
            except Exception:
                logger.exception("Transition subscriber failed")

    def _commit(self, now: float) -> None:
        t = self._transition
        source = self._mode
        target = t.target

        keep = {c.channel_id for c in self.usable_channels(target)}
        for channel in self.channels_for(source) + self.channels_for(target):
            if channel.channel_id in keep:
                channel.activate()
            else:
                channel.deactivate()

        self._keyring.purge(source.value)
        self._drop_reauth()

        self._mode = target
        self._since = now
        self._transition = None
        self._last_commit = (source, now)

        logger.warning(f"Mode {source.value} -> {target.value} committed ({t.reason})")
        self._finish(TransitionRecord(
            source=source,
            target=target,
            outcome=TransitionOutcome.COMMITTED,
            reason=t.reason,
            forced=t.forced,
            started_at=t.started_at,
            finished_at=now,
        ))

    def _cancel(self, now: float, reason: str, error: Optional[BaseException]) -> None:
        """Drop a transition that has not reached overlap."""
        t = self._transition
        if t is None:
            return
        if t.phase == Phase.OVERLAP:
            self._rollback(now, StabilizationFailed(reason))
            return

        if t.auth_future is not None and not t.auth_future.done():
            t.auth_future.cancel()
        self._keyring.purge(t.target.value)
        self._transition = None

        logger.info(f"Transition to {t.target.value} cancelled: {reason}")
        self._finish(TransitionRecord(
            source=self._mode,
            target=t.target,
            outcome=TransitionOutcome.CANCELLED,
            reason=reason,
            forced=t.forced,
            started_at=t.started_at,
            finished_at=now,
            error=error,
        ))

    def _abandon(self, now: float, reason: str) -> None:
        t = self._transition
        if t is None:
            return
        if t.phase == Phase.OVERLAP:
            self._rollback(now, StabilizationFailed(reason))
        else:
            self._cancel(now, reason, None)

    def _rollback(self, now: float, error: StabilizationFailed) -> None:
        t = self._transition
        current = {c.channel_id for c in self.channels_for(self._mode)}
        for channel in self.channels_for(t.target):
            if channel.channel_id not in current:
                channel.deactivate()
        self._keyring.purge(t.target.value)

        until = now + self._config.mode.cooldown_s
        self._blacklist[t.target] = until
        if self._store is not None:
            self._store.set_cooldown(t.target.value, until, str(error))

        self._transition = None
        self._last_rollback_at = now
        self._initiated_since_rollback = 0

        if self._mode != Mode.EMERGENCY and not self._keyring.is_valid(self._mode.value):
            logger.info(f"Re-authenticating {self._mode.value} after rollback")
            self._start_reauth(now)

        logger.warning(
            f"Rolled back to {self._mode.value}, {t.target.value} blacklisted "
            f"for {self._config.mode.cooldown_s:.0f}s: {error}"
        )
        self._finish(TransitionRecord(
            source=self._mode,
            target=t.target,
            outcome=TransitionOutcome.ROLLED_BACK,
            reason=str(error),
            forced=t.forced,
            started_at=t.started_at,
            finished_at=now,
            error=error,
        ))

    # Current mode session

    def _ensure_session(self, now: float) -> None:
        """Retry the current mode's session until it is established."""
        if self._mode == Mode.EMERGENCY or self._reauth_attempt is not None:
            return
        if self._keyring.is_valid(self._mode.value):
            return
        if self._reauth_retry_at is not None and now < self._reauth_retry_at:
            return
        logger.info(f"Re-authenticating {self._mode.value} (attempt {self._reauth_failures + 1})")
        self._start_reauth(now)

    def _start_reauth(self, now: float) -> None:
        if self._reauth_attempt is not None:
            return
        self._auth_attempts += 1
        self._reauth_attempt = self._auth_attempts
        self._reauth_started_at = now
        self._reauth_retry_at = None
        self._reauth_future = self._executor.submit(self._establish, self._mode, self._reauth_attempt)

    def _harvest_reauth(self, now: float) -> None:
        future = self._reauth_future
        if future is None:
            return
        if not future.done():
            if now - self._reauth_started_at > self._config.mode.auth_timeout_s:
                future.cancel()
                self._reauth_failed(now, AuthenticationFailed(
                    f"{self._mode.value} authentication timed out"
                ))
            return

        self._reauth_future = None
        self._reauth_attempt = None
        error = future.exception()
        if error is not None:
            self._reauth_failed(now, error)
        else:
            self._reauth_failures = 0
            logger.info(f"Session for {self._mode.value} re-established")

    def _reauth_failed(self, now: float, error: BaseException) -> None:
        cfg = self._config.mode
        self._reauth_future = None
        self._reauth_attempt = None
        self._reauth_failures += 1
        delay = min(cfg.reauth_backoff_s * 2 ** (self._reauth_failures - 1), cfg.reauth_backoff_max_s)
        self._reauth_retry_at = now + delay
        logger.error(f"Authentication of {self._mode.value} failed, retrying in {delay:.0f}s: {error}")

    def _drop_reauth(self) -> None:
        if self._reauth_future is not None:
            self._reauth_future.cancel()
        self._reauth_future = None
        self._reauth_attempt = None
        self._reauth_failures = 0
        self._reauth_retry_at = None

    def _enter_emergency(self, now: float, reason: str) -> None:
        if self._transition is not None:
            self._abandon(now, f"superseded by EMERGENCY ({reason})")

        logger.critical(f"Entering EMERGENCY: {reason}")
        self._transition = _Transition(
            target=Mode.EMERGENCY,
            forced=True,
            reason=reason,
            started_at=now,
            switch_at=now,
            phase=Phase.AUTHENTICATING,
            severity=Severity.CRITICAL,
        )
        self._commit(now)
        self._blackout_since = None

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def get_stats(self) -> dict:
        with self._lock:
            now = self._clock()
            return {
                "mode": self._mode.value,
                "phase": self._transition.phase.value if self._transition else Phase.STABLE.value,
                "since": self._since,
                "blacklisted": [m.value for m in self._blacklist if self.is_blacklisted(m, now)],
                "suspect_channels": [c for c in self._suspect if self.is_suspect(c, now)],
                "transitions": len(self._history),
                "blackout_since": self._blackout_since,
                "session_retry_at": self._reauth_retry_at,
                "session_failures": self._reauth_failures,
            }
