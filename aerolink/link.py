"""
AeroLink Link Controller

Facade used by the mission/application layer. Owns and wires the
metrics collector, threat detector, relay path manager and mode
controller for one node, and moves frames between the application
and the channel drivers.

Sending:
    TACTICAL/HYBRID  addressed messages on mesh are onion-wrapped over
                     the best relay path (ONION frame)
    other channels   addressed messages are sealed to the destination
                     (DIRECT frame, SEALED flag); broadcasts go as-is
    EMERGENCY        message rides in a cleartext beacon
    overlap          EMERGENCY/CRITICAL priority goes out on both
                     channel sets, everything else on the current one

Receiving (receive()):
    - de-duplicates frames (overlap copies, neighbour forwards)
    - peels onion layers and forwards inner packets as a relay
    - answers proof-of-relay challenges found in onion layers and
      relays attestations back toward the prober
    - delivers messages addressed to this node or broadcast
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence

from . import NODE_ID_LENGTH
from .beacon import EmergencyBeacon
from .channel.base import ChannelError, ChannelKind
from .crypto.envelope import EnvelopeError, open_envelope, seal_envelope_for_pubkey_bytes
from .crypto.keys import KeyError as KeyMaterialError, NODE_SCOPE
from .crypto.primitives import generate_message_id
from .delivery import AckHandle, DeliveryTracker, FailureCallback, Priority
from .metrics.collector import MetricsCollector
from .mode.controller import (
    Mode,
    ModeController,
    ModeState,
    ModeTransitioning,
    RELAY_MODES,
    TransitionOutcome,
    TransitionRecord,
)
from .mode.keyring import AuthenticationFailed, ModeKeyring
from .onion.codec import DecryptionFailed, OnionError, OnionPacket, peel, wrap
from .packet.dedup import DeduplicationCache
from .packet.format import (
    BeaconPayload,
    Frame,
    FrameFlags,
    FrameType,
    MessagePayload,
    build_frame,
    parse_frame,
)
from .relay.paths import NoPathAvailable, RelayEvent, RelayEventKind, RelayPathManager
from .relay.proof import ProbeReply, RelayProber, answer_probe
from .relay.registry import RelayRegistry
from .threat.detector import ThreatDetector
from .threat.rules import ThreatEvent


logger = logging.getLogger(__name__)

# Destination of swarm-wide broadcasts
BROADCAST = b"\x00" * NODE_ID_LENGTH

_DIRECT_AD = b"aerolink-direct-v1"

# Errors after which an EMERGENCY-priority message is queued for retry
_RETRYABLE = (NoPathAvailable, ModeTransitioning, AuthenticationFailed)


@dataclass(frozen=True)
class ReceivedMessage:
    """Message delivered to the application."""
    message_id: bytes
    sender_id: bytes
    destination_id: bytes
    priority: int
    body: bytes
    channel_id: Optional[str]
    frame_type: FrameType
    received_at: float
    beacon: Optional[BeaconPayload] = None

    @property
    def is_broadcast(self) -> bool:
        return self.destination_id == BROADCAST


MessageCallback = Callable[[ReceivedMessage], None]


class LinkController:
    """
    Adaptive link controller for one swarm node.

    Usage:
        link = LinkController(config, keystore, drivers, store=store)
        link.poll_metrics()              # metrics cadence
        link.tick()                      # control cadence
        handle = link.send(b"pos", Priority.NORMAL, destination=peer_id)
        for message in link.receive():
            ...
    """

    def __init__(
        self,
        config,
        keystore,
        channels: Sequence,
        store=None,
        context=None,
        coverage=None,
        predictor=None,
        authenticator=None,
        executor=None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            config: Shared Config
            keystore: KeyStore holding the node identity and peer keys
            channels: Channel drivers of this node
            store: Optional StateStore (trust history, cooldowns)
            context: Optional FlightContextProvider
            coverage: Optional CoverageModel
            predictor: Optional link quality Predictor
            authenticator: Optional ChannelAuthenticator
            executor: Executor for authentication and probes (one
                      thread pool per component if omitted)
            clock: Time source

        Raises:
            ValueError: If the initial mode cannot be constructed
        """
        self._config = config
        self._keystore = keystore
        self._identity = keystore.get_private_key(NODE_SCOPE)
        self._channels = {c.channel_id: c for c in channels}
        self._clock = clock
        self._lock = threading.Lock()

        self._collector = MetricsCollector(config, predictor)
        self._detector = ThreatDetector(config, clock=clock, store=store)
        self._registry = RelayRegistry(config, self.node_id, store=store, clock=clock)
        self._prober = RelayProber(config, self._probe_transport, executor=executor, clock=clock)
        self._paths = RelayPathManager(config, self._registry, self._prober, clock=clock)
        self._keyring = ModeKeyring(keystore, authenticator, clock=clock)
        self._mode = ModeController(
            config,
            channels,
            self._collector,
            self._keyring,
            path_manager=self._paths,
            detector=self._detector,
            context=context,
            coverage=coverage,
            executor=executor,
            store=store,
            clock=clock,
        )
        self._beacon = EmergencyBeacon(
            config,
            self.node_id,
            [c for c in channels if c.kind == ChannelKind.EMERGENCY],
            context=context,
            clock=clock,
        )
        self._tracker = DeliveryTracker(clock)

        self._frames = DeduplicationCache(
            ttl_seconds=config.link.dedup_ttl_s,
            max_entries=config.link.dedup_max_entries,
            clock=clock,
        )
        self._messages = DeduplicationCache(
            ttl_seconds=config.link.dedup_ttl_s,
            max_entries=config.link.dedup_max_entries,
            clock=clock,
        )

        self._outbox: Dict[bytes, MessagePayload] = {}
        self._beacons_heard: Dict[bytes, BeaconPayload] = {}
        self._message_callbacks: List[MessageCallback] = []

        self._stats = {
            "sent": 0,
            "received": 0,
            "relayed": 0,
            "dropped": 0,
            "probes_answered": 0,
            "relay_events": 0,
        }

        self._detector.subscribe(self.on_threat)
        self._paths.subscribe(self._on_relay_event)
        self._mode.subscribe(self._on_transition)

        logger.info(f"Link controller for {self.node_id.hex()[:16]} ready")

    # Components

    @property
    def node_id(self) -> bytes:
        return self._identity.node_id

    @property
    def public_key(self) -> bytes:
        return self._identity.public_bytes

    @property
    def collector(self) -> MetricsCollector:
        return self._collector

    @property
    def detector(self) -> ThreatDetector:
        return self._detector

    @property
    def registry(self) -> RelayRegistry:
        return self._registry

    @property
    def paths(self) -> RelayPathManager:
        return self._paths

    @property
    def prober(self) -> RelayProber:
        return self._prober

    @property
    def mode_controller(self) -> ModeController:
        return self._mode

    @property
    def keyring(self) -> ModeKeyring:
        return self._keyring

    @property
    def beacon(self) -> EmergencyBeacon:
        return self._beacon

    @property
    def tracker(self) -> DeliveryTracker:
        return self._tracker

    def current_mode(self) -> ModeState:
        """Current mode snapshot."""
        return self._mode.state()

    def on_message(self, callback: MessageCallback) -> None:
        self._message_callbacks.append(callback)

    def on_delivery_failed(self, callback: FailureCallback) -> None:
        self._tracker.register_callback(callback)

    # Inputs

    def on_threat(self, event: ThreatEvent) -> None:
        """
        Threat injection point.

        Relay verdicts go to the path manager first so that a mode
        forecast in the same tick already sees the pruned path table.
        """
        self._paths.on_threat(event)
        self._mode.on_threat(event)

    def poll_metrics(self) -> int:
        """
        Read one observation from every driver.

        Returns:
            Number of observations accepted by the collector
        """
        accepted = 0
        for channel in self._channels.values():
            observation = channel.get_observation()
            if observation is None:
                continue
            if self._collector.record(observation):
                accepted += 1
                self._detector.observe(observation)
        return accepted

    def report_path_latency(self, path_id: str, measured_ms: float) -> Optional[ThreatEvent]:
        """Feed a measured end-to-end latency of an installed path."""
        path = self._paths.find_path(path_id)
        if path is None:
            return None
        return self._detector.observe_path_latency(
            path_id,
            measured_ms,
            path.latency_estimate_ms,
            [node.node_id_hex() for node in path.nodes],
        )

    # Sending

    def send(
        self,
        message: bytes,
        priority: Priority = Priority.NORMAL,
        destination: Optional[bytes] = None,
        deadline: Optional[float] = None,
    ) -> AckHandle:
        """
        Send an application message.

        Args:
            message: Message body
            priority: Message priority
            destination: Destination node ID (broadcast if omitted)
            deadline: Absolute time (controller clock) until which an
                      EMERGENCY-priority message is retried

        Returns:
            AckHandle tracking the message

        Raises:
            NoPathAvailable: No channel of the current mode can carry it
            ModeTransitioning: The current mode is unusable while a
                               switch is in flight
            AuthenticationFailed: The current mode has no valid session
        """
        now = self._clock()
        priority = Priority(priority)
        destination = destination or BROADCAST
        if len(destination) != NODE_ID_LENGTH:
            raise ValueError(f"Invalid destination ID length: {len(destination)}")

        payload = MessagePayload(
            message_id=generate_message_id(self.node_id, int(now * 1000)),
            sender_id=self.node_id,
            destination_id=destination,
            priority=int(priority),
            body=message,
        )

        if priority == Priority.EMERGENCY and deadline is None:
            deadline = now + self._config.link.default_emergency_deadline_s

        handle = AckHandle(
            message_id=payload.message_id,
            destination_id=destination,
            priority=priority,
            created_at=now,
            deadline=deadline,
        )

        try:
            modes = self._dispatch(payload, priority, now)
        except _RETRYABLE as e:
            if priority != Priority.EMERGENCY:
                raise
            handle.record_attempt_failed(now, e, self._config.link.retry_interval_s)
            with self._lock:
                self._outbox[handle.message_id] = payload
            self._tracker.queue(handle)
            return handle

        handle.record_sent(now, modes)
        return handle

    def _dispatch(self, payload: MessagePayload, priority: Priority, now: float) -> List[str]:
        """
        Hand a message to the current channel set(s).

        Returns:
            Names of the modes that carried it
        """
        state = self._mode.state()
        sets = self._mode.sending_sets()
        current_usable = bool(sets[0][1])

        if not (priority.is_urgent and len(sets) > 1):
            sets = [s for s in sets if s[1]][:1]

        carried = []
        last_error = None
        for index, (mode, channels) in enumerate(sets):
            if not channels:
                continue
            try:
                ok = self._send_on(mode, channels, payload, priority, duplicate=index > 0)
            except (NoPathAvailable, AuthenticationFailed) as e:
                last_error = e
                ok = False
            self._mode.report_delivery(mode, ok, now)
            if ok:
                carried.append(mode.value)

        if carried:
            with self._lock:
                self._stats["sent"] += 1
            return carried

        if not current_usable and state.in_transition:
            raise ModeTransitioning(
                f"{state.mode.value} unusable while switching to "
                f"{state.pending_target.value if state.pending_target else '?'}"
            )
        if last_error is not None:
            raise last_error
        raise NoPathAvailable(f"No channel of {state.mode.value} accepted the message")

    def _send_on(
        self,
        mode: Mode,
        channels: Sequence,
        payload: MessagePayload,
        priority: Priority,
        duplicate: bool,
    ) -> bool:
        if mode == Mode.EMERGENCY:
            return self._beacon.emit(payload.to_bytes()) > 0

        self._keyring.require(mode.value)

        flags = FrameFlags.NONE
        if priority.is_urgent:
            flags |= FrameFlags.URGENT
        if duplicate:
            flags |= FrameFlags.DUPLICATE

        path_error = None
        for channel in channels:
            try:
                frame = self._frame_for(mode, channel, payload, flags)
            except NoPathAvailable as e:
                path_error = e
                continue

            data = frame.to_bytes()
            self._remember(frame)
            result = channel.send(data)
            if result.ok:
                return True
            logger.debug(f"{channel.channel_id} refused frame: {result.error}")

        if path_error is not None:
            raise path_error
        return False

    def _frame_for(self, mode: Mode, channel, payload: MessagePayload, flags: int) -> Frame:
        if payload.destination_id == BROADCAST:
            return build_frame(FrameType.DIRECT, payload.to_bytes(), flags=flags)

        try:
            destination_key = self._keystore.get_peer_public_key(payload.destination_id)
        except KeyMaterialError as e:
            raise NoPathAvailable(str(e))

        if mode in RELAY_MODES and channel.kind == ChannelKind.MESH:
            path = self._paths.best_path()
            try:
                packet = wrap(payload.to_bytes(), path, payload.destination_id, destination_key)
            except OnionError as e:
                raise NoPathAvailable(f"Cannot wrap for path {path.path_id}: {e}")
            return build_frame(FrameType.ONION, packet.to_bytes(), flags=flags)

        sealed = seal_envelope_for_pubkey_bytes(payload.to_bytes(), destination_key, _DIRECT_AD)
        return build_frame(FrameType.DIRECT, sealed, flags=flags | FrameFlags.SEALED)

    def _remember(self, frame: Frame) -> None:
        self._frames.add(self._dedup_key(frame))

    @staticmethod
    def _dedup_key(frame: Frame) -> bytes:
        # Header fields change per hop; type and payload identify the frame
        return bytes([frame.frame_type]) + frame.payload

    # Receiving

    def receive(self) -> List[ReceivedMessage]:
        """
        Drain every driver and process the frames.

        Returns:
            Messages delivered to this node
        """
        now = self._clock()
        delivered = []

        for channel in list(self._channels.values()):
            while True:
                data = channel.receive()
                if data is None:
                    break
                message = self._handle_frame(channel, data, now)
                if message is not None:
                    delivered.append(message)

        return delivered

    def _handle_frame(self, channel, data: bytes, now: float) -> Optional[ReceivedMessage]:
        try:
            frame = parse_frame(data, channel.channel_id, now)
        except ValueError as e:
            logger.debug(f"Invalid frame on {channel.channel_id}: {e}")
            self._stats["dropped"] += 1
            return None

        if self._frames.check_and_add(self._dedup_key(frame)):
            return None

        handlers = {
            FrameType.ONION: self._handle_onion,
            FrameType.DIRECT: self._handle_direct,
            FrameType.BEACON: self._handle_beacon,
            FrameType.PROBE_REPLY: self._handle_probe_reply,
        }
        handler = handlers.get(frame.frame_type)
        if handler is None:
            logger.debug(f"Unhandled frame type: {frame.frame_type}")
            return None

        try:
            return handler(channel, frame)
        except ValueError as e:
            logger.debug(f"Malformed {frame.frame_type.name} frame: {e}")
            self._stats["dropped"] += 1
            return None

    def _handle_onion(self, channel, frame: Frame) -> Optional[ReceivedMessage]:
        try:
            packet = OnionPacket.from_bytes(frame.payload)
            result = peel(packet, self._identity)
        except DecryptionFailed:
            # Addressed to another hop
            return None
        except OnionError as e:
            logger.debug(f"Bad onion packet: {e}")
            return None

        if result.probe is not None:
            self._answer_probe(channel, result.probe, frame.payload)
            if result.is_destination:
                return None

        if result.is_destination:
            return self._deliver(MessagePayload.from_bytes(result.payload), channel, frame)

        self._forward(channel, frame, result.inner.to_bytes())
        self._stats["relayed"] += 1
        logger.debug(f"Relayed onion layer toward {result.next_hop.hex()[:16]}")
        return None

    def _handle_direct(self, channel, frame: Frame) -> Optional[ReceivedMessage]:
        body = frame.payload
        if frame.header.flags & FrameFlags.SEALED:
            try:
                body = open_envelope(body, self._identity, _DIRECT_AD)
            except EnvelopeError:
                return None

        message = MessagePayload.from_bytes(body)
        if message.destination_id not in (BROADCAST, self.node_id):
            return None
        return self._deliver(message, channel, frame)

    def _handle_beacon(self, channel, frame: Frame) -> Optional[ReceivedMessage]:
        beacon = BeaconPayload.from_bytes(frame.payload)
        if beacon.node_id == self.node_id:
            return None

        with self._lock:
            self._beacons_heard[beacon.node_id] = beacon
        logger.info(
            f"Emergency beacon from {beacon.node_id.hex()[:16]} seq {beacon.sequence} "
            f"battery {beacon.battery_level:.0%}"
        )

        if not beacon.message:
            return None
        return self._deliver(MessagePayload.from_bytes(beacon.message), channel, frame, beacon)

    def _answer_probe(self, channel, block: bytes, layer: bytes) -> None:
        reply = answer_probe(block, layer)
        out = build_frame(FrameType.PROBE_REPLY, reply.to_bytes())
        self._remember(out)
        channel.send(out.to_bytes())
        self._stats["probes_answered"] += 1

    def _handle_probe_reply(self, channel, frame: Frame) -> None:
        reply = ProbeReply.from_bytes(frame.payload)
        if self._prober.owns(reply.probe_id):
            self._prober.record_reply(reply)
            return None

        self._forward(channel, frame, frame.payload)
        return None

    def _forward(self, channel, frame: Frame, payload: bytes) -> None:
        try:
            forwarded = frame.forwarded(payload)
        except ValueError:
            logger.debug(f"Dropping {frame.frame_type.name}: TTL expired")
            return
        self._remember(forwarded)
        result = channel.send(forwarded.to_bytes())
        if not result.ok:
            logger.debug(f"Forward on {channel.channel_id} failed: {result.error}")

    def _deliver(
        self,
        message: MessagePayload,
        channel,
        frame: Frame,
        beacon: Optional[BeaconPayload] = None,
    ) -> Optional[ReceivedMessage]:
        if message.sender_id == self.node_id:
            return None
        if self._messages.check_and_add(message.message_id):
            return None

        received = ReceivedMessage(
            message_id=message.message_id,
            sender_id=message.sender_id,
            destination_id=message.destination_id,
            priority=message.priority,
            body=message.body,
            channel_id=channel.channel_id,
            frame_type=frame.frame_type,
            received_at=frame.received_at,
            beacon=beacon,
        )
        self._stats["received"] += 1

        for callback in list(self._message_callbacks):
            try:
                callback(received)
            except Exception:
                logger.exception("Message callback failed")
        return received

    def beacons_heard(self) -> Dict[bytes, BeaconPayload]:
        """Latest emergency beacon heard from each node."""
        with self._lock:
            return dict(self._beacons_heard)

    # Proof-of-relay transport (runs on the prober's executor)

    def _probe_transport(self, path, packet: bytes) -> None:
        frame = build_frame(FrameType.ONION, packet)
        self._remember(frame)
        data = frame.to_bytes()

        mesh = [c for c in self._channels.values() if c.kind == ChannelKind.MESH]
        results = [channel.send(data) for channel in mesh]
        if not any(r.ok for r in results):
            raise ChannelError("No mesh channel accepted the probe")

    # Control cadence

    def tick(self, now: Optional[float] = None) -> ModeState:
        """
        One control cycle: flush batched threats, maintain paths,
        advance the mode state machine, retry queued messages and
        beacon in EMERGENCY.
        """
        now = self._clock() if now is None else now

        self._detector.flush(now)
        self._paths.tick(now)
        self._mode.tick(now)
        self.service_delivery(now)
        return self._mode.state()

    def service_delivery(self, now: Optional[float] = None) -> None:
        """Retry queued messages and beacon while in EMERGENCY."""
        now = self._clock() if now is None else now
        self.retry(now)
        if self._mode.current_mode == Mode.EMERGENCY and self._beacon.is_due(now):
            self._beacon.emit(now=now)

    def retry(self, now: Optional[float] = None) -> int:
        """
        Retry queued EMERGENCY-priority messages.

        Returns:
            Number of messages sent on this pass
        """
        now = self._clock() if now is None else now
        sent = 0

        for handle in self._tracker.due(now):
            if handle.deadline is not None and now >= handle.deadline:
                continue
            with self._lock:
                payload = self._outbox.get(handle.message_id)
            if payload is None:
                continue

            try:
                modes = self._dispatch(payload, handle.priority, now)
            except _RETRYABLE as e:
                handle.record_attempt_failed(now, e, self._config.link.retry_interval_s)
                continue

            handle.record_sent(now, modes)
            self._tracker.mark_sent(handle)
            with self._lock:
                self._outbox.pop(handle.message_id, None)
            sent += 1
            logger.info(f"Queued message {handle.message_id.hex()[:16]} sent after {handle.attempts} attempts")

        for handle in self._tracker.expire(now):
            with self._lock:
                self._outbox.pop(handle.message_id, None)

        return sent

    # Event handlers

    def _on_relay_event(self, event: RelayEvent) -> None:
        self._stats["relay_events"] += 1
        if event.kind == RelayEventKind.NO_PATH_AVAILABLE:
            logger.warning("No relay path available")
        elif event.kind == RelayEventKind.PATHS_DEGRADED:
            logger.warning(f"Relay paths degraded: {event.detail}")

    def _on_transition(self, record: TransitionRecord) -> None:
        if record.outcome != TransitionOutcome.COMMITTED:
            return
        if Mode.EMERGENCY in (record.source, record.target):
            self._beacon.reset()
        if record.target == Mode.EMERGENCY:
            logger.critical(f"EMERGENCY beacon active: {record.reason}")

    # Lifecycle

    def start(self) -> None:
        self._frames.start()
        self._messages.start()

    def shutdown(self) -> None:
        self._frames.stop()
        self._messages.stop()
        self._prober.shutdown()
        self._mode.shutdown()

    def get_stats(self) -> dict:
        with self._lock:
            stats = dict(self._stats)
            queued = len(self._outbox)
        stats.update({
            "node_id": self.node_id.hex(),
            "mode": self._mode.get_stats(),
            "paths": self._paths.get_stats(),
            "threats": self._detector.get_stats(),
            "metrics": self._collector.get_stats(),
            "delivery": self._tracker.get_stats(),
            "beacon": self._beacon.get_stats(),
            "outbox": queued,
        })
        return stats
