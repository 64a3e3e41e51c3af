"""
AeroLink Proof-of-Relay

Challenge/response check that every relay on a path actually forwarded
a probe, without any relay learning more than its own challenge.

Protocol:
    The probe travels the path as an ordinary ONION frame built from
    PROBE layers (see onion.codec), padded to the size of a data onion.
    Hop i's layer carries its challenge:

        challenge_i   = probe_id || payload_digest || i || secret_i

    hop_i -> source: ProbeReply(probe_id, i, attestation_i)

        attestation_i = BLAKE2b(key=secret_i,
                                payload_digest || i || H(layer_i))[:16]

    layer_i is the exact packet hop i received. It exists only inside
    hop i-1's layer, so a relay that answers but does not forward leaves
    every later hop without a challenge, and each attestation also binds
    the bytes the previous hop handed on.

Blame:
    - first hop without a valid attestation, if a later hop attested
      (it received and forwarded but stayed silent)
    - otherwise the probe was lost between the last attesting hop and
      the next one: the less trusted of the two, ties going to the hop
      that should have forwarded
    - a complete but slow round trip blames the least trusted hop

Probes are sent on an executor and replies are fed back through
record_reply(). harvest() only evaluates probes that are complete or
overdue, so a slow probe never blocks the caller.
"""

import logging
import struct
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..crypto.primitives import (
    blake2b_hash,
    constant_time_compare,
    random_bytes,
    secure_zero,
)
from ..onion.codec import onion_size, wrap_probe


logger = logging.getLogger(__name__)

PROBE_ID_LENGTH = 16
PAYLOAD_DIGEST_LENGTH = 32
SECRET_LENGTH = 32
ATTESTATION_LENGTH = 16
LAYER_DIGEST_LENGTH = 32

# Floor for probe timeouts on very short paths
MIN_PROBE_TIMEOUT_S = 0.05

_PROOF_PERSON = b"aerolink-proof"
_LAYER_PERSON = b"aerolink-layer"


class RelayCompromised(Exception):
    """A relay failed proof-of-relay."""

    def __init__(self, node_id: bytes, path_id: str, reason: str):
        super().__init__(f"Relay {node_id.hex()[:16]} compromised on path {path_id}: {reason}")
        self.node_id = node_id
        self.path_id = path_id
        self.reason = reason


def layer_digest(layer: bytes) -> bytes:
    return blake2b_hash(layer, digest_size=LAYER_DIGEST_LENGTH, person=_LAYER_PERSON)


def attest(secret: bytes, payload_digest: bytes, hop_index: int, received_digest: bytes) -> bytes:
    """Keyed attestation a hop returns for its challenge."""
    return blake2b_hash(
        payload_digest + bytes([hop_index]) + received_digest,
        digest_size=ATTESTATION_LENGTH,
        key=secret,
        person=_PROOF_PERSON,
    )


@dataclass(frozen=True)
class ProbeChallenge:
    """One hop's challenge, carried inside that hop's onion layer."""
    probe_id: bytes
    payload_digest: bytes
    hop_index: int
    secret: bytes

    _FORMAT = f">{PROBE_ID_LENGTH}s{PAYLOAD_DIGEST_LENGTH}sB{SECRET_LENGTH}s"
    SIZE = struct.calcsize(_FORMAT)

    def to_bytes(self) -> bytes:
        return struct.pack(self._FORMAT, self.probe_id, self.payload_digest, self.hop_index, self.secret)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ProbeChallenge':
        if len(data) != cls.SIZE:
            raise ValueError(f"Probe challenge has wrong size: {len(data)}")
        probe_id, payload_digest, hop_index, secret = struct.unpack(cls._FORMAT, data)
        return cls(probe_id=probe_id, payload_digest=payload_digest, hop_index=hop_index, secret=secret)


@dataclass(frozen=True)
class ProbeRequest:
    """A built probe: the onion for the first hop plus what the source checks against."""
    probe_id: bytes
    payload_digest: bytes
    packet: bytes
    layer_digests: Tuple[bytes, ...]

    @property
    def hop_count(self) -> int:
        return len(self.layer_digests)


@dataclass(frozen=True)
class ProbeReply:
    """One hop's attestation as carried in a PROBE_REPLY frame."""
    probe_id: bytes
    hop_index: int
    attestation: bytes

    _FORMAT = ">16sB16s"
    SIZE = struct.calcsize(_FORMAT)

    def to_bytes(self) -> bytes:
        return struct.pack(self._FORMAT, self.probe_id, self.hop_index, self.attestation)

    @classmethod
    def from_bytes(cls, data: bytes) -> 'ProbeReply':
        if len(data) < cls.SIZE:
            raise ValueError(f"Probe reply too short: {len(data)}")
        probe_id, hop_index, attestation = struct.unpack(cls._FORMAT, data[:cls.SIZE])
        return cls(probe_id=probe_id, hop_index=hop_index, attestation=attestation)


def build_probe(path, size: int = 0) -> Tuple[ProbeRequest, List[bytearray]]:
    """
    Build a probe for a path.

    Args:
        path: RelayPath to probe
        size: Pad the onion to at least this many bytes

    Returns:
        (request, per-hop secrets). The caller owns the secrets and
        must zero them when done.
    """
    probe_id = random_bytes(PROBE_ID_LENGTH)
    payload_digest = blake2b_hash(random_bytes(32), digest_size=PAYLOAD_DIGEST_LENGTH)

    secrets = []
    blocks = []
    for index in range(len(path.nodes)):
        secret = bytearray(random_bytes(SECRET_LENGTH))
        secrets.append(secret)
        blocks.append(ProbeChallenge(probe_id, payload_digest, index, bytes(secret)).to_bytes())

    layers = wrap_probe(path, blocks, size)
    request = ProbeRequest(
        probe_id=probe_id,
        payload_digest=payload_digest,
        packet=layers[0].to_bytes(),
        layer_digests=tuple(layer_digest(layer.to_bytes()) for layer in layers),
    )
    return request, secrets


def answer_probe(block: bytes, layer: bytes) -> ProbeReply:
    """
    Relay side: attest a challenge found in our onion layer.

    Args:
        block: Challenge block from the peeled layer
        layer: The onion packet as we received it

    Raises:
        ValueError: If the block is malformed
    """
    challenge = ProbeChallenge.from_bytes(block)
    secret = bytearray(challenge.secret)
    try:
        attestation = attest(
            bytes(secret), challenge.payload_digest, challenge.hop_index, layer_digest(layer),
        )
    finally:
        secure_zero(secret)
    return ProbeReply(probe_id=challenge.probe_id, hop_index=challenge.hop_index, attestation=attestation)


def assign_blame(nodes: Sequence, attested: Sequence[bool]) -> Tuple[Optional[int], str]:
    """
    Index of the hop to blame for missing attestations.

    Returns:
        (index, reason), or (None, "") when every hop attested
    """
    if all(attested):
        return None, ""

    first = list(attested).index(False)
    if any(attested[first + 1:]):
        return first, f"hop {first} forwarded the probe but did not attest"
    if first == 0:
        return 0, "no valid attestation from hop 0"

    holder, silent = nodes[first - 1], nodes[first]
    index = first if silent.trust_score < holder.trust_score else first - 1
    return index, f"probe lost between hop {first - 1} and hop {first}"


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one proof-of-relay round trip."""
    path_id: str
    node_ids: Tuple[bytes, ...]
    ok: bool
    attested: Tuple[bool, ...]
    rtt_ms: Optional[float]
    timeout_ms: float
    failed_node: Optional[bytes] = None
    reason: str = ""
    completed_at: float = field(default_factory=time.time)

    def raise_for_status(self) -> None:
        """
        Raises:
            RelayCompromised: If a node was blamed for the failure
        """
        if self.failed_node is not None:
            raise RelayCompromised(self.failed_node, self.path_id, self.reason)


# transport(path, packet) hands the probe onion to the path's first hop.
# Raises if nothing could be sent.
ProbeTransport = Callable[[object, bytes], None]


@dataclass
class _InFlight:
    path: object
    request: ProbeRequest
    secrets: List[bytearray]
    started_at: float
    timeout_s: float
    future: Optional[Future] = None
    attested: Dict[int, float] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return len(self.attested) == self.request.hop_count


class RelayProber:
    """
    Runs proof-of-relay probes off the caller's thread.

    Usage:
        prober = RelayProber(config, transport)
        prober.start(path)
        ...
        prober.record_reply(reply)      # as PROBE_REPLY frames arrive
        for result in prober.harvest():
            handle(result)
    """

    def __init__(
        self,
        config,
        transport: ProbeTransport,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._transport = transport
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=2,
            thread_name_prefix="relay-probe",
        )
        self._clock = clock

        self._in_flight: Dict[str, _InFlight] = {}
        self._by_probe_id: Dict[bytes, _InFlight] = {}
        self._lock = threading.Lock()

        self._started = 0
        self._passed = 0
        self._failed = 0
        self._rejected_replies = 0

    def timeout_for(self, path) -> float:
        """Probe timeout in seconds: multiplier x expected round trip."""
        expected_rtt_s = 2.0 * path.latency_estimate_ms / 1000.0
        return max(MIN_PROBE_TIMEOUT_S, self._config.relay.probe_latency_multiplier * expected_rtt_s)

    def probe_size(self, path) -> int:
        """Onion size matching a data message over the same path."""
        return onion_size(path.hop_count, self._config.relay.probe_message_size)

    def is_probing(self, path_id: str) -> bool:
        with self._lock:
            return path_id in self._in_flight

    def owns(self, probe_id: bytes) -> bool:
        with self._lock:
            return probe_id in self._by_probe_id

    def start(self, path) -> bool:
        """
        Start probing a path.

        Returns:
            False if that path already has a probe in flight
        """
        with self._lock:
            if path.path_id in self._in_flight:
                return False

        request, secrets = build_probe(path, self.probe_size(path))
        timeout_s = self.timeout_for(path)
        entry = _InFlight(
            path=path,
            request=request,
            secrets=secrets,
            started_at=self._clock(),
            timeout_s=timeout_s,
        )

        # Registered before sending; replies can arrive before submit returns
        with self._lock:
            self._in_flight[path.path_id] = entry
            self._by_probe_id[request.probe_id] = entry
            self._started += 1

        future = self._executor.submit(self._transport, path, request.packet)
        with self._lock:
            entry.future = future

        logger.debug(f"Probing path {path.path_id} ({path.hop_count} hops, timeout {timeout_s * 1000:.0f}ms)")
        return True

    def record_reply(self, reply: ProbeReply, now: Optional[float] = None) -> bool:
        """
        Check one attestation against its probe.

        Returns:
            True if the reply was a valid, new attestation
        """
        now = self._clock() if now is None else now

        with self._lock:
            entry = self._by_probe_id.get(reply.probe_id)
            if entry is None:
                return False

            index = reply.hop_index
            if not 0 <= index < entry.request.hop_count or index in entry.attested:
                return False

            expected = attest(
                bytes(entry.secrets[index]),
                entry.request.payload_digest,
                index,
                entry.request.layer_digests[index],
            )
            if not constant_time_compare(expected, reply.attestation):
                self._rejected_replies += 1
                logger.debug(f"Invalid attestation for hop {index} on {entry.path.path_id}")
                return False

            entry.attested[index] = now
            return True

    def harvest(self, now: Optional[float] = None) -> List[ProbeResult]:
        """Evaluate complete, failed-to-send or overdue probes without blocking."""
        now = self._clock() if now is None else now

        with self._lock:
            ready = [
                (path_id, entry) for path_id, entry in self._in_flight.items()
                if entry.complete
                or self._send_error(entry) is not None
                or now - entry.started_at > entry.timeout_s
            ]
            for path_id, entry in ready:
                del self._in_flight[path_id]
                self._by_probe_id.pop(entry.request.probe_id, None)

        results = []
        for _, entry in ready:
            try:
                results.append(self._evaluate(entry, now))
            finally:
                for secret in entry.secrets:
                    secure_zero(secret)

        for result in results:
            if result.ok:
                self._passed += 1
            else:
                self._failed += 1
        return results

    @staticmethod
    def _send_error(entry: _InFlight) -> Optional[BaseException]:
        future = entry.future
        if future is None or not future.done() or future.cancelled():
            return None
        return future.exception()

    def _evaluate(self, entry: _InFlight, now: float) -> ProbeResult:
        path = entry.path
        timeout_ms = entry.timeout_s * 1000.0
        hops = entry.request.hop_count
        attested = [index in entry.attested for index in range(hops)]

        def result(ok, rtt_ms, failed_node=None, reason=""):
            return ProbeResult(
                path_id=path.path_id,
                node_ids=path.node_ids,
                ok=ok,
                attested=tuple(attested),
                rtt_ms=rtt_ms,
                timeout_ms=timeout_ms,
                failed_node=failed_node,
                reason=reason,
                completed_at=now,
            )

        error = self._send_error(entry)
        if error is not None:
            # Nothing left our radio; no relay can be blamed
            logger.warning(f"Probe on {path.path_id} not sent: {error}")
            return result(False, None, reason=f"probe not sent: {error}")

        if entry.future is not None and not entry.future.done():
            entry.future.cancel()

        index, reason = assign_blame(path.nodes, attested)
        if index is not None:
            return result(False, None, failed_node=path.node_ids[index], reason=reason)

        rtt_ms = (max(entry.attested.values()) - entry.started_at) * 1000.0
        if rtt_ms > timeout_ms:
            weakest = min(path.nodes, key=lambda n: n.trust_score)
            return result(
                False, rtt_ms,
                failed_node=weakest.node_id,
                reason=f"round trip exceeded {timeout_ms:.0f}ms",
            )

        return result(True, rtt_ms)

    def shutdown(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def get_stats(self) -> dict:
        with self._lock:
            in_flight = len(self._in_flight)
        return {
            "in_flight": in_flight,
            "started": self._started,
            "passed": self._passed,
            "failed": self._failed,
            "rejected_replies": self._rejected_replies,
        }
