"""
AeroLink Relay Path Manager

Computes multi-hop relay paths from this node to an egress, keeps a
small set of diverse paths ready, and prunes paths through relays that
misbehave.

Path scoring:
    score = reliability      x 0.30
          + security_level   x 0.25
          + latency factor   x 0.20   (reference / latency, capped at 1)
          + bandwidth factor x 0.15   (bandwidth / best candidate)
          + 1 / hop_count    x 0.10

Selection:
- Top-N node-disjoint paths (no shared relay; a common final egress
  is allowed)
- When fewer than N node-disjoint paths exist, remaining slots are
  filled with edge-disjoint paths and the selection is marked degraded

Concurrency:
- RelayPath and PathSelection are immutable
- recompute() installs a new selection with a single reference swap,
  so a sender always works against one consistent selection
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

from .. import NODE_ID_LENGTH
from ..crypto.primitives import blake2b_hash
from ..threat.rules import Severity, ThreatEvent, ThreatKind
from .proof import ProbeResult, RelayCompromised, RelayProber
from .registry import RelayNode, RelayRegistry, edge_key


logger = logging.getLogger(__name__)

# Bound on DFS output per recompute
MAX_CANDIDATES = 256

SCORE_WEIGHTS = {
    "reliability": 0.30,
    "security": 0.25,
    "latency": 0.20,
    "bandwidth": 0.15,
    "hops": 0.10,
}

# Fraction of relay.threat_trust_penalty applied per severity
SEVERITY_PENALTY = {
    Severity.LOW: 0.25,
    Severity.MEDIUM: 0.5,
    Severity.HIGH: 1.0,
}


class NoPathAvailable(Exception):
    """No usable relay path exists. Recoverable; reported as capability loss."""
    pass


@dataclass(frozen=True)
class RelayPath:
    """
    Immutable relay path, first hop to egress.
    """
    nodes: Tuple[RelayNode, ...]
    reliability: float
    security_level: float
    latency_estimate_ms: float
    bandwidth_estimate: float
    score: float
    path_id: str

    @property
    def hop_count(self) -> int:
        return len(self.nodes)

    @property
    def node_ids(self) -> Tuple[bytes, ...]:
        return tuple(n.node_id for n in self.nodes)

    @property
    def first_hop(self) -> RelayNode:
        return self.nodes[0]

    @property
    def egress(self) -> RelayNode:
        return self.nodes[-1]

    def contains(self, node_id: bytes) -> bool:
        return node_id in self.node_ids

    def edges(self, source_id: bytes) -> FrozenSet[Tuple[bytes, bytes]]:
        ids = (source_id,) + self.node_ids
        return frozenset(edge_key(a, b) for a, b in zip(ids, ids[1:]))


def path_id_for(node_ids: Sequence[bytes]) -> str:
    return blake2b_hash(b"".join(node_ids), digest_size=8, person=b"aerolink-path").hex()


def score_path(
    reliability: float,
    security_level: float,
    latency_ms: float,
    bandwidth: float,
    hop_count: int,
    latency_reference_ms: float,
    best_bandwidth: float,
) -> float:
    """Weighted path score, every factor normalised to [0, 1]."""
    latency_factor = 1.0 if latency_ms <= 0 else min(1.0, latency_reference_ms / latency_ms)
    bandwidth_factor = 1.0 if best_bandwidth <= 0 else min(1.0, bandwidth / best_bandwidth)

    return (
        reliability * SCORE_WEIGHTS["reliability"]
        + security_level * SCORE_WEIGHTS["security"]
        + latency_factor * SCORE_WEIGHTS["latency"]
        + bandwidth_factor * SCORE_WEIGHTS["bandwidth"]
        + (1.0 / hop_count) * SCORE_WEIGHTS["hops"]
    )


def node_disjoint(a: RelayPath, b: RelayPath) -> bool:
    """True if the paths share no relay (a common final egress is allowed)."""
    shared = set(a.node_ids) & set(b.node_ids)
    if not shared:
        return True
    return a.egress.node_id == b.egress.node_id and shared == {a.egress.node_id}


def _largest_node_disjoint(candidates: Sequence[RelayPath], n: int) -> List[RelayPath]:
    """
    Largest node-disjoint subset of candidates, capped at n.

    Depth-first over the score-sorted candidates, so among subsets of
    the maximum size the one preferring higher scored paths is found
    first. Stops as soon as n paths are found.
    """
    best: List[RelayPath] = []
    chosen: List[RelayPath] = []
    if n <= 0:
        return best

    def search(start: int) -> bool:
        nonlocal best
        if len(chosen) > len(best):
            best = list(chosen)
            if len(best) >= n:
                return True
        for index in range(start, len(candidates)):
            if len(chosen) + (len(candidates) - index) <= len(best):
                return False
            path = candidates[index]
            if all(node_disjoint(path, other) for other in chosen):
                chosen.append(path)
                if search(index + 1):
                    return True
                chosen.pop()
        return False

    search(0)
    return best


def select_diverse(
    candidates: Sequence[RelayPath],
    n: int,
    source_id: bytes,
) -> Tuple[Tuple[RelayPath, ...], int, bool]:
    """
    Top-N selection, node-disjoint first.

    The node-disjoint set is the largest one the candidates allow, not
    the one a greedy walk down the scores happens to reach. Only when
    that maximum is below n are the remaining slots filled with
    edge-disjoint paths.

    Args:
        candidates: Paths sorted best first

    Returns:
        (selected, node_disjoint_count, degraded)
    """
    selected = _largest_node_disjoint(candidates, n)

    node_disjoint_count = len(selected)
    degraded = node_disjoint_count < n

    if degraded:
        used_edges = set()
        for chosen in selected:
            used_edges |= chosen.edges(source_id)

        for path in candidates:
            if len(selected) >= n:
                break
            if path in selected:
                continue
            edges = path.edges(source_id)
            if edges & used_edges:
                continue
            selected.append(path)
            used_edges |= edges

    return tuple(selected), node_disjoint_count, degraded


@dataclass(frozen=True)
class PathSelection:
    """One installed path table."""
    paths: Tuple[RelayPath, ...] = ()
    required: int = 0
    node_disjoint_count: int = 0
    degraded: bool = False
    computed_at: float = 0.0

    @property
    def available(self) -> bool:
        return bool(self.paths)


@dataclass(frozen=True)
class PathHealth:
    """Path manager capability summary for the mode controller."""
    available: bool
    path_count: int
    degraded: bool
    best_score: float
    best_latency_ms: Optional[float]


class RelayEventKind(Enum):
    RELAY_COMPROMISED = "relay_compromised"
    PATHS_DEGRADED = "paths_degraded"
    NO_PATH_AVAILABLE = "no_path_available"
    PATHS_RESTORED = "paths_restored"


@dataclass(frozen=True)
class RelayEvent:
    """Observable path manager event."""
    kind: RelayEventKind
    timestamp: float
    node_id: Optional[bytes] = None
    path_id: Optional[str] = None
    detail: str = ""
    error: Optional[Exception] = field(default=None, compare=False)


RelayEventCallback = Callable[[RelayEvent], None]


class RelayPathManager:
    """
    Maintains the relay path table.

    Usage:
        manager = RelayPathManager(config, registry, prober)
        manager.recompute()

        path = manager.best_path()      # raises NoPathAvailable
        manager.on_threat(event)
        manager.tick()                  # expiry, probes, periodic recompute
    """

    def __init__(
        self,
        config,
        registry: RelayRegistry,
        prober: Optional[RelayProber] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._registry = registry
        self._prober = prober
        self._clock = clock

        self._selection = PathSelection()
        self._computed_version = -1
        self._swap_lock = threading.Lock()
        self._compute_lock = threading.Lock()

        self._first_seen: Dict[str, float] = {}
        self._last_probe: Dict[str, float] = {}
        self._subscribers: List[RelayEventCallback] = []

        self._recomputes = 0
        self._compromised = 0

    @property
    def registry(self) -> RelayRegistry:
        return self._registry

    def subscribe(self, callback: RelayEventCallback) -> None:
        self._subscribers.append(callback)

    def _publish(self, event: RelayEvent) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                logger.exception(f"Relay event subscriber failed on {event.kind.value}")

    @property
    def selection(self) -> PathSelection:
        with self._swap_lock:
            return self._selection

    # Path computation

    def _candidates(self, eligible: Dict[bytes, RelayNode]) -> List[Tuple[RelayNode, ...]]:
        max_hops = self._config.relay.max_hops
        source = self._registry.local_id
        results: List[Tuple[RelayNode, ...]] = []

        def visit(current: bytes, prefix: Tuple[RelayNode, ...], visited: FrozenSet[bytes]):
            for node_id in sorted(self._registry.neighbors(current)):
                if len(results) >= MAX_CANDIDATES:
                    return
                node = eligible.get(node_id)
                if node is None or node_id in visited:
                    continue

                path = prefix + (node,)
                if node.is_egress:
                    results.append(path)
                if len(path) < max_hops and node.is_relay:
                    visit(node_id, path, visited | {node_id})

        visit(source, (), frozenset({source}))
        return results

    def _build(self, nodes: Tuple[RelayNode, ...]) -> Tuple[float, float, float, float]:
        source = self._registry.local_id
        ids = (source,) + tuple(n.node_id for n in nodes)

        latency = 0.0
        reliability = 1.0
        for a, b in zip(ids, ids[1:]):
            link = self._registry.link(a, b)
            latency += link.latency_ms if link else 0.0
            reliability *= link.reliability if link else 1.0
        for node in nodes:
            reliability *= node.reliability

        security = min(n.trust_score for n in nodes)
        bandwidth = min(n.bandwidth_kbps for n in nodes)
        return reliability, security, latency, bandwidth

    def recompute(self, now: Optional[float] = None) -> PathSelection:
        """Recompute and atomically install the path table."""
        now = self._clock() if now is None else now

        with self._compute_lock:
            version = self._registry.version
            eligible = self._registry.eligible_nodes()

            raw = [(nodes, self._build(nodes)) for nodes in self._candidates(eligible)]
            best_bandwidth = max((attrs[3] for _, attrs in raw), default=0.0)

            candidates = []
            for nodes, (reliability, security, latency, bandwidth) in raw:
                candidates.append(RelayPath(
                    nodes=nodes,
                    reliability=reliability,
                    security_level=security,
                    latency_estimate_ms=latency,
                    bandwidth_estimate=bandwidth,
                    score=score_path(
                        reliability, security, latency, bandwidth, len(nodes),
                        self._config.relay.latency_reference_ms, best_bandwidth,
                    ),
                    path_id=path_id_for([n.node_id for n in nodes]),
                ))

            candidates.sort(key=lambda p: (-p.score, p.hop_count, p.path_id))

            n = self._config.relay.path_diversity_n
            paths, disjoint_count, degraded = select_diverse(
                candidates, n, self._registry.local_id
            )
            selection = PathSelection(
                paths=paths,
                required=n,
                node_disjoint_count=disjoint_count,
                degraded=degraded,
                computed_at=now,
            )

            with self._swap_lock:
                previous = self._selection
                self._selection = selection
            self._computed_version = version
            self._recomputes += 1

        # Probe bookkeeping follows the installed selection
        current = {path.path_id for path in paths}
        self._first_seen = {pid: t for pid, t in list(self._first_seen.items()) if pid in current}
        self._last_probe = {pid: t for pid, t in list(self._last_probe.items()) if pid in current}
        for path in paths:
            self._first_seen.setdefault(path.path_id, now)

        self._report_change(previous, selection, now)
        return selection

    def _report_change(self, previous: PathSelection, current: PathSelection, now: float) -> None:
        if not current.available:
            if previous.available or self._recomputes == 1:
                logger.warning("No relay path available")
                self._publish(RelayEvent(RelayEventKind.NO_PATH_AVAILABLE, now))
            return

        if current.degraded and (not previous.degraded or not previous.available):
            logger.warning(
                f"Path diversity degraded: {current.node_disjoint_count} node-disjoint "
                f"of {current.required} required, {len(current.paths)} selected"
            )
            self._publish(RelayEvent(
                RelayEventKind.PATHS_DEGRADED,
                now,
                detail=f"{current.node_disjoint_count}/{current.required} node-disjoint",
            ))
        elif not current.degraded and (previous.degraded or not previous.available) and self._recomputes > 1:
            logger.info(f"Relay paths restored: {len(current.paths)} node-disjoint")
            self._publish(RelayEvent(RelayEventKind.PATHS_RESTORED, now))

    def best_path(self, exclude: Sequence[bytes] = ()) -> RelayPath:
        """
        Highest scoring installed path.

        Raises:
            NoPathAvailable: If no installed path is usable
        """
        excluded = set(exclude)
        for path in self.selection.paths:
            if excluded.intersection(path.node_ids):
                continue
            if not all(self._is_usable(node_id) for node_id in path.node_ids):
                continue
            return path
        raise NoPathAvailable("No relay path available")

    def _is_usable(self, node_id: bytes) -> bool:
        node = self._registry.get(node_id)
        return node is not None and self._registry.is_eligible(node)

    def health(self) -> PathHealth:
        selection = self.selection
        usable = [
            p for p in selection.paths
            if all(self._is_usable(node_id) for node_id in p.node_ids)
        ]
        best = usable[0] if usable else None
        return PathHealth(
            available=bool(usable),
            path_count=len(usable),
            degraded=selection.degraded,
            best_score=best.score if best else 0.0,
            best_latency_ms=best.latency_estimate_ms if best else None,
        )

    def find_path(self, path_id: str) -> Optional[RelayPath]:
        for path in self.selection.paths:
            if path.path_id == path_id:
                return path
        return None

    # Threats and probes

    def on_threat(self, event: ThreatEvent) -> None:
        """
        Apply a threat verdict.

        Events naming a relay lower its trust by a severity-scaled
        penalty (CRITICAL quarantines it). A timing anomaly on an
        installed path triggers an on-demand probe of that path.
        """
        changed = False

        node_id = self._parse_node_id(event.affected)
        if node_id is not None and self._registry.get(node_id) is not None:
            reason = f"{event.kind.value} ({event.severity.name})"
            if event.severity >= Severity.CRITICAL:
                self._registry.quarantine(node_id, reason)
            else:
                penalty = self._config.relay.threat_trust_penalty * SEVERITY_PENALTY[event.severity]
                self._registry.adjust_trust(node_id, -penalty, reason)
            changed = True

        if event.kind == ThreatKind.TRAFFIC_ANALYSIS_OR_TAMPERING:
            path = self.find_path(event.affected)
            if path is not None and self._prober is not None:
                if self._prober.start(path):
                    self._last_probe[path.path_id] = self._clock()
                    logger.info(f"On-demand probe of path {path.path_id} after timing anomaly")

        if changed:
            self.recompute()

    @staticmethod
    def _parse_node_id(affected: str) -> Optional[bytes]:
        try:
            node_id = bytes.fromhex(affected)
        except ValueError:
            return None
        return node_id if len(node_id) == NODE_ID_LENGTH else None

    def probe(self, path: RelayPath) -> bool:
        """Start an on-demand probe of a path."""
        if self._prober is None:
            return False
        started = self._prober.start(path)
        if started:
            self._last_probe[path.path_id] = self._clock()
        return started

    def apply_probe_result(self, result: ProbeResult) -> None:
        now = self._clock()

        if result.ok:
            for node_id in result.node_ids:
                self._registry.adjust_trust(node_id, self._config.relay.trust_reward, "proof-of-relay passed")
            return

        try:
            result.raise_for_status()
        except RelayCompromised as e:
            self._compromised += 1
            logger.warning(str(e))
            self._registry.quarantine(e.node_id, f"proof-of-relay failed: {e.reason}")
            self.recompute(now)
            self._publish(RelayEvent(
                RelayEventKind.RELAY_COMPROMISED,
                now,
                node_id=e.node_id,
                path_id=e.path_id,
                detail=e.reason,
                error=e,
            ))
            return

        logger.debug(f"Probe on {result.path_id} inconclusive: {result.reason}")

    def tick(self, now: Optional[float] = None) -> List[ProbeResult]:
        """
        Periodic maintenance.

        Purges expired quarantines, harvests finished probes, recomputes
        when the registry changed or the interval elapsed, and starts
        periodic probes. Never blocks on a probe.
        """
        now = self._clock() if now is None else now

        self._registry.expire(now)

        results = self._prober.harvest(now) if self._prober is not None else []
        for result in results:
            self.apply_probe_result(result)

        selection = self.selection
        if (
            self._registry.version != self._computed_version
            or now - selection.computed_at >= self._config.relay.recompute_interval_s
        ):
            selection = self.recompute(now)

        if self._prober is not None:
            interval = self._config.relay.probe_interval_s
            for path in selection.paths:
                last = self._last_probe.get(path.path_id, self._first_seen.get(path.path_id, now))
                if now - last >= interval and self._prober.start(path):
                    self._last_probe[path.path_id] = now

        return results

    def get_stats(self) -> dict:
        selection = self.selection
        return {
            "paths": len(selection.paths),
            "required": selection.required,
            "node_disjoint": selection.node_disjoint_count,
            "degraded": selection.degraded,
            "recomputes": self._recomputes,
            "tracked_paths": len(self._first_seen),
            "compromised": self._compromised,
            "probes": self._prober.get_stats() if self._prober is not None else None,
        }
