"""
AeroLink Relay Registry

Tracks known relay nodes, their trust scores and the link topology
observed between them.

Features:
- Trust is clamped to [0, 1] and only changes through threat verdicts
  and proof-of-relay outcomes
- Soft quarantine: nodes below the trust floor stay registered but are
  not eligible for path computation, and are purged after the
  quarantine expiry
- Topology edges carry measured latency and delivery reliability
- Nodes not announced or seen on a link for relay.node_stale_s are
  left out of path computation until they show up again
- Optional persistence of nodes and trust history (StateStore)

Design:
- RelayNode values are immutable; an update installs a new value
- A version counter tells the path manager when to recompute
"""

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, List, Optional, Tuple

from ..crypto.primitives import X25519_KEY_SIZE
from .. import NODE_ID_LENGTH
from ..store import NodeRecord


logger = logging.getLogger(__name__)

# Capability flags
CAP_RELAY = 0x01
CAP_EGRESS = 0x02

# Trust of a newly discovered node
DEFAULT_TRUST = 0.5


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


@dataclass(frozen=True)
class RelayNode:
    """
    Snapshot of one relay node.
    """
    node_id: bytes                  # 16 bytes
    public_key: bytes               # 32 bytes (X25519)
    trust_score: float = DEFAULT_TRUST
    last_seen: float = 0.0
    capability_flags: int = CAP_RELAY

    # Link-layer estimates reported for the node
    reliability: float = 1.0        # 0.0-1.0 delivery ratio
    bandwidth_kbps: float = 0.0

    quarantined_at: Optional[float] = None

    def __post_init__(self):
        if len(self.node_id) != NODE_ID_LENGTH:
            raise ValueError(f"Invalid node ID length: {len(self.node_id)}")
        if len(self.public_key) != X25519_KEY_SIZE:
            raise ValueError(f"Invalid public key length: {len(self.public_key)}")
        object.__setattr__(self, "trust_score", _clamp(self.trust_score))
        object.__setattr__(self, "reliability", _clamp(self.reliability))

    @property
    def is_relay(self) -> bool:
        return bool(self.capability_flags & CAP_RELAY)

    @property
    def is_egress(self) -> bool:
        return bool(self.capability_flags & CAP_EGRESS)

    @property
    def is_quarantined(self) -> bool:
        return self.quarantined_at is not None

    def node_id_hex(self) -> str:
        return self.node_id.hex()


@dataclass(frozen=True)
class LinkMetrics:
    """Measured quality of one undirected topology edge."""
    latency_ms: float
    reliability: float = 1.0
    observed_at: float = 0.0


def edge_key(a: bytes, b: bytes) -> Tuple[bytes, bytes]:
    """Canonical (sorted) key for an undirected edge."""
    return (a, b) if a <= b else (b, a)


class RelayRegistry:
    """
    Registry of relay nodes and the links between them.

    The local node takes part in the topology (as the root of every
    path) but is never itself a RelayNode entry.

    Usage:
        registry = RelayRegistry(config, local_id)
        registry.add_or_update(node_id, public_key, capability_flags=CAP_RELAY)
        registry.observe_link(local_id, node_id, latency_ms=20)
        registry.adjust_trust(node_id, -0.3, "spoofing suspected")
    """

    def __init__(
        self,
        config,
        local_id: bytes,
        store=None,
        clock: Callable[[], float] = time.time,
    ):
        self._config = config
        self._local_id = local_id
        self._store = store
        self._clock = clock

        self._nodes: Dict[bytes, RelayNode] = {}
        self._links: Dict[Tuple[bytes, bytes], LinkMetrics] = {}
        self._lock = threading.RLock()
        self._version = 0

        if store is not None:
            self._load()

    @property
    def local_id(self) -> bytes:
        return self._local_id

    @property
    def version(self) -> int:
        """Incremented on every change that can affect path selection."""
        with self._lock:
            return self._version

    def _load(self) -> None:
        for record in self._store.load_nodes():
            self._nodes[record.node_id] = RelayNode(
                node_id=record.node_id,
                public_key=record.public_key,
                trust_score=record.trust_score,
                last_seen=record.last_seen,
                capability_flags=record.capability_flags,
                quarantined_at=record.quarantined_at,
            )
        if self._nodes:
            logger.info(f"Loaded {len(self._nodes)} relay nodes from state store")

    def _persist(self, node: RelayNode) -> None:
        if self._store is None:
            return
        self._store.save_node(NodeRecord(
            node_id=node.node_id,
            public_key=node.public_key,
            trust_score=node.trust_score,
            capability_flags=node.capability_flags,
            last_seen=node.last_seen,
            quarantined_at=node.quarantined_at,
        ))

    def _install(self, node: RelayNode) -> RelayNode:
        self._nodes[node.node_id] = node
        self._version += 1
        self._persist(node)
        return node

    def add_or_update(
        self,
        node_id: bytes,
        public_key: bytes,
        capability_flags: int = CAP_RELAY,
        reliability: Optional[float] = None,
        bandwidth_kbps: Optional[float] = None,
    ) -> RelayNode:
        """
        Add a new relay or refresh an existing one.

        Trust is never changed here. A node re-announcing a different
        public key keeps its node entry but the key is replaced only if
        the node is not quarantined.
        """
        now = self._clock()

        with self._lock:
            existing = self._nodes.get(node_id)
            if existing is None:
                node = RelayNode(
                    node_id=node_id,
                    public_key=public_key,
                    last_seen=now,
                    capability_flags=capability_flags,
                    reliability=1.0 if reliability is None else reliability,
                    bandwidth_kbps=0.0 if bandwidth_kbps is None else bandwidth_kbps,
                )
                logger.info(f"New relay node: {node_id.hex()[:16]}...")
                return self._install(node)

            if existing.is_quarantined and public_key != existing.public_key:
                logger.warning(f"Quarantined node {node_id.hex()[:16]} re-announced with a new key")
                public_key = existing.public_key

            node = replace(
                existing,
                public_key=public_key,
                last_seen=now,
                capability_flags=capability_flags,
                reliability=existing.reliability if reliability is None else reliability,
                bandwidth_kbps=existing.bandwidth_kbps if bandwidth_kbps is None else bandwidth_kbps,
            )
            return self._install(node)

    def get(self, node_id: bytes) -> Optional[RelayNode]:
        with self._lock:
            return self._nodes.get(node_id)

    def nodes(self) -> List[RelayNode]:
        with self._lock:
            return list(self._nodes.values())

    def is_stale(self, node: RelayNode, now: Optional[float] = None) -> bool:
        """Not announced or seen on a link for relay.node_stale_s."""
        now = self._clock() if now is None else now
        return now - node.last_seen > self._config.relay.node_stale_s

    def is_eligible(self, node: RelayNode, now: Optional[float] = None) -> bool:
        """Whether a node may appear in a computed path."""
        return (
            not node.is_quarantined
            and not self.is_stale(node, now)
            and (node.is_relay or node.is_egress)
            and node.trust_score >= self._config.relay.trust_floor
            and node.trust_score > 0.0
        )

    def eligible_nodes(self) -> Dict[bytes, RelayNode]:
        with self._lock:
            now = self._clock()
            return {nid: n for nid, n in self._nodes.items() if self.is_eligible(n, now)}

    # Topology

    def observe_link(
        self,
        a: bytes,
        b: bytes,
        latency_ms: float,
        reliability: float = 1.0,
    ) -> None:
        """
        Record (or refresh) an edge between two nodes.

        Both endpoints count as seen.
        """
        if a == b:
            return
        now = self._clock()
        with self._lock:
            key = edge_key(a, b)
            previous = self._links.get(key)
            self._links[key] = LinkMetrics(
                latency_ms=max(0.0, latency_ms),
                reliability=_clamp(reliability),
                observed_at=now,
            )
            for node_id in key:
                node = self._nodes.get(node_id)
                if node is None:
                    continue
                if self.is_stale(node, now):
                    self._version += 1
                self._nodes[node_id] = replace(node, last_seen=now)
            if previous is None or previous.latency_ms != latency_ms or previous.reliability != reliability:
                self._version += 1

    def remove_link(self, a: bytes, b: bytes) -> None:
        with self._lock:
            if self._links.pop(edge_key(a, b), None) is not None:
                self._version += 1

    def link(self, a: bytes, b: bytes) -> Optional[LinkMetrics]:
        with self._lock:
            return self._links.get(edge_key(a, b))

    def neighbors(self, node_id: bytes) -> Dict[bytes, LinkMetrics]:
        with self._lock:
            result = {}
            for (a, b), metrics in self._links.items():
                if a == node_id:
                    result[b] = metrics
                elif b == node_id:
                    result[a] = metrics
            return result

    # Trust

    def set_trust(self, node_id: bytes, value: float, reason: str) -> Optional[RelayNode]:
        """
        Set a node's trust score.

        Crossing below the trust floor puts the node in soft quarantine;
        recovering above it releases the quarantine.
        """
        now = self._clock()

        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return None

            value = _clamp(value)
            floor = self._config.relay.trust_floor
            quarantined_at = node.quarantined_at

            if value < floor or value == 0.0:
                if quarantined_at is None:
                    quarantined_at = now
                    logger.warning(
                        f"Relay {node_id.hex()[:16]} quarantined "
                        f"(trust {value:.2f} < {floor:.2f}): {reason}"
                    )
            elif quarantined_at is not None:
                quarantined_at = None
                logger.info(f"Relay {node_id.hex()[:16]} released from quarantine")

            updated = self._install(replace(node, trust_score=value, quarantined_at=quarantined_at))

        if self._store is not None:
            self._store.record_trust(node_id, updated.trust_score, reason, now)
        return updated

    def adjust_trust(self, node_id: bytes, delta: float, reason: str) -> Optional[RelayNode]:
        """Add delta to a node's trust score (clamped)."""
        with self._lock:
            node = self._nodes.get(node_id)
            if node is None:
                return None
            return self.set_trust(node_id, node.trust_score + delta, reason)

    def quarantine(self, node_id: bytes, reason: str) -> Optional[RelayNode]:
        """Force trust to 0 and quarantine the node."""
        return self.set_trust(node_id, 0.0, reason)

    def expire(self, now: Optional[float] = None) -> List[bytes]:
        """
        Purge nodes whose quarantine has expired, and their edges.

        Returns:
            Purged node IDs
        """
        now = self._clock() if now is None else now
        expiry = self._config.relay.quarantine_expiry_s

        with self._lock:
            purged = [
                nid for nid, node in self._nodes.items()
                if node.quarantined_at is not None and now - node.quarantined_at >= expiry
            ]
            for node_id in purged:
                del self._nodes[node_id]
                for key in [k for k in self._links if node_id in k]:
                    del self._links[key]
                logger.info(f"Purged relay {node_id.hex()[:16]} after quarantine expiry")

            if purged:
                self._version += 1

        if purged and self._store is not None:
            self._store.delete_nodes(purged)
        return purged

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "nodes": len(self._nodes),
                "eligible": sum(1 for n in self._nodes.values() if self.is_eligible(n)),
                "quarantined": sum(1 for n in self._nodes.values() if n.is_quarantined),
                "egress": sum(1 for n in self._nodes.values() if n.is_egress),
                "links": len(self._links),
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)
