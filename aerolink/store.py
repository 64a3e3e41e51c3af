"""
AeroLink Persisted State

Small sqlite database for the state that must survive a restart:
- Relay registry (identity, trust score, quarantine timestamp)
- Trust score history (append-only, one row per change)
- Mode blacklist cooldowns
- Last good session strength per channel (downgrade detection)
- Known-good fingerprint per channel (spoofing detection)

Raw key material is never stored here.

Design:
- One short-lived connection per operation
- Records are keyed by node_id / channel_id / mode with a timestamp
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional


logger = logging.getLogger(__name__)

# Trust history rows kept per node
MAX_HISTORY_PER_NODE = 1000


@dataclass
class TrustRecord:
    """One trust score change."""
    node_id: bytes
    trust_score: float
    reason: str
    recorded_at: float


@dataclass
class NodeRecord:
    """Persisted relay registry row."""
    node_id: bytes
    public_key: bytes
    trust_score: float
    capability_flags: int
    last_seen: float
    quarantined_at: Optional[float]


class StateStore:
    """
    sqlite-backed persistence for controller state.

    Usage:
        store = StateStore(config.storage.state_db_path)
        store.record_trust(node_id, 0.0, "probe failed", now)
        cooldowns = store.load_cooldowns(now)
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._lock = threading.Lock()

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS relay_nodes (
                    node_id BLOB PRIMARY KEY,
                    public_key BLOB NOT NULL,
                    trust_score REAL NOT NULL,
                    capability_flags INTEGER DEFAULT 0,
                    last_seen REAL NOT NULL,
                    quarantined_at REAL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS trust_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    node_id BLOB NOT NULL,
                    trust_score REAL NOT NULL,
                    reason TEXT,
                    recorded_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_trust_node
                ON trust_history(node_id, recorded_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cooldowns (
                    mode TEXT PRIMARY KEY,
                    until REAL NOT NULL,
                    reason TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS session_strength (
                    channel_id TEXT PRIMARY KEY,
                    strength INTEGER NOT NULL,
                    recorded_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS known_fingerprint (
                    channel_id TEXT PRIMARY KEY,
                    fingerprint_id TEXT NOT NULL,
                    recorded_at REAL NOT NULL
                )
            """)
            conn.commit()

    @contextmanager
    def _get_connection(self):
        conn = sqlite3.connect(str(self._db_path), timeout=10.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    # Relay registry

    def save_node(self, record: NodeRecord) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO relay_nodes
                (node_id, public_key, trust_score, capability_flags, last_seen, quarantined_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record.node_id,
                record.public_key,
                record.trust_score,
                record.capability_flags,
                record.last_seen,
                record.quarantined_at,
            ))
            conn.commit()

    def load_nodes(self) -> List[NodeRecord]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT * FROM relay_nodes").fetchall()

        return [
            NodeRecord(
                node_id=bytes(row["node_id"]),
                public_key=bytes(row["public_key"]),
                trust_score=row["trust_score"],
                capability_flags=row["capability_flags"],
                last_seen=row["last_seen"],
                quarantined_at=row["quarantined_at"],
            )
            for row in rows
        ]

    def delete_nodes(self, node_ids: Iterable[bytes]) -> int:
        node_ids = list(node_ids)
        if not node_ids:
            return 0

        placeholders = ",".join("?" * len(node_ids))
        with self._lock, self._get_connection() as conn:
            cursor = conn.execute(
                f"DELETE FROM relay_nodes WHERE node_id IN ({placeholders})",
                node_ids,
            )
            conn.commit()
            return cursor.rowcount

    # Trust history

    def record_trust(
        self,
        node_id: bytes,
        trust_score: float,
        reason: str,
        recorded_at: float,
    ) -> None:
        """Append one trust change and trim the node's history."""
        with self._lock, self._get_connection() as conn:
            conn.execute("""
                INSERT INTO trust_history (node_id, trust_score, reason, recorded_at)
                VALUES (?, ?, ?, ?)
            """, (node_id, trust_score, reason, recorded_at))
            conn.execute("""
                DELETE FROM trust_history
                WHERE node_id = ? AND id NOT IN (
                    SELECT id FROM trust_history WHERE node_id = ?
                    ORDER BY id DESC LIMIT ?
                )
            """, (node_id, node_id, MAX_HISTORY_PER_NODE))
            conn.commit()

    def trust_history(self, node_id: bytes, limit: int = 100) -> List[TrustRecord]:
        """Newest-first trust changes for a node."""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM trust_history WHERE node_id = ?
                ORDER BY id DESC LIMIT ?
            """, (node_id, limit)).fetchall()

        return [
            TrustRecord(
                node_id=bytes(row["node_id"]),
                trust_score=row["trust_score"],
                reason=row["reason"] or "",
                recorded_at=row["recorded_at"],
            )
            for row in rows
        ]

    # Mode cooldowns

    def set_cooldown(self, mode: str, until: float, reason: str = "") -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO cooldowns (mode, until, reason)
                VALUES (?, ?, ?)
            """, (mode, until, reason))
            conn.commit()

    def clear_cooldown(self, mode: str) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("DELETE FROM cooldowns WHERE mode = ?", (mode,))
            conn.commit()

    def load_cooldowns(self, now: float) -> Dict[str, float]:
        """Unexpired cooldowns as {mode: until}; expired rows are dropped."""
        with self._lock, self._get_connection() as conn:
            conn.execute("DELETE FROM cooldowns WHERE until <= ?", (now,))
            conn.commit()
            rows = conn.execute("SELECT mode, until FROM cooldowns").fetchall()

        return {row["mode"]: row["until"] for row in rows}

    # Session strength

    def record_session_strength(self, channel_id: str, strength: int, recorded_at: float) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO session_strength (channel_id, strength, recorded_at)
                VALUES (?, ?, ?)
            """, (channel_id, strength, recorded_at))
            conn.commit()

    def load_session_strengths(self) -> Dict[str, int]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT channel_id, strength FROM session_strength").fetchall()
        return {row["channel_id"]: row["strength"] for row in rows}

    # Known-good fingerprints

    def record_known_fingerprint(self, channel_id: str, fingerprint_id: str, recorded_at: float) -> None:
        with self._lock, self._get_connection() as conn:
            conn.execute("""
                INSERT OR REPLACE INTO known_fingerprint (channel_id, fingerprint_id, recorded_at)
                VALUES (?, ?, ?)
            """, (channel_id, fingerprint_id, recorded_at))
            conn.commit()

    def load_known_fingerprints(self) -> Dict[str, str]:
        with self._get_connection() as conn:
            rows = conn.execute("SELECT channel_id, fingerprint_id FROM known_fingerprint").fetchall()
        return {row["channel_id"]: row["fingerprint_id"] for row in rows}

    def get_stats(self) -> dict:
        with self._get_connection() as conn:
            return {
                "db_path": str(self._db_path),
                "relay_nodes": conn.execute("SELECT COUNT(*) FROM relay_nodes").fetchone()[0],
                "trust_records": conn.execute("SELECT COUNT(*) FROM trust_history").fetchone()[0],
                "cooldowns": conn.execute("SELECT COUNT(*) FROM cooldowns").fetchone()[0],
            }
