"""
AeroLink Frame Deduplication

Drops frames that have already been processed. During a mode overlap
EMERGENCY/CRITICAL messages travel on both channel sets, and on a
broadcast medium every relay hears its neighbours' forwards, so the
same bytes routinely arrive more than once.

Features:
- Time-bounded cache (configurable TTL)
- Thread-safe operations
- Optional background cleanup

Design:
- Uses a BLAKE2b hash of the frame as key
- Stores timestamp of first sighting
- Evicts entries older than TTL, oldest 10% when full
"""

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from ..crypto.primitives import blake2b_hash


# Default cache TTL in seconds
DEFAULT_CACHE_TTL = 60

# Default maximum cache size
DEFAULT_MAX_ENTRIES = 4096

# Cleanup interval in seconds
CLEANUP_INTERVAL = 30


@dataclass
class CacheEntry:
    """Entry in the deduplication cache."""
    frame_hash: bytes
    first_seen: float
    last_seen: float
    count: int


class DeduplicationCache:
    """
    Time-bounded deduplication cache for frames.

    Usage:
        cache = DeduplicationCache(ttl_seconds=60)

        if cache.check_and_add(frame_bytes):
            return  # duplicate
        process(frame_bytes)
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CACHE_TTL,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ):
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock

        self._cache: Dict[bytes, CacheEntry] = {}
        self._lock = threading.RLock()

        # Statistics
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._cleanup_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()

    def start(self) -> None:
        """Start background cleanup thread."""
        if self._cleanup_thread is not None:
            return

        self._stop.clear()
        self._cleanup_thread = threading.Thread(
            target=self._cleanup_loop,
            daemon=True,
            name="dedup-cleanup",
        )
        self._cleanup_thread.start()

    def stop(self) -> None:
        """Stop background cleanup thread."""
        self._stop.set()
        if self._cleanup_thread:
            self._cleanup_thread.join(timeout=5.0)
            self._cleanup_thread = None

    def _cleanup_loop(self) -> None:
        while not self._stop.wait(CLEANUP_INTERVAL):
            self.cleanup()

    def _compute_hash(self, data: bytes) -> bytes:
        return blake2b_hash(data, digest_size=16, person=b"aerolink-dedup")

    def check_and_add(self, data: bytes) -> bool:
        """
        Check if a frame is a duplicate and remember it if not.

        Returns:
            True if the frame was already seen
        """
        frame_hash = self._compute_hash(data)
        now = self._clock()

        with self._lock:
            entry = self._cache.get(frame_hash)

            if entry is not None and now - entry.first_seen <= self._ttl:
                entry.last_seen = now
                entry.count += 1
                self._hits += 1
                return True

            self._cache[frame_hash] = CacheEntry(
                frame_hash=frame_hash,
                first_seen=now,
                last_seen=now,
                count=1,
            )
            self._misses += 1

            if len(self._cache) > self._max_entries:
                self._evict_oldest()

            return False

    def add(self, data: bytes) -> None:
        """Remember a frame without checking (e.g. one we sent ourselves)."""
        frame_hash = self._compute_hash(data)
        now = self._clock()

        with self._lock:
            if frame_hash not in self._cache:
                self._cache[frame_hash] = CacheEntry(
                    frame_hash=frame_hash,
                    first_seen=now,
                    last_seen=now,
                    count=1,
                )
                if len(self._cache) > self._max_entries:
                    self._evict_oldest()

    def cleanup(self) -> int:
        """
        Remove expired entries from cache.

        Returns:
            Number of entries removed
        """
        now = self._clock()

        with self._lock:
            expired = [
                h for h, entry in self._cache.items()
                if now - entry.first_seen > self._ttl
            ]
            for frame_hash in expired:
                del self._cache[frame_hash]
                self._evictions += 1

        return len(expired)

    def _evict_oldest(self) -> None:
        entries = sorted(self._cache.items(), key=lambda x: x[1].first_seen)

        to_remove = max(1, len(entries) // 10)
        for frame_hash, _ in entries[:to_remove]:
            del self._cache[frame_hash]
            self._evictions += 1

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> dict:
        with self._lock:
            total = self._hits + self._misses
            return {
                "size": len(self._cache),
                "max_entries": self._max_entries,
                "ttl_seconds": self._ttl,
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
