"""
AeroLink Delivery Tracking

Tracks outgoing messages from send() until they leave the node or
their deadline passes.

Features:
- AckHandle per message (status, attempts, last error)
- Retry queue for EMERGENCY-priority messages
- Failure callbacks with DeliveryFailed
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional


logger = logging.getLogger(__name__)


class Priority(IntEnum):
    """Application message priority."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3
    EMERGENCY = 4

    @property
    def is_urgent(self) -> bool:
        """Duplicated across both channel sets during an overlap."""
        return self >= Priority.CRITICAL


class DeliveryStatus(IntEnum):
    """Message delivery status."""
    PENDING = 0          # Queued, not handed to a driver yet
    SENT = 1             # Handed to at least one driver
    FAILED = 2           # Deadline passed without a successful send


class DeliveryFailed(Exception):
    """Message could not be sent before its deadline."""

    def __init__(self, message_id: bytes, reason: str):
        super().__init__(f"Delivery of {message_id.hex()[:16]} failed: {reason}")
        self.message_id = message_id
        self.reason = reason


@dataclass
class AckHandle:
    """
    Delivery tracking handle returned by send().
    """
    message_id: bytes
    destination_id: bytes
    priority: Priority
    created_at: float
    deadline: Optional[float] = None

    status: DeliveryStatus = DeliveryStatus.PENDING
    attempts: int = 0
    sent_at: Optional[float] = None
    next_attempt_at: float = 0.0
    modes: List[str] = field(default_factory=list)
    error: Optional[Exception] = None

    _done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.status != DeliveryStatus.PENDING

    def wait(self, timeout: Optional[float] = None) -> DeliveryStatus:
        """Block until the message is sent or has failed."""
        self._done.wait(timeout)
        return self.status

    def record_sent(self, now: float, modes: List[str]) -> None:
        self.attempts += 1
        self.status = DeliveryStatus.SENT
        self.sent_at = now
        self.modes = list(modes)
        self.error = None
        self._done.set()

    def record_attempt_failed(self, now: float, error: Exception, retry_interval: float) -> None:
        self.attempts += 1
        self.error = error
        self.next_attempt_at = now + retry_interval

    def record_failed(self, error: DeliveryFailed) -> None:
        self.status = DeliveryStatus.FAILED
        self.error = error
        self._done.set()


FailureCallback = Callable[[AckHandle, DeliveryFailed], None]


class DeliveryTracker:
    """
    Retry queue for messages that must not be dropped.

    Usage:
        tracker = DeliveryTracker()
        tracker.register_callback(on_failure)

        tracker.queue(handle)
        for handle in tracker.due(now):
            ...
        tracker.expire(now)
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._queued: Dict[bytes, AckHandle] = {}
        self._lock = threading.Lock()
        self._callbacks: List[FailureCallback] = []

        self._sent = 0
        self._failed = 0

    def register_callback(self, callback: FailureCallback) -> None:
        self._callbacks.append(callback)

    def queue(self, handle: AckHandle) -> None:
        with self._lock:
            self._queued[handle.message_id] = handle
        logger.info(
            f"Message {handle.message_id.hex()[:16]} queued for retry "
            f"({handle.error})"
        )

    def due(self, now: Optional[float] = None) -> List[AckHandle]:
        """Queued handles whose next attempt is due, oldest first."""
        now = self._clock() if now is None else now
        with self._lock:
            handles = [h for h in self._queued.values() if h.next_attempt_at <= now]
        return sorted(handles, key=lambda h: h.created_at)

    def mark_sent(self, handle: AckHandle) -> None:
        with self._lock:
            self._queued.pop(handle.message_id, None)
            self._sent += 1

    def fail(self, handle: AckHandle, reason: str) -> DeliveryFailed:
        """Mark a handle FAILED and notify callbacks."""
        error = DeliveryFailed(handle.message_id, reason)
        with self._lock:
            self._queued.pop(handle.message_id, None)
            self._failed += 1
        handle.record_failed(error)

        logger.error(str(error))
        for callback in list(self._callbacks):
            try:
                callback(handle, error)
            except Exception:
                logger.exception("Delivery failure callback raised")
        return error

    def expire(self, now: Optional[float] = None) -> List[AckHandle]:
        """Fail every queued handle whose deadline has passed."""
        now = self._clock() if now is None else now
        with self._lock:
            expired = [
                h for h in self._queued.values()
                if h.deadline is not None and now >= h.deadline
            ]

        for handle in expired:
            last = handle.error
            self.fail(handle, f"deadline passed after {handle.attempts} attempts ({last})")
        return expired

    def pending(self) -> List[AckHandle]:
        with self._lock:
            return list(self._queued.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._queued)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "queued": len(self._queued),
                "sent_after_retry": self._sent,
                "failed": self._failed,
            }
