"""
Pytest configuration and shared fixtures for AeroLink tests.

Provides:
- A settable clock and an inline executor so state machines run
  deterministically on the test thread
- Configuration, key store and loopback medium fixtures
- Helpers for building relay nodes and observations
"""

import logging
from concurrent.futures import Executor, Future
from typing import Callable, List, Optional

import pytest

from aerolink.channel.base import ChannelKind
from aerolink.channel.loopback import LinkProfile, LoopbackChannel, LoopbackMedium
from aerolink.config import Config
from aerolink.crypto.keys import MemoryKeyStore, generate_identity
from aerolink.metrics.collector import ChannelObservation
from aerolink.relay.registry import CAP_EGRESS, CAP_RELAY, RelayNode


# ============================================================================
# Logging Configuration
# ============================================================================


@pytest.fixture(scope="session", autouse=True)
def setup_logging() -> None:
    """Configure logging for tests."""
    logging.basicConfig(level=logging.DEBUG)


# ============================================================================
# Test Doubles
# ============================================================================


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class InlineExecutor(Executor):
    """Runs submitted work immediately on the calling thread."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


class DeferredExecutor(Executor):
    """
    Holds submitted work until run_all() is called.

    With started=True every future is marked running on submit, so
    cancel() fails the way it does for work a pool thread picked up.
    """

    def __init__(self, started: bool = False):
        self._started = started
        self._queued: List[tuple] = []

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        future: Future = Future()
        if self._started:
            future.set_running_or_notify_cancel()
        self._queued.append((future, fn, args, kwargs))
        return future

    def run_all(self) -> None:
        queued, self._queued = self._queued, []
        for future, fn, args, kwargs in queued:
            if not future.running() and not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)


# ============================================================================
# Core Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FakeClock:
    """Fresh fake clock."""
    return FakeClock()


@pytest.fixture
def executor() -> InlineExecutor:
    """Inline executor."""
    return InlineExecutor()


@pytest.fixture
def config(tmp_path) -> Config:
    """Default configuration with storage under tmp_path and periodic probes off."""
    cfg = Config()
    cfg.storage.data_dir = tmp_path
    cfg.relay.probe_interval_s = 1e9
    return cfg


@pytest.fixture
def keystore() -> MemoryKeyStore:
    """Key store with a fresh node identity."""
    return MemoryKeyStore()


@pytest.fixture
def medium() -> LoopbackMedium:
    """Shared loopback medium."""
    return LoopbackMedium()


# ============================================================================
# Helpers
# ============================================================================


def make_channel(
    channel_id: str,
    kind: ChannelKind,
    medium: LoopbackMedium,
    station: str = "local",
    clock: Optional[Callable[[], float]] = None,
    **profile,
) -> LoopbackChannel:
    """Loopback channel with a custom link profile."""
    kwargs = {"profile": LinkProfile(**profile)}
    if clock is not None:
        kwargs["clock"] = clock
    return LoopbackChannel(channel_id, kind, medium, station=station, **kwargs)


def make_observation(
    channel_id: str = "cell0",
    timestamp: float = 1000.0,
    signal_quality: float = 0.9,
    latency_ms: float = 40.0,
    peers: int = 3,
    error_rate: float = 0.0,
    **extra,
) -> ChannelObservation:
    """Observation with sensible defaults."""
    return ChannelObservation(
        channel_id=channel_id,
        signal_quality=signal_quality,
        measured_latency_ms=latency_ms,
        peer_or_cell_count=peers,
        error_rate=error_rate,
        timestamp=timestamp,
        **extra,
    )


def make_relay(
    trust: float = 0.5,
    egress: bool = False,
    reliability: float = 1.0,
    bandwidth_kbps: float = 100.0,
):
    """(identity, RelayNode) for a fresh relay identity."""
    identity = generate_identity()
    flags = CAP_RELAY | (CAP_EGRESS if egress else 0)
    node = RelayNode(
        node_id=identity.node_id,
        public_key=identity.public_bytes,
        trust_score=trust,
        capability_flags=flags,
        reliability=reliability,
        bandwidth_kbps=bandwidth_kbps,
    )
    return identity, node
