"""
AeroLink Daemon Main Entry Point

The aerolinkd daemon runs one LinkController with an independent
worker thread per cadence:
- Metrics ingestion (driver observations -> collector -> threat rules)
- Threat flush (batched LOW/MEDIUM events)
- Relay path maintenance (recompute, probe harvest)
- Mode state machine
- Delivery retries and emergency beacon
- Frame reception

Hardware channel drivers are provided by the platform integration.
--simulate runs the node on loopback media with three simulated relay
peers instead.
"""

import argparse
import logging
import signal
import sys
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

from . import __version__
from .channel.base import ChannelKind
from .channel.loopback import LinkProfile, LoopbackChannel, LoopbackMedium
from .config import Config, DEFAULT_CONFIG_PATH
from .context import StaticFlightContext
from .crypto.keys import MemoryKeyStore, load_identity
from .link import LinkController
from .mode.controller import Mode
from .relay.registry import CAP_EGRESS, CAP_RELAY
from .store import StateStore


logger = logging.getLogger("aerolinkd")

# Worker cadences not covered by configuration
THREAT_FLUSH_INTERVAL = 0.25
PATH_TICK_INTERVAL = 1.0
DELIVERY_INTERVAL = 0.5
RECEIVE_INTERVAL = 0.05

# Simulated topology: local -> relay0/relay1 -> egress
SIM_RELAYS = ("relay0", "relay1")
SIM_EGRESS = "egress"
SIM_LATENCY_MS = 25.0


def setup_logging(level: str, log_file: Optional[Path] = None) -> None:
    handlers = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=handlers,
    )


class AeroLinkDaemon:
    """
    Main AeroLink daemon class.

    Owns the LinkController, the state store and the worker threads.
    """

    def __init__(self, config: Config, simulate: bool = False):
        self.config = config
        self._simulate = simulate
        self._running = False
        self._shutdown_event = threading.Event()

        self._store: Optional[StateStore] = None
        self._link: Optional[LinkController] = None
        self._context = StaticFlightContext()
        self._threads: List[threading.Thread] = []

        self._media = {}
        self._peers: List[LinkController] = []

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def link(self) -> Optional[LinkController]:
        return self._link

    def start(self) -> None:
        """
        Start the daemon.

        Raises:
            ValueError: If the initial mode cannot be constructed
            RuntimeError: If no channel drivers are available
        """
        logger.info(f"Starting AeroLink daemon v{__version__}")

        data_dir = self.config.storage.data_dir
        data_dir.mkdir(parents=True, exist_ok=True)

        identity = load_identity(data_dir, create_if_missing=True)
        keystore = MemoryKeyStore(identity)
        logger.info(f"Node ID: {identity.node_id.hex()}")

        self._store = StateStore(self.config.storage.state_db_path)

        if not self._simulate:
            raise RuntimeError(
                "No channel drivers available; hardware drivers come from the "
                "platform integration (use --simulate for loopback media)"
            )
        channels = self._build_simulation(keystore)

        self._link = LinkController(
            self.config,
            keystore,
            channels,
            store=self._store,
            context=self._context,
        )
        self._link.on_message(self._log_message)
        self._link.on_delivery_failed(
            lambda handle, error: logger.error(f"Delivery failed: {error}")
        )
        if self._simulate:
            self._refresh_simulation()
        self._link.start()

        self._running = True
        self._spawn("metrics", self._poll_metrics, lambda: self.config.metrics.poll_interval_s)
        self._spawn("threat", self._link.detector.flush, lambda: THREAT_FLUSH_INTERVAL)
        self._spawn("paths", self._link.paths.tick, lambda: PATH_TICK_INTERVAL)
        self._spawn("mode", self._link.mode_controller.tick, lambda: self.config.mode.tick_interval_s)
        self._spawn("delivery", self._link.service_delivery, lambda: DELIVERY_INTERVAL)
        self._spawn("receive", self._receive, lambda: RECEIVE_INTERVAL)

        logger.info(f"AeroLink daemon started in {self._link.current_mode().mode.value}")

    def stop(self) -> None:
        """Stop the daemon."""
        logger.info("Stopping AeroLink daemon...")

        self._running = False
        self._shutdown_event.set()

        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []

        if self._link is not None:
            self._link.shutdown()
        for peer in self._peers:
            peer.shutdown()

        logger.info("AeroLink daemon stopped")

    def reload(self) -> None:
        if self.config.reload():
            logging.getLogger().setLevel(getattr(logging, self.config.log_level, logging.INFO))

    # Worker loops

    def _spawn(self, name: str, work: Callable[[], object], interval: Callable[[], float]) -> None:
        thread = threading.Thread(
            target=self._worker_loop,
            args=(name, work, interval),
            daemon=True,
            name=f"aerolink-{name}",
        )
        self._threads.append(thread)
        thread.start()

    def _worker_loop(self, name: str, work: Callable[[], object], interval: Callable[[], float]) -> None:
        while self._running:
            try:
                work()
            except Exception as e:
                logger.error(f"{name} worker error: {e}")

            self._shutdown_event.wait(interval())

    def _poll_metrics(self) -> None:
        if self._simulate:
            self._refresh_simulation()
        self._link.poll_metrics()

    def _receive(self) -> None:
        self._link.receive()
        for peer in self._peers:
            peer.receive()

    def _log_message(self, message) -> None:
        logger.info(
            f"Message {message.message_id.hex()[:16]} from {message.sender_id.hex()[:16]} "
            f"({len(message.body)} bytes via {message.channel_id})"
        )

    # Simulation

    def _build_simulation(self, keystore: MemoryKeyStore) -> List[LoopbackChannel]:
        """Loopback media, local drivers and simulated relay peers."""
        self._media = {kind: LoopbackMedium() for kind in ChannelKind}
        mesh = self._media[ChannelKind.MESH]

        channels = [
            LoopbackChannel("mesh0", ChannelKind.MESH, mesh, station="local"),
            LoopbackChannel(
                "cell0", ChannelKind.CELLULAR, self._media[ChannelKind.CELLULAR],
                station="local", profile=LinkProfile(signal_quality=0.8, latency_ms=60.0),
            ),
            LoopbackChannel(
                "sat0", ChannelKind.SATELLITE, self._media[ChannelKind.SATELLITE],
                station="local", profile=LinkProfile(signal_quality=0.6, latency_ms=600.0),
            ),
            LoopbackChannel(
                "emg0", ChannelKind.EMERGENCY, self._media[ChannelKind.EMERGENCY],
                station="local",
            ),
        ]

        peer_config = Config()
        peer_config.mode.initial_mode = Mode.TACTICAL.value
        peer_config.storage.data_dir = self.config.storage.data_dir

        for name in SIM_RELAYS + (SIM_EGRESS,):
            peer_channel = LoopbackChannel("mesh0", ChannelKind.MESH, mesh, station=name)
            peer = LinkController(peer_config, MemoryKeyStore(), [peer_channel])
            self._peers.append(peer)

        for relay in SIM_RELAYS:
            mesh.link("local", relay)
            mesh.link(relay, SIM_EGRESS)

        egress = self._peers[-1]
        keystore.add_peer(egress.node_id, egress.public_key)
        logger.info(f"Simulation: {len(self._peers)} peers, egress {egress.node_id.hex()[:16]}")
        return channels

    def _refresh_simulation(self) -> None:
        """Re-announce the simulated peers and their links."""
        registry = self._link.registry
        local_id = registry.local_id
        relays, egress = self._peers[:-1], self._peers[-1]

        for peer in relays:
            registry.add_or_update(
                peer.node_id, peer.public_key,
                capability_flags=CAP_RELAY, reliability=0.95, bandwidth_kbps=250.0,
            )
            registry.observe_link(local_id, peer.node_id, SIM_LATENCY_MS)
            registry.observe_link(peer.node_id, egress.node_id, SIM_LATENCY_MS)

        registry.add_or_update(
            egress.node_id, egress.public_key,
            capability_flags=CAP_RELAY | CAP_EGRESS, reliability=0.9, bandwidth_kbps=500.0,
        )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="AeroLink adaptive link controller daemon")
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Configuration file path",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Run on loopback media with simulated relay peers",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"aerolinkd {__version__}",
    )

    args = parser.parse_args()

    try:
        config = Config.load(args.config)
    except ValueError as e:
        setup_logging("INFO")
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    setup_logging("DEBUG" if args.verbose else config.log_level, config.log_file)

    daemon = AeroLinkDaemon(config, simulate=args.simulate)

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}")
        daemon.stop()
        sys.exit(0)

    def handle_reload(signum, frame):
        logger.info("Reloading configuration")
        daemon.reload()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGHUP, handle_reload)

    try:
        daemon.start()

        while daemon.is_running:
            time.sleep(1)

    except (RuntimeError, ValueError) as e:
        logger.error(f"Fatal error: {e}")
        daemon.stop()
        sys.exit(1)


if __name__ == "__main__":
    main()
