"""
AeroLink - Adaptive Link Controller for drone swarms

Keeps a swarm node talking while it moves between cellular coverage,
mesh-only terrain and unconnected areas, under active attack.

This package contains:
- crypto/    : Cryptographic primitives, identities and sealed envelopes
- channel/   : Channel driver interface and loopback driver
- metrics/   : Channel observation window and link prediction
- threat/    : Rule-based threat detection
- relay/     : Relay registry, disjoint path selection, proof-of-relay
- onion/     : Layered encryption for relay paths
- mode/      : Communication mode state machine
- packet/    : Wire framing and duplicate suppression
- link.py    : Facade used by the mission/application layer
- delivery.py: Delivery tracking and EMERGENCY retries
- beacon.py  : Hopping emergency beacon
- store.py   : sqlite persistence (trust history, cooldowns)
- context.py : Flight context and coverage model interfaces
- config.py  : TOML configuration
- main.py    : aerolinkd daemon
"""

__version__ = "0.1.0"

# Core constants
PROTOCOL_VERSION = 1
NODE_ID_LENGTH = 16  # bytes
MESSAGE_ID_LENGTH = 16  # bytes
