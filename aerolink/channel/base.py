"""
AeroLink Channel Driver Interface

Every physical medium (cellular modem, mesh radio, satellite terminal,
emergency radio) is reached through the same small capability
interface. The mode controller and facade depend only on this
interface, never on a concrete driver.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol, runtime_checkable

from ..metrics.collector import ChannelObservation


class ChannelError(Exception):
    """Exception raised by channel drivers."""
    pass


class ChannelKind(Enum):
    """Physical medium behind a channel."""
    MESH = "mesh"
    CELLULAR = "cellular"
    SATELLITE = "satellite"
    EMERGENCY = "emergency"


@dataclass(frozen=True)
class SendResult:
    """Outcome of handing one frame to a driver."""
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> 'SendResult':
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> 'SendResult':
        return cls(ok=False, error=error)


@runtime_checkable
class ChannelDriver(Protocol):
    """
    Capability interface implemented by every channel driver.

    Drivers are expected to be cheap to call: send() hands a frame to
    the medium and returns, receive() never blocks.
    """

    channel_id: str
    kind: ChannelKind

    def get_observation(self) -> Optional[ChannelObservation]:
        ...

    def send(self, data: bytes) -> SendResult:
        ...

    def receive(self) -> Optional[bytes]:
        ...

    def activate(self) -> None:
        ...

    def deactivate(self) -> None:
        ...


@runtime_checkable
class HoppingDriver(ChannelDriver, Protocol):
    """Driver that can retune across a fixed set of channels."""

    def tune(self, index: int) -> None:
        ...
