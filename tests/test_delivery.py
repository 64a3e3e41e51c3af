"""
Unit tests for delivery tracking, the emergency beacon and flight context.

Tests:
- AckHandle state changes
- Retry queue ordering, deadline expiry and failure callbacks
- Beacon hop sequence, interval and payload
- Flight context extrapolation and zone coverage
"""

import pytest

from aerolink.beacon import EmergencyBeacon
from aerolink.channel.base import ChannelKind
from aerolink.context import CoverageZone, FlightContext, StaticFlightContext, ZoneCoverageModel
from aerolink.delivery import AckHandle, DeliveryFailed, DeliveryStatus, DeliveryTracker, Priority
from aerolink.packet.format import BeaconPayload, FrameType, parse_frame

from conftest import make_channel


def make_handle(message_id: bytes = b"\x01" * 16, created_at: float = 1000.0, deadline=None) -> AckHandle:
    return AckHandle(
        message_id=message_id,
        destination_id=b"\x00" * 16,
        priority=Priority.EMERGENCY,
        created_at=created_at,
        deadline=deadline,
    )


# ============================================================================
# AckHandle Tests
# ============================================================================


class TestAckHandle:
    """Tests for AckHandle."""

    def test_sent(self) -> None:
        """Test a sent handle is done and records the carrying modes."""
        handle = make_handle()
        handle.record_sent(1001.0, ["TACTICAL", "SATCOM"])

        assert handle.done
        assert handle.status == DeliveryStatus.SENT
        assert handle.modes == ["TACTICAL", "SATCOM"]
        assert handle.wait(timeout=0) == DeliveryStatus.SENT

    def test_attempt_failed_schedules_retry(self) -> None:
        """Test a failed attempt keeps the handle pending."""
        handle = make_handle()
        handle.record_attempt_failed(1000.0, RuntimeError("no path"), 2.0)

        assert not handle.done
        assert handle.attempts == 1
        assert handle.next_attempt_at == 1002.0

    def test_urgent_priorities(self) -> None:
        """Test only CRITICAL and EMERGENCY are duplicated during overlap."""
        assert Priority.EMERGENCY.is_urgent
        assert Priority.CRITICAL.is_urgent
        assert not Priority.HIGH.is_urgent


# ============================================================================
# DeliveryTracker Tests
# ============================================================================


class TestDeliveryTracker:
    """Tests for the retry queue."""

    def test_due_oldest_first(self, clock) -> None:
        """Test due handles are returned by creation time."""
        tracker = DeliveryTracker(clock)
        newer = make_handle(b"\x02" * 16, created_at=1001.0)
        older = make_handle(b"\x01" * 16, created_at=1000.0)
        later = make_handle(b"\x03" * 16)
        later.next_attempt_at = 2000.0

        for handle in (newer, older, later):
            tracker.queue(handle)

        assert tracker.due() == [older, newer]

    def test_mark_sent(self, clock) -> None:
        """Test a sent handle leaves the queue."""
        tracker = DeliveryTracker(clock)
        handle = make_handle()
        tracker.queue(handle)
        tracker.mark_sent(handle)

        assert len(tracker) == 0
        assert tracker.get_stats()["sent_after_retry"] == 1

    def test_expire_fails_and_notifies(self, clock) -> None:
        """Test handles past their deadline fail with DeliveryFailed."""
        tracker = DeliveryTracker(clock)
        failures = []
        tracker.register_callback(lambda handle, error: failures.append(error))

        handle = make_handle(deadline=1010.0)
        tracker.queue(handle)

        assert tracker.expire(1009.0) == []
        assert tracker.expire(1010.0) == [handle]

        assert handle.status == DeliveryStatus.FAILED
        assert isinstance(failures[0], DeliveryFailed)
        assert failures[0].message_id == handle.message_id
        assert tracker.get_stats()["failed"] == 1

    def test_no_deadline_never_expires(self, clock) -> None:
        """Test handles without a deadline stay queued."""
        tracker = DeliveryTracker(clock)
        tracker.queue(make_handle())
        assert tracker.expire(1e12) == []

    def test_callback_error_isolated(self, clock) -> None:
        """Test a failing callback does not stop the others."""
        tracker = DeliveryTracker(clock)
        seen = []

        def broken(handle, error):
            raise RuntimeError("boom")

        tracker.register_callback(broken)
        tracker.register_callback(lambda handle, error: seen.append(handle))

        handle = make_handle()
        tracker.queue(handle)
        tracker.fail(handle, "test")

        assert seen == [handle]


# ============================================================================
# EmergencyBeacon Tests
# ============================================================================


class TestEmergencyBeacon:
    """Tests for the hopping beacon."""

    @pytest.fixture
    def radio(self, medium):
        sender = make_channel("emg0", ChannelKind.EMERGENCY, medium, station="A")
        listener = make_channel("emg0", ChannelKind.EMERGENCY, medium, station="B")
        sender.activate()
        listener.activate()
        return sender, listener

    def test_hop_sequence(self, config, clock, radio) -> None:
        """Test each beacon goes out on the next configured hop channel."""
        sender, _ = radio
        config.emergency.hop_channels = [5, 9]
        beacon = EmergencyBeacon(config, b"\x0e" * 16, [sender], clock=clock)

        hops = []
        for _ in range(3):
            beacon.emit()
            hops.append(sender.hop_index)

        assert hops == [5, 9, 5]
        assert beacon.sequence == 3

    def test_payload_fields(self, config, clock, radio) -> None:
        """Test the beacon carries identity, position and battery in the clear."""
        sender, listener = radio
        context = StaticFlightContext(FlightContext(position=(10.0, 20.0, 150.0), battery_level=0.4))
        beacon = EmergencyBeacon(config, b"\x0e" * 16, [sender], context=context, clock=clock)

        assert beacon.emit(b"help") == 1

        frame = parse_frame(listener.receive())
        assert frame.frame_type == FrameType.BEACON
        assert frame.header.ttl == 1
        payload = BeaconPayload.from_bytes(frame.payload)
        assert payload.node_id == b"\x0e" * 16
        assert payload.longitude == pytest.approx(10.0)
        assert payload.latitude == pytest.approx(20.0)
        assert payload.altitude == pytest.approx(150.0)
        assert payload.battery_level == pytest.approx(0.4)
        assert payload.message == b"help"

    def test_listener_on_other_hop(self, config, clock, radio) -> None:
        """Test a listener tuned elsewhere does not hear the beacon."""
        sender, listener = radio
        listener.tune(2)
        EmergencyBeacon(config, b"\x0e" * 16, [sender], clock=clock).emit()
        assert listener.receive() is None

    def test_due_and_reset(self, config, clock, radio) -> None:
        """Test the interval gate and sequence reset."""
        sender, _ = radio
        beacon = EmergencyBeacon(config, b"\x0e" * 16, [sender], clock=clock)

        assert beacon.is_due()
        beacon.emit()
        assert not beacon.is_due()
        clock.advance(config.emergency.beacon_interval_s)
        assert beacon.is_due()

        beacon.reset()
        assert beacon.sequence == 0
        assert beacon.is_due()

    def test_send_errors_counted(self, config, clock, radio) -> None:
        """Test refused sends are counted, not raised."""
        sender, _ = radio
        sender.set_fail_sends(True)
        beacon = EmergencyBeacon(config, b"\x0e" * 16, [sender], clock=clock)

        assert beacon.emit() == 0
        assert beacon.get_stats()["send_errors"] == 1
        assert beacon.get_stats()["beacons_sent"] == 0


# ============================================================================
# Flight Context Tests
# ============================================================================


class TestFlightContext:
    """Tests for context and coverage."""

    def test_extrapolate(self) -> None:
        """Test position extrapolation along the velocity vector."""
        ctx = FlightContext(position=(0.0, 0.0, 100.0), velocity=(10.0, -5.0, 0.0))
        assert ctx.extrapolate(3.0) == (30.0, -15.0, 100.0)

    def test_update(self) -> None:
        """Test the static provider replaces fields."""
        provider = StaticFlightContext()
        provider.update(battery_level=0.05, emergency_requested=True)
        assert provider.get_context().battery_level == 0.05
        assert provider.get_context().emergency_requested

    def test_zone_coverage(self) -> None:
        """Test coverage inside, outside and for unmodelled modes."""
        model = ZoneCoverageModel([CoverageZone("INFRASTRUCTURE", (0.0, 0.0, 0.0), 1000.0, 0.8)])

        assert model.coverage("INFRASTRUCTURE", (500.0, 500.0, 120.0)) == 0.8
        assert model.coverage("INFRASTRUCTURE", (2000.0, 0.0, 120.0)) == 0.0
        assert model.coverage("SATCOM", (2000.0, 0.0, 120.0)) is None
