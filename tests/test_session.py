"""Tests for cgm_link/session.py module."""

import threading
from unittest.mock import MagicMock

import pytest

from conftest import NOW_MS, FakeTransport, gen3_frame, run_now
from cgm_link.config import SessionConfig
from cgm_link.constants import MS_PER_MINUTE, SENSOR_LIFESPAN_MS, Gen3MessageType
from cgm_link.exceptions import ReconnectExhaustedError, SessionNotStartedError
from cgm_link.framing import try_extract_message
from cgm_link.models import (
    ConnectionState,
    GlucoseQuality,
    GlucoseReading,
    SensorGeneration,
    SensorInfo,
    SessionState,
    TrendArrow,
)
from cgm_link.session import SessionOrchestrator, backoff_delay_ms, to_connection_state
from cgm_link.store import InMemorySensorStateStore, ReadingSink, SensorState


def reading(minutes_ago, value, quality=GlucoseQuality.GOOD):
    return GlucoseReading(
        timestamp_ms=NOW_MS - minutes_ago * MS_PER_MINUTE,
        glucose_mg_dl=value,
        quality=quality,
    )


def sensor_info(serial="3MH0012345", generation=SensorGeneration.GEN3):
    start = NOW_MS - 5 * 24 * 60 * MS_PER_MINUTE
    return SensorInfo(
        serial_number=serial,
        start_time_ms=start,
        expiry_time_ms=start + SENSOR_LIFESPAN_MS,
        generation=generation,
    )


def connect_and_authenticate(orchestrator, transport):
    orchestrator.connect("sensor-1")
    orchestrator.on_connected()
    orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_CHALLENGE, bytes(range(16))))
    orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_SUCCESS))


class TestBackoff:
    """Tests for the reconnect delay."""

    @pytest.mark.parametrize("attempt,expected", [
        (1, 1000), (2, 2000), (3, 4000), (4, 8000), (6, 32000), (7, 60000), (10, 60000),
    ])
    def test_delay(self, attempt, expected):
        assert backoff_delay_ms(attempt, 1000, 60000) == expected


class TestConnectionStateProjection:
    """Tests for the connection state projection."""

    def test_idle_and_error_are_disconnected(self):
        assert to_connection_state(SessionState.IDLE) == ConnectionState.DISCONNECTED
        assert to_connection_state(SessionState.ERROR) == ConnectionState.DISCONNECTED

    def test_other_states_map_by_name(self):
        assert to_connection_state(SessionState.RECONNECTING) == ConnectionState.RECONNECTING
        assert to_connection_state(SessionState.CONNECTED) == ConnectionState.CONNECTED


class TestScanning:
    """Tests for scanning."""

    def test_scan_timeout_returns_to_idle(self, orchestrator, transport, scheduler):
        """Test the scan stops after 30 seconds without a device."""
        assert orchestrator.start_scan() is True
        assert orchestrator.state == SessionState.SCANNING
        assert transport.scanning

        scheduler.advance(30)

        assert orchestrator.state == SessionState.IDLE
        assert not transport.scanning

    def test_device_found_connects(self, orchestrator, transport, scheduler):
        """Test a found device is connected and the scan timeout cancelled."""
        orchestrator.start_scan()
        orchestrator.on_device_found("sensor-1")

        assert orchestrator.state == SessionState.CONNECTING
        assert transport.connect_calls == ["sensor-1"]
        assert not transport.scanning
        # Only the connect timeout is left
        assert len(scheduler.pending) == 1

        scheduler.advance(29)
        assert orchestrator.state == SessionState.CONNECTING

    def test_scan_rejected_when_busy(self, orchestrator):
        orchestrator.connect("sensor-1")
        assert orchestrator.start_scan() is False


class TestConnection:
    """Tests for the connect and authenticate path."""

    def test_happy_path(self, orchestrator, transport, state_store, clock):
        """Test connect, transport up, and handshake reach Connected."""
        orchestrator.connect("sensor-1")
        assert orchestrator.state == SessionState.CONNECTING

        orchestrator.on_connected()
        assert orchestrator.state == SessionState.AUTHENTICATING

        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_CHALLENGE, bytes(range(16))))
        assert len(transport.sent) == 1

        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_SUCCESS))
        assert orchestrator.state == SessionState.CONNECTED
        assert orchestrator.connection_state == ConnectionState.CONNECTED
        assert orchestrator.reconnect_attempt == 0

        state = state_store.load()
        assert state.device_address == "sensor-1"
        assert state.last_connection_time_ms == NOW_MS

    def test_connect_timeout_schedules_reconnect(self, orchestrator, transport, scheduler):
        """Test a connection that never comes up is retried."""
        orchestrator.connect("sensor-1")
        scheduler.advance(30)

        assert orchestrator.state == SessionState.RECONNECTING
        assert orchestrator.reconnect_attempt == 1
        assert transport.disconnect_count >= 1

        scheduler.advance(1)
        assert transport.connect_calls == ["sensor-1", "sensor-1"]
        assert orchestrator.state == SessionState.CONNECTING

    def test_unexpected_disconnect_reconnects(self, orchestrator, transport, scheduler):
        """Test losing a connected sensor schedules a reconnect."""
        connect_and_authenticate(orchestrator, transport)
        orchestrator.on_disconnected("link lost")

        assert orchestrator.state == SessionState.RECONNECTING
        assert scheduler.pending[0].delay == 1.0
        assert orchestrator.protocol.session_key is None

    def test_auth_failure_reconnects(self, orchestrator, transport):
        """Test a failed handshake schedules a reconnect."""
        orchestrator.connect("sensor-1")
        orchestrator.on_connected()
        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_CHALLENGE, bytes(4)))

        assert orchestrator.state == SessionState.RECONNECTING
        assert orchestrator.reconnect_attempt == 1

    def test_successful_auth_resets_attempts(self, orchestrator, transport, scheduler):
        """Test the attempt counter resets after authentication."""
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        scheduler.run_next()
        assert orchestrator.reconnect_attempt == 2

        transport.connect_result = True
        scheduler.run_next()
        orchestrator.on_connected()
        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_CHALLENGE, bytes(range(16))))
        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_SUCCESS))

        assert orchestrator.state == SessionState.CONNECTED
        assert orchestrator.reconnect_attempt == 0

    def test_transport_error_while_connected(self, orchestrator, transport):
        connect_and_authenticate(orchestrator, transport)
        orchestrator.on_error(133)
        assert orchestrator.state == SessionState.RECONNECTING
        assert "133" in orchestrator.status().last_error


class TestReconnectBackoff:
    """Back-off and the reconnect cap."""

    def test_fourth_attempt_after_eight_seconds(self, orchestrator, transport, scheduler):
        """Test delays double from one second, the fourth being eight seconds."""
        transport.connect_result = False
        orchestrator.connect("sensor-1")

        delays = [scheduler.run_next() for _ in range(3)]
        assert delays == [1.0, 2.0, 4.0]
        assert scheduler.pending[0].delay == 8.0

    def test_exhausted_after_cap(self, orchestrator, transport, scheduler):
        """Test ten failed reconnects end in Error with no further connect."""
        transport.connect_result = False
        orchestrator.connect("sensor-1")

        while scheduler.pending:
            scheduler.run_next()

        assert len(transport.connect_calls) == 11
        assert orchestrator.state == SessionState.ERROR
        assert orchestrator.connection_state == ConnectionState.DISCONNECTED
        assert isinstance(orchestrator.error, ReconnectExhaustedError)
        assert orchestrator.error.attempts == 10

        scheduler.advance(3600)
        assert len(transport.connect_calls) == 11

    def test_delays_capped(self, orchestrator, transport, scheduler):
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        delays = []
        while scheduler.pending:
            delays.append(scheduler.run_next())
        assert max(delays) == 60.0
        assert len(delays) == 10

    def test_require_active_raises_when_exhausted(self, orchestrator, transport, scheduler):
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        while scheduler.pending:
            scheduler.run_next()

        with pytest.raises(ReconnectExhaustedError):
            orchestrator.require_active()

    def test_explicit_reconnect_clears_exhaustion(self, orchestrator, transport, scheduler):
        """Test an explicit reconnect starts over."""
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        while scheduler.pending:
            scheduler.run_next()

        transport.connect_result = True
        orchestrator.reconnect()

        assert orchestrator.state == SessionState.CONNECTING
        assert orchestrator.reconnect_attempt == 0
        assert orchestrator.error is None

    def test_disconnect_cancels_pending_reconnect(self, orchestrator, transport, scheduler):
        """Test no reconnect fires after a user disconnect."""
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        orchestrator.disconnect()

        scheduler.advance(120)

        assert transport.connect_calls == ["sensor-1"]
        assert orchestrator.state == SessionState.IDLE
        assert orchestrator.reconnect_attempt == 0

    def test_auto_reconnect_disabled(self, transport, scheduler, clock):
        config = SessionConfig(auto_reconnect=False)
        orchestrator = SessionOrchestrator(transport, config=config, scheduler=scheduler, clock=clock)
        transport.connect_result = False
        orchestrator.connect("sensor-1")
        assert orchestrator.state == SessionState.ERROR
        assert not scheduler.pending


class TestRequireActive:
    def test_idle_session(self, orchestrator):
        with pytest.raises(SessionNotStartedError):
            orchestrator.require_active()

    def test_connected_session(self, orchestrator, transport):
        connect_and_authenticate(orchestrator, transport)
        orchestrator.require_active()


class TestGlucoseProcessing:
    """Tests for the reading window and persistence."""

    def test_trends_annotated(self, orchestrator, reading_store):
        """Test each reading gets the trend over the window up to itself."""
        batch = [reading(m, 100.0 + 2 * (4 - m)) for m in (4, 3, 2, 1, 0)]
        accepted = orchestrator.process_glucose_readings(batch)

        assert [r.trend for r in accepted[:2]] == [TrendArrow.NONE, TrendArrow.NONE]
        assert all(r.trend == TrendArrow.SINGLE_UP for r in accepted[2:])
        assert len(reading_store) == 5

    def test_unreliable_not_persisted(self, orchestrator, reading_store, state_store):
        """Test unreliable readings are published but not persisted."""
        good = reading(1, 110.0)
        bad = reading(0, 0.0, quality=GlucoseQuality.UNRELIABLE)
        accepted = orchestrator.process_glucose_readings([good, bad])

        assert accepted == [good.with_trend(TrendArrow.NONE)]
        assert len(reading_store) == 1
        assert orchestrator.current_reading.quality == GlucoseQuality.UNRELIABLE
        assert state_store.load().latest_reading.glucose_mg_dl == 110.0

    def test_only_unreliable_updates_last_seen(self, orchestrator, reading_store, state_store):
        bad = reading(0, 0.0, quality=GlucoseQuality.UNRELIABLE)
        assert orchestrator.process_glucose_readings([bad]) == []
        assert len(reading_store) == 0
        assert state_store.load().last_connection_time_ms == NOW_MS

    def test_window_pruned(self, orchestrator):
        """Test readings older than the retention horizon leave the window."""
        orchestrator.process_glucose_readings([reading(45, 100.0), reading(5, 110.0)])
        assert [r.glucose_mg_dl for r in orchestrator.window()] == [110.0]

    def test_duplicates_persisted_once(self, orchestrator, reading_store):
        """Test overlapping batches do not create duplicate records."""
        batch = [reading(2, 100.0), reading(1, 101.0)]
        orchestrator.process_glucose_readings(batch)
        orchestrator.process_glucose_readings(batch + [reading(0, 102.0)])
        assert len(reading_store) == 3
        assert len(orchestrator.window()) == 3

    def test_cleanup_timer(self, orchestrator, scheduler, clock):
        """Test the periodic sweep prunes the window."""
        orchestrator.start()
        orchestrator.process_glucose_readings([reading(0, 100.0)])
        clock.advance(60 * MS_PER_MINUTE)
        scheduler.advance(3600)
        assert orchestrator.window() == []
        assert scheduler.pending

    def test_empty_batch(self, orchestrator):
        assert orchestrator.process_glucose_readings([]) == []


class TestSensorInfoProcessing:
    """Tests for sensor change detection."""

    def test_first_sensor_is_new(self, orchestrator, reading_store, state_store):
        info = sensor_info()
        assert orchestrator.process_sensor_info(info) is True
        assert reading_store.sensor_changes == [info]
        state = state_store.load()
        assert state.serial_number == info.serial_number
        assert state.expiry_time_ms == info.expiry_time_ms

    def test_same_serial_not_new(self, orchestrator, reading_store):
        orchestrator.process_sensor_info(sensor_info())
        assert orchestrator.process_sensor_info(sensor_info()) is False
        assert len(reading_store.sensor_changes) == 1

    def test_new_sensor_resets_alerts(self, transport, scheduler, clock, reading_store):
        alerts = MagicMock()
        orchestrator = SessionOrchestrator(
            transport, sinks=[reading_store], alerts=alerts, scheduler=scheduler, clock=clock,
            sink_executor=run_now,
        )
        orchestrator.process_sensor_info(sensor_info("A"))
        orchestrator.process_sensor_info(sensor_info("B"))
        assert alerts.reset_timers.call_count == 2

    def test_sensor_change_events_disabled(self, transport, scheduler, clock, reading_store, state_store):
        config = SessionConfig(create_sensor_change_events=False)
        orchestrator = SessionOrchestrator(
            transport, config=config, sinks=[reading_store], state_store=state_store,
            scheduler=scheduler, clock=clock, sink_executor=run_now,
        )
        assert orchestrator.process_sensor_info(sensor_info()) is True
        assert reading_store.sensor_changes == []
        assert state_store.load().serial_number == "3MH0012345"

    def test_alerts_follow_connection_state(self, transport, scheduler, clock):
        alerts = MagicMock()
        orchestrator = SessionOrchestrator(transport, alerts=alerts, scheduler=scheduler, clock=clock)
        connect_and_authenticate(orchestrator, transport)
        states = [c[0][0] for c in alerts.on_connection_state.call_args_list]
        assert states == [
            ConnectionState.CONNECTING,
            ConnectionState.AUTHENTICATING,
            ConnectionState.CONNECTED,
        ]


class TestStartup:
    """Tests for restoring a saved device."""

    def test_start_restores_device(self, transport, scheduler, clock):
        store = InMemorySensorStateStore(SensorState(device_address="sensor-9"))
        orchestrator = SessionOrchestrator(transport, state_store=store, scheduler=scheduler, clock=clock)
        orchestrator.start()
        assert transport.connect_calls == ["sensor-9"]

    def test_stop_cancels_timers(self, orchestrator, scheduler):
        orchestrator.start()
        orchestrator.connect("sensor-1")
        orchestrator.stop()
        assert scheduler.pending == []
        assert orchestrator.state == SessionState.IDLE

    def test_pair_new_device_switches_generation(self, orchestrator, transport):
        orchestrator.connect("old")
        orchestrator.pair_new_device("new", generation=SensorGeneration.GEN2)
        assert orchestrator.generation == SensorGeneration.GEN2
        assert transport.connect_calls[-1] == "new"
        assert orchestrator.protocol.generation == SensorGeneration.GEN2

    def test_status(self, orchestrator, transport):
        connect_and_authenticate(orchestrator, transport)
        status = orchestrator.status()
        assert status.state == SessionState.CONNECTED
        assert status.last_connection_time_ms == NOW_MS
        assert status.generation == SensorGeneration.GEN3


class TestBuildSession:
    """Tests for build_session function."""

    def test_wires_collaborators(self, transport):
        """Test the session gets the configured store, uploader and alerts."""
        from cgm_link.alerts import AlertManager
        from cgm_link.config import Settings
        from cgm_link.nightscout import NightscoutUploader
        from cgm_link.session import build_session, get_session, reset_session

        settings = Settings(
            sensor_generation="gen2",
            device_address="AA:BB",
            nightscout_url="https://ns.example.com",
            nightscout_api_secret="secret",
        )
        try:
            session = build_session(transport, settings)

            assert get_session() is session
            assert session.generation == SensorGeneration.GEN2
            assert session.state_store.load().device_address == "AA:BB"
            assert isinstance(session._sinks[-1], NightscoutUploader)
            assert isinstance(session._alerts, AlertManager)
        finally:
            reset_session()

    def test_without_nightscout(self, transport, mock_settings):
        from cgm_link.session import build_session, reset_session

        try:
            session = build_session(transport, mock_settings)
            assert len(session._sinks) == 1
        finally:
            reset_session()


class TestDuplicateAuthSuccess:
    """Tests for a repeated auth success on a working link."""

    def test_link_kept(self, orchestrator, transport):
        """Test the session stays connected and keeps its session key."""
        connect_and_authenticate(orchestrator, transport)
        key = orchestrator.protocol.session_key

        orchestrator.on_bytes_received(gen3_frame(Gen3MessageType.AUTH_SUCCESS, sequence=5))

        assert orchestrator.state == SessionState.CONNECTED
        assert orchestrator.reconnect_attempt == 0
        assert transport.disconnect_count == 0
        assert orchestrator.protocol.session_key == key


class BlockingSink(ReadingSink):
    """Sink that blocks until released, like a slow upload."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()
        self.done = threading.Event()
        self.received = []

    def insert_readings(self, readings, source):
        self.entered.set()
        self.release.wait(timeout=5.0)
        self.received.extend(readings)
        self.done.set()
        return len(readings)


class FailingSink(ReadingSink):
    def insert_readings(self, readings, source):
        raise RuntimeError("disk full")


class TestSinkDelivery:
    """Tests for handing readings to sinks."""

    def test_slow_sink_does_not_block_inbound_bytes(self, transport, scheduler, clock):
        """Test inbound bytes are handled while a sink is still busy."""
        sink = BlockingSink()
        orchestrator = SessionOrchestrator(transport, sinks=[sink], scheduler=scheduler, clock=clock)
        connect_and_authenticate(orchestrator, transport)
        transport.sent.clear()

        try:
            orchestrator.process_glucose_readings([GlucoseReading(timestamp_ms=NOW_MS, glucose_mg_dl=120.0)])
            assert sink.entered.wait(timeout=2.0)

            inbound = threading.Thread(
                target=orchestrator.on_bytes_received,
                args=(gen3_frame(Gen3MessageType.KEEP_ALIVE),),
            )
            inbound.start()
            inbound.join(timeout=1.0)

            assert not inbound.is_alive()
            message, _ = try_extract_message(transport.sent[-1])
            assert message.type == Gen3MessageType.KEEP_ALIVE
        finally:
            sink.release.set()

        assert sink.done.wait(timeout=2.0)
        assert [r.timestamp_ms for r in sink.received] == [NOW_MS]

    def test_sink_failure_is_contained(self, transport, scheduler, clock, reading_store):
        """Test a failing sink neither raises nor starves the others."""
        orchestrator = SessionOrchestrator(
            transport, sinks=[FailingSink(), reading_store], scheduler=scheduler, clock=clock,
            sink_executor=run_now,
        )
        accepted = orchestrator.process_glucose_readings(
            [GlucoseReading(timestamp_ms=NOW_MS, glucose_mg_dl=120.0)]
        )
        assert len(accepted) == 1
        assert len(reading_store) == 1
