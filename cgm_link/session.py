"""
Session orchestration for a single sensor.

The orchestrator drives the connection lifecycle::

    Idle -> Scanning -> Connecting -> Authenticating -> Connected
                                                          |
                                  Reconnecting <----------+ (unexpected disconnect)

Failures while connecting or authenticating schedule a reconnect with
exponential back-off. When the attempt cap is exceeded the session stops in
Error until :meth:`SessionOrchestrator.reconnect` or
:meth:`SessionOrchestrator.pair_new_device` is called.

Every entry point (public methods, transport notifications, protocol
events, timers) takes the same re-entrant lock.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import SessionConfig
from .exceptions import (
    AuthenticationError,
    CgmLinkError,
    ReconnectExhaustedError,
    SessionNotStartedError,
    TransportFailureError,
)
from .models import (
    ConnectionState,
    GlucoseQuality,
    GlucoseReading,
    SensorGeneration,
    SensorInfo,
    SessionState,
    SessionStatusResponse,
)
from .protocol import ProtocolCallback, ProtocolEngine, create_protocol
from .scheduler import Scheduler, ThreadingScheduler, TimerHandle, current_time_ms
from .store import InMemorySensorStateStore, ReadingSink, SensorStateStore
from .transport import Transport, TransportListener
from .trend import classify_trend

logger = logging.getLogger(__name__)


_CONNECTION_STATES = {
    SessionState.IDLE: ConnectionState.DISCONNECTED,
    SessionState.SCANNING: ConnectionState.SCANNING,
    SessionState.CONNECTING: ConnectionState.CONNECTING,
    SessionState.AUTHENTICATING: ConnectionState.AUTHENTICATING,
    SessionState.CONNECTED: ConnectionState.CONNECTED,
    SessionState.RECONNECTING: ConnectionState.RECONNECTING,
    SessionState.ERROR: ConnectionState.DISCONNECTED,
}

# States in which a lost link or failed operation leads to a reconnect
_LINK_STATES = (SessionState.CONNECTING, SessionState.AUTHENTICATING, SessionState.CONNECTED)

_SCAN_TIMER = "scan"
_CONNECT_TIMER = "connect"
_RECONNECT_TIMER = "reconnect"
_CLEANUP_TIMER = "cleanup"


def to_connection_state(state: SessionState) -> ConnectionState:
    """Project a session state onto the simpler connection state."""
    return _CONNECTION_STATES[state]


def backoff_delay_ms(attempt: int, base_ms: int, max_ms: int) -> int:
    """Delay before reconnect ``attempt`` (1-based): ``min(max, base * 2^(attempt-1))``."""
    return min(max_ms, base_ms * (1 << (attempt - 1)))


class _ProtocolEvents(ProtocolCallback):
    """Routes events of one engine back to the orchestrator."""

    def __init__(self, session: "SessionOrchestrator", engine: ProtocolEngine):
        self._session = session
        self._engine = engine

    def on_glucose_data(self, readings: List[GlucoseReading]) -> None:
        self._session._on_protocol_glucose(self._engine, readings)

    def on_sensor_info(self, info: SensorInfo) -> None:
        self._session._on_protocol_sensor_info(self._engine, info)

    def on_authentication_complete(self, success: bool) -> None:
        self._session._on_protocol_authentication(self._engine, success)

    def on_error(self, message: str) -> None:
        self._session._on_protocol_error(self._engine, message)

    def send_bytes(self, data: bytes) -> None:
        self._session._on_protocol_send(self._engine, data)


class SessionOrchestrator(TransportListener):
    """
    Owns the protocol engine, the reading window and the reconnect policy
    for one sensor session.

    Args:
        transport: Link to the sensor; the orchestrator registers itself
            as its listener
        config: Session knobs
        sinks: Receivers of accepted readings and sensor changes
        state_store: Persisted sensor state
        alerts: Optional collaborator with ``on_connection_state(state)``
            and ``reset_timers()``
        scheduler: Source of cancellable timers
        clock: Millisecond clock
        protocol_factory: Builds the engine for a generation
        sink_executor: Runs sink deliveries off the session lock; defaults to
            a single worker thread so batches keep their order
    """

    def __init__(
        self,
        transport: Transport,
        config: Optional[SessionConfig] = None,
        sinks: Sequence[ReadingSink] = (),
        state_store: Optional[SensorStateStore] = None,
        alerts=None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Callable[[], int]] = None,
        protocol_factory: Optional[Callable[[SensorGeneration], ProtocolEngine]] = None,
        sink_executor: Optional[Callable[[Callable[[], None]], object]] = None,
    ):
        self._transport = transport
        self._config = config or SessionConfig()
        self._sinks = list(sinks)
        self._store = state_store or InMemorySensorStateStore()
        self._alerts = alerts
        self._scheduler = scheduler or ThreadingScheduler()
        self._clock = clock or current_time_ms
        self._protocol_factory = protocol_factory or (
            lambda generation: create_protocol(generation, clock=self._clock)
        )
        if sink_executor is None:
            sink_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cgm-link-sink").submit
        self._sink_executor = sink_executor

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._error: Optional[CgmLinkError] = None
        self._last_error: Optional[str] = None
        self._generation = self._config.generation
        self._protocol: Optional[ProtocolEngine] = None
        self._device_id: Optional[str] = None
        self._reconnect_attempt = 0
        self._window: List[GlucoseReading] = []
        self._current_reading: Optional[GlucoseReading] = None
        self._timers: Dict[str, Tuple[object, TimerHandle]] = {}
        self._running = False

        self._transport.set_listener(self)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def connection_state(self) -> ConnectionState:
        return to_connection_state(self._state)

    @property
    def generation(self) -> SensorGeneration:
        return self._generation

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def error(self) -> Optional[CgmLinkError]:
        """Reason for the Error state, if any."""
        return self._error

    @property
    def protocol(self) -> Optional[ProtocolEngine]:
        return self._protocol

    @property
    def current_reading(self) -> Optional[GlucoseReading]:
        """Most recent reading received, whatever its quality."""
        return self._current_reading

    @property
    def state_store(self) -> SensorStateStore:
        return self._store

    def window(self) -> List[GlucoseReading]:
        """Snapshot of the retained reading window."""
        with self._lock:
            return list(self._window)

    def status(self) -> SessionStatusResponse:
        with self._lock:
            last_connection = self._store.load().last_connection_time_ms
            return SessionStatusResponse(
                state=self._state,
                connection_state=self.connection_state,
                generation=self._generation,
                reconnect_attempt=self._reconnect_attempt,
                last_error=self._last_error,
                last_connection_time_ms=last_connection or None,
                window_size=len(self._window),
            )

    def require_active(self) -> None:
        """
        Raise if the session cannot deliver data without intervention.

        Raises:
            ReconnectExhaustedError: The reconnect cap was exceeded
            SessionNotStartedError: Nothing is connected or being connected
        """
        with self._lock:
            if isinstance(self._error, ReconnectExhaustedError):
                raise self._error
            if self._state in (SessionState.IDLE, SessionState.ERROR):
                raise SessionNotStartedError(details=f"Session state: {self._state.value}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start periodic window cleanup and restore the saved device, if any."""
        with self._lock:
            if self._running:
                return
            self._running = True
            self._schedule_cleanup()

            saved = self._store.load()
            if saved.device_address and self._config.auto_reconnect:
                logger.info("Restoring connection", extra={"device_id": saved.device_address})
                self._connect(saved.device_address)

    def stop(self) -> None:
        """Disconnect and cancel every timer."""
        with self._lock:
            self._running = False
            self.disconnect()
            self._cancel_timer(_CLEANUP_TIMER)

    def start_scan(self) -> bool:
        with self._lock:
            if self._state not in (SessionState.IDLE, SessionState.ERROR):
                logger.warning("Cannot scan: session busy", extra={"state": self._state.value})
                return False

            self._set_state(SessionState.SCANNING)
            self._transport.start_scan()
            self._schedule(_SCAN_TIMER, self._config.scan_timeout_seconds, self._on_scan_timeout)
            return True

    def stop_scan(self) -> None:
        with self._lock:
            self._cancel_timer(_SCAN_TIMER)
            self._transport.stop_scan()
            if self._state == SessionState.SCANNING:
                self._set_state(SessionState.IDLE)

    def connect(self, device_id: str) -> None:
        """Connect to a device with the reconnect counter reset."""
        with self._lock:
            self._reconnect_attempt = 0
            self._error = None
            self._connect(device_id)

    def disconnect(self) -> None:
        """
        User-initiated disconnect. Safe from any state; cancels all
        connection timers so no reconnect fires afterwards.
        """
        with self._lock:
            logger.info("Disconnecting", extra={"device_id": self._device_id})
            for name in (_SCAN_TIMER, _CONNECT_TIMER, _RECONNECT_TIMER):
                self._cancel_timer(name)
            self._set_state(SessionState.IDLE)
            self._reconnect_attempt = 0
            self._teardown_link()

    def reconnect(self) -> None:
        """
        Explicit reconnect to the saved device. Clears an exhausted state.

        Raises:
            SessionNotStartedError: No device has been connected before
        """
        with self._lock:
            device_id = self._device_id or self._store.load().device_address
            if not device_id:
                raise SessionNotStartedError(details="No device to reconnect to")
            self.disconnect()
            self.connect(device_id)

    def pair_new_device(self, device_id: str, generation: Optional[SensorGeneration] = None) -> None:
        """Forget the current link and connect to another device."""
        with self._lock:
            self.disconnect()
            if generation is not None:
                self._generation = generation
            self.connect(device_id)

    def cleanup_window(self) -> int:
        """Drop readings older than the retention horizon; returns how many."""
        with self._lock:
            cutoff = self._clock() - self._config.retention_ms
            before = len(self._window)
            self._window = [r for r in self._window if r.timestamp_ms >= cutoff]
            return before - len(self._window)

    # =========================================================================
    # Transport Notifications
    # =========================================================================

    def on_device_found(self, device_id: str) -> None:
        with self._lock:
            if self._state != SessionState.SCANNING:
                return
            logger.info("Sensor found", extra={"device_id": device_id})
            self._cancel_timer(_SCAN_TIMER)
            self._transport.stop_scan()
            self.connect(device_id)

    def on_connected(self) -> None:
        with self._lock:
            if self._state != SessionState.CONNECTING or self._protocol is None:
                logger.warning("Ignoring connect event", extra={"state": self._state.value})
                return

            self._cancel_timer(_CONNECT_TIMER)
            self._set_state(SessionState.AUTHENTICATING)
            self._protocol.start_authentication()

    def on_disconnected(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._state not in _LINK_STATES:
                return
            logger.warning(
                "Unexpected disconnection",
                extra={"state": self._state.value, "reason": reason},
            )
            self._last_error = reason or "Disconnected"
            self._schedule_reconnect()

    def on_bytes_received(self, data: bytes) -> None:
        with self._lock:
            if self._protocol is not None:
                self._protocol.handle_bytes(data)

    def on_error(self, code: int) -> None:
        with self._lock:
            error = TransportFailureError(details=f"Transport error code {code}")
            logger.error(error.full_message, extra={"state": self._state.value})
            self._last_error = error.full_message

            if self._state == SessionState.SCANNING:
                self._cancel_timer(_SCAN_TIMER)
                self._transport.stop_scan()
                self._enter_error(error)
            elif self._state in _LINK_STATES:
                self._schedule_reconnect()

    # =========================================================================
    # Protocol Events
    # =========================================================================

    def _on_protocol_send(self, engine: ProtocolEngine, data: bytes) -> None:
        with self._lock:
            if engine is not self._protocol:
                return
            try:
                self._transport.send(data)
            except TransportFailureError as e:
                logger.error(e.full_message, extra={"size": len(data)})
                self._last_error = e.full_message
                if self._state in _LINK_STATES:
                    self._schedule_reconnect()

    def _on_protocol_authentication(self, engine: ProtocolEngine, success: bool) -> None:
        with self._lock:
            if engine is not self._protocol:
                return

            if not success:
                error = AuthenticationError(details=self._last_error)
                logger.error(error.full_message, extra={"device_id": self._device_id})
                self._last_error = error.full_message
                self._schedule_reconnect()
                return

            logger.info("Authentication successful", extra={"device_id": self._device_id})
            self._reconnect_attempt = 0
            self._error = None
            self._set_state(SessionState.CONNECTED)

            state = self._store.load()
            state.last_connection_time_ms = self._clock()
            self._store.save(state)

            engine.request_glucose_data()

    def _on_protocol_error(self, engine: ProtocolEngine, message: str) -> None:
        with self._lock:
            if engine is not self._protocol:
                return
            logger.error("Protocol error", extra={"error": message, "state": self._state.value})
            self._last_error = message

    def _on_protocol_glucose(self, engine: ProtocolEngine, readings: List[GlucoseReading]) -> None:
        with self._lock:
            if engine is not self._protocol:
                return
            self.process_glucose_readings(readings)

    def _on_protocol_sensor_info(self, engine: ProtocolEngine, info: SensorInfo) -> None:
        with self._lock:
            if engine is not self._protocol:
                return
            self.process_sensor_info(info)

    # =========================================================================
    # Data Processing
    # =========================================================================

    def process_glucose_readings(self, readings: Sequence[GlucoseReading]) -> List[GlucoseReading]:
        """
        Add a decoded batch to the window, annotate trends and persist.

        Returns:
            The readings handed to the sinks (Unreliable ones removed)
        """
        if not readings:
            return []

        with self._lock:
            now = self._clock()
            known = {r.timestamp_ms for r in self._window}
            cutoff = now - self._config.retention_ms
            self._window.extend(r for r in readings if r.timestamp_ms not in known)
            self._window = sorted(
                (r for r in self._window if r.timestamp_ms >= cutoff),
                key=lambda r: r.timestamp_ms,
            )

            annotated = [
                reading.with_trend(
                    classify_trend(
                        [w for w in self._window if w.timestamp_ms <= reading.timestamp_ms],
                        now_ms=reading.timestamp_ms,
                    )
                )
                for reading in sorted(readings, key=lambda r: r.timestamp_ms)
            ]

            self._current_reading = annotated[-1]

            accepted = [r for r in annotated if r.quality != GlucoseQuality.UNRELIABLE]

            state = self._store.load()
            state.last_connection_time_ms = now
            if accepted:
                state.latest_reading = accepted[-1]
            self._store.save(state)

            if not accepted:
                logger.warning("No reliable readings to persist", extra={"received": len(readings)})
                return []

            source = self._generation.value
            for sink in self._sinks:
                self._deliver(sink, "insert_readings", accepted, source)

            logger.debug(
                "Processed glucose readings",
                extra={"received": len(readings), "accepted": len(accepted)},
            )
            return accepted

    def process_sensor_info(self, info: SensorInfo) -> bool:
        """
        Record sensor metadata.

        Returns:
            True when the serial number differs from the stored one
        """
        with self._lock:
            state = self._store.load()
            is_new_sensor = not state.serial_number or state.serial_number != info.serial_number

            state.serial_number = info.serial_number
            state.start_time_ms = info.start_time_ms
            state.expiry_time_ms = info.expiry_time_ms
            state.generation = info.generation
            if info.patch_info is not None:
                state.patch_info = info.patch_info
            self._store.save(state)

            logger.info(
                "Sensor info received",
                extra={
                    "serial": info.serial_number,
                    "lifecycle": state.lifecycle(self._clock()).value,
                    "new_sensor": is_new_sensor,
                },
            )

            if is_new_sensor and self._config.create_sensor_change_events:
                for sink in self._sinks:
                    self._deliver(sink, "record_sensor_change", info)
                if self._alerts is not None:
                    self._alerts.reset_timers()

            return is_new_sensor

    # =========================================================================
    # Internals
    # =========================================================================

    def _set_state(self, state: SessionState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug(
            "Session state change",
            extra={"from_state": previous.value, "to_state": state.value},
        )
        if self._alerts is not None and to_connection_state(previous) != to_connection_state(state):
            self._alerts.on_connection_state(to_connection_state(state))

    def _deliver(self, sink: ReadingSink, method: str, *args) -> None:
        """Hand a sink call to the executor; sinks may block on I/O."""
        def run():
            try:
                getattr(sink, method)(*args)
            except Exception:
                logger.exception(
                    "Reading sink failed",
                    extra={"sink": type(sink).__name__, "method": method},
                )

        self._sink_executor(run)

    def _enter_error(self, error: CgmLinkError) -> None:
        self._error = error
        self._last_error = error.full_message
        self._set_state(SessionState.ERROR)

    def _connect(self, device_id: str) -> None:
        logger.info(
            "Connecting",
            extra={"device_id": device_id, "generation": self._generation.value},
        )
        self._transport.stop_scan()
        self._device_id = device_id

        state = self._store.load()
        state.device_address = device_id
        self._store.save(state)

        if self._protocol is not None:
            self._protocol.reset()
        engine = self._protocol_factory(self._generation)
        engine.initialize(state.sensor_info() if state.generation == self._generation else None)
        engine.set_callback(_ProtocolEvents(self, engine))
        self._protocol = engine

        self._set_state(SessionState.CONNECTING)

        try:
            started = self._transport.connect(device_id)
            if not started:
                self._last_error = "Failed to initiate connection"
        except TransportFailureError as e:
            logger.error(e.full_message, extra={"device_id": device_id})
            self._last_error = e.full_message
            started = False

        if not started:
            self._schedule_reconnect()
            return

        self._schedule(_CONNECT_TIMER, self._config.connect_timeout_seconds, self._on_connect_timeout)

    def _teardown_link(self) -> None:
        self._cancel_timer(_CONNECT_TIMER)
        if self._protocol is not None:
            self._protocol.reset()
        self._transport.disconnect()

    def _schedule_reconnect(self) -> None:
        self._cancel_timer(_CONNECT_TIMER)

        if not self._config.auto_reconnect:
            self._enter_error(TransportFailureError(details="Auto-reconnect disabled"))
            self._teardown_link()
            return

        self._reconnect_attempt += 1
        if self._reconnect_attempt > self._config.reconnect_max_attempts:
            error = ReconnectExhaustedError(self._config.reconnect_max_attempts)
            logger.error(error.full_message, extra={"device_id": self._device_id})
            self._enter_error(error)
            self._teardown_link()
            return

        delay_ms = backoff_delay_ms(
            self._reconnect_attempt,
            self._config.backoff_base_ms,
            self._config.backoff_max_ms,
        )
        logger.info(
            "Scheduling reconnect",
            extra={"attempt": self._reconnect_attempt, "delay_ms": delay_ms},
        )
        self._set_state(SessionState.RECONNECTING)
        self._teardown_link()
        self._schedule(_RECONNECT_TIMER, delay_ms / 1000.0, self._on_reconnect_due)

    def _on_scan_timeout(self) -> None:
        if self._state == SessionState.SCANNING:
            logger.warning("Scan timeout")
            self._transport.stop_scan()
            self._set_state(SessionState.IDLE)

    def _on_connect_timeout(self) -> None:
        if self._state == SessionState.CONNECTING:
            logger.warning("Connection timeout", extra={"device_id": self._device_id})
            self._last_error = "Connection timeout"
            self._schedule_reconnect()

    def _on_reconnect_due(self) -> None:
        if self._state == SessionState.RECONNECTING and self._device_id:
            self._connect(self._device_id)

    def _schedule_cleanup(self) -> None:
        def sweep():
            removed = self.cleanup_window()
            logger.debug("Reading window cleanup", extra={"removed": removed})
            if self._running:
                self._schedule_cleanup()

        self._schedule(_CLEANUP_TIMER, self._config.cleanup_interval_seconds, sweep)

    def _schedule(self, name: str, delay_seconds: float, action: Callable[[], None]) -> None:
        self._cancel_timer(name)
        token = object()

        def fire():
            with self._lock:
                current = self._timers.get(name)
                if current is None or current[0] is not token:
                    return
                del self._timers[name]
                action()

        handle = self._scheduler.call_later(delay_seconds, fire)
        self._timers[name] = (token, handle)

    def _cancel_timer(self, name: str) -> None:
        entry = self._timers.pop(name, None)
        if entry is not None:
            entry[1].cancel()


# =============================================================================
# Singleton Instance
# =============================================================================

_session: Optional[SessionOrchestrator] = None


def build_session(transport: Transport, settings=None, notifier=None) -> SessionOrchestrator:
    """
    Build an orchestrator wired to the configured collaborators.

    Readings go to an in-memory store and, when configured, to Nightscout.
    The alert manager shares the orchestrator's sensor state store.

    Args:
        transport: Link to the sensor
        settings: Application settings, defaults to :func:`get_settings`
        notifier: Alert notifier, defaults to logging

    Returns:
        The orchestrator, registered for the status API
    """
    from .alerts import AlertManager
    from .config import get_settings
    from .nightscout import NightscoutUploader
    from .store import InMemoryReadingStore

    settings = settings or get_settings()
    state_store = InMemorySensorStateStore()
    if settings.device_address:
        state = state_store.load()
        state.device_address = settings.device_address
        state_store.save(state)

    sinks: List[ReadingSink] = [InMemoryReadingStore()]
    uploader = NightscoutUploader.from_settings(settings)
    if uploader is not None:
        sinks.append(uploader)

    session = SessionOrchestrator(
        transport=transport,
        config=settings.session_config(),
        sinks=sinks,
        state_store=state_store,
        alerts=AlertManager(settings, state_store, notifier=notifier),
    )
    set_session(session)
    return session


def set_session(session: Optional[SessionOrchestrator]) -> None:
    """Register the orchestrator served by the status API."""
    global _session
    _session = session


def get_session() -> SessionOrchestrator:
    """
    Get the registered SessionOrchestrator.

    Raises:
        SessionNotStartedError: If no orchestrator has been registered
    """
    if _session is None:
        raise SessionNotStartedError(details="No session orchestrator registered")
    return _session


def reset_session() -> None:
    """Forget the registered orchestrator (useful for testing)."""
    set_session(None)
