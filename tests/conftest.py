"""
Pytest configuration and shared fixtures for the test suite.
"""

import os
import struct
from typing import Callable, List, Optional

import pytest
from fastapi.testclient import TestClient

# Keep a developer's environment out of the settings under test
os.environ.pop("NIGHTSCOUT_URL", None)
os.environ.pop("SENSOR_GENERATION", None)

from cgm_link.scheduler import Scheduler, TimerHandle  # noqa: E402
from cgm_link.transport import Transport  # noqa: E402

NOW_MS = 1_700_000_000_000


# =============================================================================
# Test Doubles
# =============================================================================

class FixedClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now_ms: int = NOW_MS):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


class ManualTimerHandle(TimerHandle):
    def __init__(self, due: float, delay: float, callback: Callable[[], None]):
        self.due = due
        self.delay = delay
        self.callback = callback
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ManualScheduler(Scheduler):
    """Scheduler whose timers fire only when the test advances time."""

    def __init__(self):
        self.now = 0.0
        self.handles: List[ManualTimerHandle] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        handle = ManualTimerHandle(self.now + delay_seconds, delay_seconds, callback)
        self.handles.append(handle)
        return handle

    @property
    def pending(self) -> List[ManualTimerHandle]:
        return sorted((h for h in self.handles if not h.cancelled), key=lambda h: h.due)

    def run_next(self) -> Optional[float]:
        """Fire the earliest pending timer; returns its delay."""
        pending = self.pending
        if not pending:
            return None
        handle = pending[0]
        self.handles.remove(handle)
        self.now = max(self.now, handle.due)
        handle.callback()
        return handle.delay

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while self.pending and self.pending[0].due <= target:
            self.run_next()
        self.now = target


class FakeTransport(Transport):
    """Transport that records calls; tests drive the listener by hand."""

    def __init__(self, connect_result: bool = True):
        super().__init__()
        self.connect_result = connect_result
        self.connect_calls: List[str] = []
        self.sent: List[bytes] = []
        self.disconnect_count = 0
        self.scanning = False

    def start_scan(self) -> None:
        self.scanning = True

    def stop_scan(self) -> None:
        self.scanning = False

    def connect(self, device_id: str) -> bool:
        self.connect_calls.append(device_id)
        return self.connect_result

    def disconnect(self) -> None:
        self.disconnect_count += 1

    def send(self, data: bytes) -> None:
        self.sent.append(bytes(data))


# =============================================================================
# Byte Builders
# =============================================================================

def gen3_frame(msg_type: int, payload: bytes = b"", sequence: int = 0) -> bytes:
    """Build a generation-3 frame."""
    return struct.pack("<BHB", msg_type, len(payload), sequence) + payload


def gen3_record(raw: int, flags: int = 0, seconds: int = 0) -> bytes:
    return struct.pack("<HHI", raw, flags, seconds)


def gen2_record(raw: int, flags: int = 0, temperature: int = 0) -> bytes:
    return struct.pack("<HHH", raw, flags, temperature)


def gen2_patch_info_response(serial: str = "ABC1234567", age_minutes: int = 120) -> bytes:
    """24-byte generation-2 patch info response."""
    data = bytearray(24)
    data[0] = 0x01
    data[3:13] = serial.encode("ascii")[:10].ljust(10, b"\x00")
    struct.pack_into("<H", data, 13, age_minutes)
    data[15:24] = bytes(range(1, 10))
    return bytes(data)


def gen3_sensor_info_payload(
    serial: str = "3MH0012345",
    age_minutes: int = 600,
    max_life_minutes: int = 14 * 24 * 60,
) -> bytes:
    data = bytearray(24)
    data[0:10] = serial.encode("ascii")[:10].ljust(10, b"\x00")
    struct.pack_into("<I", data, 14, age_minutes)
    struct.pack_into("<I", data, 18, max_life_minutes)
    return bytes(data)


def run_now(action: Callable[[], None]) -> None:
    """Sink executor that delivers synchronously."""
    action()


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def patch_info():
    return bytes(range(0x10, 0x28))


@pytest.fixture
def mock_settings():
    """Create settings for testing."""
    from cgm_link.config import Settings, get_settings

    get_settings.cache_clear()

    return Settings(
        sensor_generation="gen3",
        connection_lost_threshold_minutes=30,
    )


@pytest.fixture
def session_config():
    from cgm_link.config import SessionConfig
    from cgm_link.models import SensorGeneration

    return SessionConfig(generation=SensorGeneration.GEN3)


@pytest.fixture
def reading_store():
    from cgm_link.store import InMemoryReadingStore

    return InMemoryReadingStore()


@pytest.fixture
def state_store():
    from cgm_link.store import InMemorySensorStateStore

    return InMemorySensorStateStore()


@pytest.fixture
def orchestrator(transport, session_config, reading_store, state_store, scheduler, clock):
    """SessionOrchestrator wired to fakes."""
    from cgm_link.session import SessionOrchestrator

    return SessionOrchestrator(
        transport=transport,
        config=session_config,
        sinks=[reading_store],
        state_store=state_store,
        scheduler=scheduler,
        clock=clock,
        sink_executor=run_now,
    )


@pytest.fixture
def test_client(orchestrator):
    """Create a test client serving the fake-backed orchestrator."""
    from cgm_link.main import app
    from cgm_link.session import get_session

    app.dependency_overrides[get_session] = lambda: orchestrator

    client = TestClient(app)

    yield client

    app.dependency_overrides.clear()
