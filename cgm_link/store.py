"""
Persistence collaborators: reading sinks and the sensor state store.

The session orchestrator writes through these interfaces only. The
in-memory implementations back the status API and the tests.
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

from .constants import SENSOR_ENDING_MS, SENSOR_WARMUP_MS
from .models import GlucoseReading, SensorGeneration, SensorInfo, SensorLifecycle

logger = logging.getLogger(__name__)


def sensor_lifecycle(start_time_ms: int, expiry_time_ms: int, now_ms: int) -> SensorLifecycle:
    """
    Derive the sensor's operational phase.

    Args:
        start_time_ms: Sensor start, 0 when unknown
        expiry_time_ms: Sensor expiry, 0 when unknown
        now_ms: Current time

    Returns:
        NONE without a known sensor, STARTING during warm-up, EXPIRED at
        or after expiry, ENDING within the last hour, READY otherwise
    """
    if start_time_ms <= 0 or expiry_time_ms <= 0:
        return SensorLifecycle.NONE
    if now_ms >= expiry_time_ms:
        return SensorLifecycle.EXPIRED
    if now_ms < start_time_ms + SENSOR_WARMUP_MS:
        return SensorLifecycle.STARTING
    if expiry_time_ms - now_ms <= SENSOR_ENDING_MS:
        return SensorLifecycle.ENDING
    return SensorLifecycle.READY


# =============================================================================
# Readings
# =============================================================================

class ReadingSink(ABC):
    """
    Receiver of accepted readings and sensor changes.

    Insertion must be idempotent by ``(timestamp_ms, source)``: overlapping
    trend and history windows deliver the same reading more than once.
    """

    @abstractmethod
    def insert_readings(self, readings: Sequence[GlucoseReading], source: str) -> int:
        """Store readings; returns how many were new."""

    def record_sensor_change(self, info: SensorInfo) -> None:
        """Called when a sensor with a new serial number is seen."""


class InMemoryReadingStore(ReadingSink):
    """Thread-safe in-memory reading store."""

    def __init__(self):
        self._lock = threading.Lock()
        self._readings: Dict[Tuple[int, str], GlucoseReading] = {}
        self.sensor_changes: List[SensorInfo] = []

    def insert_readings(self, readings: Sequence[GlucoseReading], source: str) -> int:
        inserted = 0
        with self._lock:
            for reading in readings:
                key = (reading.timestamp_ms, source)
                if key in self._readings:
                    continue
                self._readings[key] = reading
                inserted += 1

        logger.debug(
            "Stored readings",
            extra={"source": source, "received": len(readings), "inserted": inserted},
        )
        return inserted

    def record_sensor_change(self, info: SensorInfo) -> None:
        with self._lock:
            self.sensor_changes.append(info)
        logger.info("Sensor change recorded", extra={"serial": info.serial_number})

    def readings(self, source: Optional[str] = None) -> List[GlucoseReading]:
        """All stored readings, ascending by timestamp."""
        with self._lock:
            items = [r for (_, src), r in self._readings.items() if source is None or src == source]
        return sorted(items, key=lambda r: r.timestamp_ms)

    def __len__(self) -> int:
        with self._lock:
            return len(self._readings)


# =============================================================================
# Sensor State
# =============================================================================

@dataclass
class SensorState:
    """Persisted view of the current sensor and connection."""
    serial_number: str = ""
    start_time_ms: int = 0
    expiry_time_ms: int = 0
    generation: Optional[SensorGeneration] = None
    patch_info: Optional[bytes] = None
    device_address: Optional[str] = None
    last_connection_time_ms: int = 0
    latest_reading: Optional[GlucoseReading] = None

    def lifecycle(self, now_ms: int) -> SensorLifecycle:
        return sensor_lifecycle(self.start_time_ms, self.expiry_time_ms, now_ms)

    def remaining_ms(self, now_ms: int) -> int:
        if self.expiry_time_ms <= 0:
            return 0
        return max(0, self.expiry_time_ms - now_ms)

    def sensor_info(self) -> Optional[SensorInfo]:
        """Rebuild SensorInfo for protocol initialisation, if a sensor is known."""
        if not self.serial_number or self.generation is None:
            return None
        if self.expiry_time_ms <= self.start_time_ms:
            return None
        return SensorInfo(
            serial_number=self.serial_number,
            start_time_ms=self.start_time_ms,
            expiry_time_ms=self.expiry_time_ms,
            generation=self.generation,
            patch_info=self.patch_info,
        )


class SensorStateStore(ABC):
    """Load and save :class:`SensorState`."""

    @abstractmethod
    def load(self) -> SensorState:
        ...

    @abstractmethod
    def save(self, state: SensorState) -> None:
        ...


class InMemorySensorStateStore(SensorStateStore):
    """Keeps the state in memory; hands out copies."""

    def __init__(self, initial: Optional[SensorState] = None):
        self._lock = threading.Lock()
        self._state = replace(initial) if initial is not None else SensorState()

    def load(self) -> SensorState:
        with self._lock:
            return replace(self._state)

    def save(self, state: SensorState) -> None:
        with self._lock:
            self._state = replace(state)
