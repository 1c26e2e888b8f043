"""
Data models shared by the decoders, protocol engines and session layer.

Readings and sensor metadata are immutable pydantic models; they are passed
by value between components and never mutated after decoding.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, field_validator, model_validator


# =============================================================================
# Enumerations
# =============================================================================

class TrendArrow(str, Enum):
    """Rate-of-change classification, named after Nightscout directions."""
    NONE = "NONE"
    DOUBLE_UP = "DoubleUp"
    SINGLE_UP = "SingleUp"
    FORTY_FIVE_UP = "FortyFiveUp"
    FLAT = "Flat"
    FORTY_FIVE_DOWN = "FortyFiveDown"
    SINGLE_DOWN = "SingleDown"
    DOUBLE_DOWN = "DoubleDown"


class GlucoseQuality(str, Enum):
    """Reading quality tier."""
    GOOD = "good"
    DEGRADED = "degraded"
    UNRELIABLE = "unreliable"


class SensorGeneration(str, Enum):
    """Supported sensor protocol generations."""
    GEN2 = "gen2"
    GEN3 = "gen3"


class ProtocolState(str, Enum):
    """State of a single protocol engine."""
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    READING = "reading"
    ERROR = "error"


class SessionState(str, Enum):
    """State of the session orchestrator."""
    IDLE = "idle"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class ConnectionState(str, Enum):
    """Connection projection exposed to UI and alert collaborators."""
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


class SensorLifecycle(str, Enum):
    """Operational phase of the sensor, derived from its start and expiry."""
    NONE = "none"
    STARTING = "starting"
    READY = "ready"
    ENDING = "ending"
    EXPIRED = "expired"


# =============================================================================
# Domain Models
# =============================================================================

class GlucoseReading(BaseModel):
    """A single decoded glucose reading."""

    model_config = ConfigDict(frozen=True)

    timestamp_ms: int
    glucose_mg_dl: float
    trend: TrendArrow = TrendArrow.NONE
    quality: GlucoseQuality = GlucoseQuality.GOOD
    raw_value: Optional[float] = None
    temperature_c: Optional[float] = None

    @model_validator(mode='after')
    def validate_glucose(self) -> 'GlucoseReading':
        """Good and degraded readings must carry a positive glucose value."""
        if self.quality != GlucoseQuality.UNRELIABLE and self.glucose_mg_dl <= 0:
            raise ValueError(
                f"glucose_mg_dl must be positive for {self.quality.value} readings, "
                f"got {self.glucose_mg_dl}"
            )
        return self

    def with_trend(self, trend: TrendArrow) -> 'GlucoseReading':
        """Return a copy carrying the given trend arrow."""
        return self.model_copy(update={"trend": trend})


class SensorInfo(BaseModel):
    """Metadata about the connected sensor."""

    model_config = ConfigDict(frozen=True)

    serial_number: str
    start_time_ms: int
    expiry_time_ms: int
    generation: SensorGeneration
    firmware_version: Optional[str] = None
    patch_info: Optional[bytes] = None

    @model_validator(mode='after')
    def validate_lifetime(self) -> 'SensorInfo':
        """Expiry must come after the start time."""
        if self.expiry_time_ms <= self.start_time_ms:
            raise ValueError(
                f"expiry_time_ms ({self.expiry_time_ms}) must be greater than "
                f"start_time_ms ({self.start_time_ms})"
            )
        return self


@dataclass(frozen=True)
class ProtocolMessage:
    """A complete generation-3 frame extracted from the receive buffer."""
    type: int
    sequence: int
    payload: bytes


# =============================================================================
# API Response Models
# =============================================================================

class HealthResponse(BaseModel):
    """Service identification for the root endpoint."""
    status: str
    service: str


class SessionStatusResponse(BaseModel):
    """Snapshot of the orchestrator for status endpoints."""
    state: SessionState
    connection_state: ConnectionState
    generation: SensorGeneration
    reconnect_attempt: int
    last_error: Optional[str] = None
    last_connection_time_ms: Optional[int] = None
    window_size: int = 0


class SensorStatusResponse(BaseModel):
    """Sensor metadata without key material."""
    serial_number: str
    generation: Optional[SensorGeneration] = None
    start_time_ms: int
    expiry_time_ms: int
    lifecycle: SensorLifecycle
    remaining_ms: int

    @field_validator('remaining_ms')
    @classmethod
    def validate_remaining(cls, v: int) -> int:
        """Remaining time never goes negative."""
        return max(0, v)
