"""
CGM Link - direct ingestion of continuous glucose monitor sensor data.

This package authenticates with generation-2 and generation-3 glucose
sensors, decrypts and decodes their readings, classifies trend and noise,
and manages the sensor session with automatic reconnection.
"""

__version__ = "1.0.0"
__author__ = "CGM Link Contributors"

from .config import SessionConfig, Settings, get_settings, load_settings
from .models import (
    ConnectionState,
    GlucoseQuality,
    GlucoseReading,
    SensorGeneration,
    SensorInfo,
    SessionState,
    TrendArrow,
)
from .protocol import ProtocolCallback, ProtocolEngine, create_protocol
from .session import SessionOrchestrator, build_session
from .transport import Transport, TransportListener

__all__ = [
    "SessionConfig",
    "Settings",
    "get_settings",
    "load_settings",
    "ConnectionState",
    "GlucoseQuality",
    "GlucoseReading",
    "SensorGeneration",
    "SensorInfo",
    "SessionState",
    "TrendArrow",
    "ProtocolCallback",
    "ProtocolEngine",
    "create_protocol",
    "SessionOrchestrator",
    "build_session",
    "Transport",
    "TransportListener",
]
