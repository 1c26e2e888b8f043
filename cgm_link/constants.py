"""
Protocol constants and magic number definitions.

This module centralizes all hardcoded values for better maintainability.
"""

from enum import IntEnum


# =============================================================================
# Cipher Constants
# =============================================================================

AES_BLOCK_SIZE = 16

# XOR table shared by unlock-key, AES key and IV derivation
KEY_DERIVATION_TABLE = bytes([
    0xA0, 0xC5, 0x06, 0x0E, 0x14, 0xB7, 0x22, 0x60,
    0x08, 0xCE, 0x93, 0x12, 0x56, 0x40, 0x33, 0xF7,
])

# Prefix placed before the 8 derived bytes of a generation-2 unlock key
GEN2_UNLOCK_KEY_PREFIX = bytes([0x21, 0xD0, 0x00])

# Salt appended before generation-3 session key mixing
GEN3_KEY_SALT = bytes([0x89, 0x81, 0x0C, 0xC4, 0x08, 0x98, 0x17, 0x7A])

MIN_PATCH_INFO_SIZE = 6
UNLOCK_KEY_DERIVED_SIZE = 8
GEN2_CLEAR_HEADER_SIZE = 8

CRC16_POLYNOMIAL = 0x8408
CRC16_SEED = 0xFFFF
CRC16_FINAL_XOR = 0xFFFF


# =============================================================================
# Generation-2 Protocol
# =============================================================================

class Gen2Command(IntEnum):
    """Commands written to a generation-2 sensor."""
    GET_PATCH_INFO = 0x01
    GET_GLUCOSE = 0x02
    UNLOCK = 0x07


class Gen2Response(IntEnum):
    """First byte of a generation-2 response."""
    PATCH_INFO = 0x01
    GLUCOSE_DATA = 0x02
    UNLOCK_SUCCESS = 0x08


GEN2_GLUCOSE_BLOCK_SIZE = 344
GEN2_SENSOR_INFO_MIN_SIZE = 20
GEN2_PATCH_INFO_SIZE = 24
GEN2_SERIAL_OFFSET = 3
GEN2_SERIAL_SIZE = 10
GEN2_START_MINUTES_OFFSET = 13

GEN2_TREND_INDEX_OFFSET = 26
GEN2_HISTORY_INDEX_OFFSET = 27
GEN2_TREND_SIZE = 16       # 1-minute spacing
GEN2_HISTORY_SIZE = 32     # 15-minute spacing
GEN2_RECORD_SIZE = 6       # glucose(2) + flags(2) + temperature(2)
GEN2_TREND_DATA_OFFSET = 28
GEN2_HISTORY_DATA_OFFSET = GEN2_TREND_DATA_OFFSET + GEN2_TREND_SIZE * GEN2_RECORD_SIZE
GEN2_HISTORY_SPACING_MINUTES = 15

GEN2_GLUCOSE_SCALE = 1.0
GEN2_MAX_RAW_GLUCOSE = 500


# =============================================================================
# Generation-3 Protocol
# =============================================================================

class Gen3MessageType(IntEnum):
    """Message type byte of a generation-3 frame."""
    AUTH_CHALLENGE = 0x01
    AUTH_RESPONSE = 0x02
    AUTH_SUCCESS = 0x03
    GLUCOSE_DATA = 0x10
    SENSOR_INFO = 0x20
    KEEP_ALIVE = 0x30


# Header: type(1) + length LE(2) + sequence(1)
GEN3_HEADER_SIZE = 4
GEN3_MAX_PAYLOAD_SIZE = 0xFFFF

GEN3_CHALLENGE_MIN_SIZE = 16
GEN3_RANDOM_SIZE = 8
GEN3_DEVICE_INFO_SIZE = 16
GEN3_SESSION_KEY_SIZE = 16

GEN3_RECORD_SIZE = 8       # glucose(2) + flags(2) + seconds since start(4)
GEN3_SENSOR_INFO_MIN_SIZE = 24
GEN3_SERIAL_SIZE = 10
GEN3_AGE_MINUTES_OFFSET = 14
GEN3_MAX_LIFE_MINUTES_OFFSET = 18

GEN3_GLUCOSE_SCALE = 0.1
GEN3_MAX_RAW_GLUCOSE = 5000


# =============================================================================
# Reading Quality Flags
# =============================================================================

FLAG_UNRELIABLE = 0x8000
FLAG_DEGRADED = 0x4000


# =============================================================================
# Sensor Lifetime
# =============================================================================

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE

SENSOR_LIFESPAN_MINUTES = 14 * 24 * 60
SENSOR_LIFESPAN_MS = SENSOR_LIFESPAN_MINUTES * MS_PER_MINUTE
SENSOR_WARMUP_MS = MS_PER_HOUR
SENSOR_ENDING_MS = MS_PER_HOUR


# =============================================================================
# Trend Classification (mg/dL per minute)
# =============================================================================

class TrendThreshold:
    """Rate-of-change thresholds for trend arrows."""
    DOUBLE = 3.0
    SINGLE = 2.0
    FORTY_FIVE = 1.0
    FLAT = 0.5


class NoiseThreshold:
    """Residual standard deviation thresholds in mg/dL."""
    LOW = 5.0
    HIGH = 15.0


TREND_WINDOW_MS = 15 * MS_PER_MINUTE
MIN_READINGS_FOR_TREND = 3
REGRESSION_EPSILON = 0.0001


# =============================================================================
# Session Defaults
# =============================================================================

DEFAULT_SCAN_TIMEOUT_SECONDS = 30
DEFAULT_CONNECT_TIMEOUT_SECONDS = 30
DEFAULT_RECONNECT_MAX_ATTEMPTS = 10
DEFAULT_BACKOFF_BASE_MS = 1_000
DEFAULT_BACKOFF_MAX_MS = 60_000
DEFAULT_RETENTION_MINUTES = 30
DEFAULT_CLEANUP_INTERVAL_SECONDS = 60 * 60


# =============================================================================
# Alert Intervals
# =============================================================================

EXPIRY_24H_MS = 24 * MS_PER_HOUR
EXPIRY_12H_MS = 12 * MS_PER_HOUR
EXPIRY_1H_MS = MS_PER_HOUR

SNOOZE_24H_MS = 12 * MS_PER_HOUR
SNOOZE_12H_MS = 6 * MS_PER_HOUR
SNOOZE_1H_MS = 30 * MS_PER_MINUTE
SNOOZE_CONNECTION_LOST_MS = 15 * MS_PER_MINUTE

DEFAULT_CONNECTION_LOST_THRESHOLD_MINUTES = 30


# =============================================================================
# Nightscout Upload
# =============================================================================

NIGHTSCOUT_ENTRIES_PATH = "/api/v1/entries"
DEFAULT_NIGHTSCOUT_TIMEOUT = 10
NIGHTSCOUT_DEVICE_NAME = "cgm-link"


# =============================================================================
# Logging Constants
# =============================================================================

DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_LOG_LEVEL = "INFO"
