"""
Frame splitting and binary record decoding for both sensor generations.

Decoders never raise on bad input. A buffer that is too short or carries
an out-of-range field yields ``None`` (or an empty list) and a log line;
callers treat that as "not available yet".
"""

import logging
import struct
from typing import List, Optional, Tuple

from .constants import (
    FLAG_DEGRADED,
    FLAG_UNRELIABLE,
    GEN2_GLUCOSE_BLOCK_SIZE,
    GEN2_GLUCOSE_SCALE,
    GEN2_HISTORY_DATA_OFFSET,
    GEN2_HISTORY_INDEX_OFFSET,
    GEN2_HISTORY_SIZE,
    GEN2_HISTORY_SPACING_MINUTES,
    GEN2_MAX_RAW_GLUCOSE,
    GEN2_PATCH_INFO_SIZE,
    GEN2_RECORD_SIZE,
    GEN2_SENSOR_INFO_MIN_SIZE,
    GEN2_SERIAL_OFFSET,
    GEN2_SERIAL_SIZE,
    GEN2_START_MINUTES_OFFSET,
    GEN2_TREND_DATA_OFFSET,
    GEN2_TREND_INDEX_OFFSET,
    GEN2_TREND_SIZE,
    GEN3_AGE_MINUTES_OFFSET,
    GEN3_GLUCOSE_SCALE,
    GEN3_HEADER_SIZE,
    GEN3_MAX_LIFE_MINUTES_OFFSET,
    GEN3_MAX_PAYLOAD_SIZE,
    GEN3_MAX_RAW_GLUCOSE,
    GEN3_RECORD_SIZE,
    GEN3_SENSOR_INFO_MIN_SIZE,
    GEN3_SERIAL_SIZE,
    MS_PER_MINUTE,
    SENSOR_LIFESPAN_MS,
    Gen3MessageType,
)
from .models import (
    GlucoseQuality,
    GlucoseReading,
    ProtocolMessage,
    SensorGeneration,
    SensorInfo,
)

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<BHB")
_GEN2_RECORD = struct.Struct("<HHH")
_GEN3_RECORD = struct.Struct("<HHI")
_KNOWN_GEN3_TYPES = frozenset(t.value for t in Gen3MessageType)


# =============================================================================
# Receive Buffer
# =============================================================================

class ReceiveBuffer:
    """
    Growable byte buffer with a consumed offset.

    Appends grow the underlying bytearray; consuming only advances the
    offset. The consumed prefix is dropped once it outweighs the live data.
    """

    def __init__(self):
        self._data = bytearray()
        self._offset = 0

    def __len__(self) -> int:
        return len(self._data) - self._offset

    def append(self, data: bytes) -> None:
        self._data.extend(data)

    def peek(self) -> bytes:
        """Return the unconsumed bytes without consuming them."""
        return bytes(self._data[self._offset:])

    def consume(self, count: int) -> None:
        self._offset = min(len(self._data), self._offset + count)
        if self._offset * 2 >= len(self._data):
            del self._data[:self._offset]
            self._offset = 0

    def clear(self) -> None:
        self._data = bytearray()
        self._offset = 0


# =============================================================================
# Generation-3 Framing
# =============================================================================

def try_extract_message(buffer: bytes) -> Optional[Tuple[ProtocolMessage, bytes]]:
    """
    Split one complete generation-3 message off the front of ``buffer``.

    Args:
        buffer: Accumulated receive bytes

    Returns:
        ``(message, remaining)`` when a full message is available, or None
        when more data is needed. ``buffer`` itself is never modified.
    """
    if len(buffer) < GEN3_HEADER_SIZE:
        return None

    msg_type, length, sequence = _HEADER.unpack_from(buffer, 0)
    end = GEN3_HEADER_SIZE + length
    if len(buffer) < end:
        return None

    message = ProtocolMessage(
        type=msg_type,
        sequence=sequence,
        payload=bytes(buffer[GEN3_HEADER_SIZE:end]),
    )
    return message, bytes(buffer[end:])


def extract_messages(buffer: ReceiveBuffer) -> List[ProtocolMessage]:
    """
    Drain every complete message from ``buffer``.

    Messages of unknown type are consumed and dropped with a warning so
    they never block the buffer. A trailing partial message stays buffered.
    """
    messages: List[ProtocolMessage] = []
    while True:
        extracted = try_extract_message(buffer.peek())
        if extracted is None:
            break

        message, _ = extracted
        buffer.consume(GEN3_HEADER_SIZE + len(message.payload))

        if message.type not in _KNOWN_GEN3_TYPES:
            logger.warning(
                "Dropping message of unknown type",
                extra={"message_type": message.type, "payload_size": len(message.payload)},
            )
            continue
        messages.append(message)

    return messages


def encode_message(msg_type: int, payload: bytes, sequence: int) -> bytes:
    """Build a generation-3 frame: type, little-endian length, sequence, payload."""
    if len(payload) > GEN3_MAX_PAYLOAD_SIZE:
        raise ValueError(f"Payload of {len(payload)} bytes exceeds frame limit")
    return _HEADER.pack(msg_type & 0xFF, len(payload), sequence & 0xFF) + bytes(payload)


# =============================================================================
# Glucose Records
# =============================================================================

def decode_quality(flags: int) -> GlucoseQuality:
    """Map 16-bit reading flags to a quality tier."""
    if flags & FLAG_UNRELIABLE:
        return GlucoseQuality.UNRELIABLE
    if flags & FLAG_DEGRADED:
        return GlucoseQuality.DEGRADED
    return GlucoseQuality.GOOD


def decode_gen2_record(data: bytes, offset: int, timestamp_ms: int) -> Optional[GlucoseReading]:
    """
    Decode one 6-byte generation-2 record.

    Args:
        data: Decrypted glucose block
        offset: Start of the record within ``data``
        timestamp_ms: Timestamp assigned to the reading

    Returns:
        GlucoseReading, or None if the record is out of bounds or its raw
        value is outside 1..500
    """
    if offset + GEN2_RECORD_SIZE > len(data):
        return None

    raw, flags, temp_raw = _GEN2_RECORD.unpack_from(data, offset)
    if raw <= 0 or raw > GEN2_MAX_RAW_GLUCOSE:
        return None

    return GlucoseReading(
        timestamp_ms=timestamp_ms,
        glucose_mg_dl=raw * GEN2_GLUCOSE_SCALE,
        quality=decode_quality(flags),
        raw_value=float(raw),
        temperature_c=temp_raw / 100.0 if temp_raw > 0 else None,
    )


def decode_gen2_glucose(data: bytes, now_ms: int) -> List[GlucoseReading]:
    """
    Decode a generation-2 glucose block.

    The 16-entry trend ring is walked newest-first from the trend index at
    1-minute spacing; the 32-entry history ring continues backwards from
    the end of the trend window at 15-minute spacing.

    Args:
        data: Decrypted glucose block (at least 344 bytes)
        now_ms: Decode time; all timestamps are computed backwards from it

    Returns:
        Readings from both rings, ascending by timestamp
    """
    if len(data) < GEN2_GLUCOSE_BLOCK_SIZE:
        logger.warning("Glucose data too short", extra={"data_size": len(data)})
        return []

    readings: List[GlucoseReading] = []

    trend_index = data[GEN2_TREND_INDEX_OFFSET]
    for i in range(GEN2_TREND_SIZE):
        index = (trend_index - i + GEN2_TREND_SIZE) % GEN2_TREND_SIZE
        offset = GEN2_TREND_DATA_OFFSET + index * GEN2_RECORD_SIZE
        reading = decode_gen2_record(data, offset, now_ms - i * MS_PER_MINUTE)
        if reading is not None:
            readings.append(reading)

    history_index = data[GEN2_HISTORY_INDEX_OFFSET]
    for i in range(GEN2_HISTORY_SIZE):
        index = (history_index - i + GEN2_HISTORY_SIZE) % GEN2_HISTORY_SIZE
        offset = GEN2_HISTORY_DATA_OFFSET + index * GEN2_RECORD_SIZE
        minutes_ago = GEN2_TREND_SIZE + i * GEN2_HISTORY_SPACING_MINUTES
        reading = decode_gen2_record(data, offset, now_ms - minutes_ago * MS_PER_MINUTE)
        if reading is not None:
            readings.append(reading)

    logger.debug("Parsed generation-2 glucose readings", extra={"count": len(readings)})
    return sorted(readings, key=lambda r: r.timestamp_ms)


def decode_gen3_record(
    data: bytes,
    offset: int,
    sensor_start_ms: Optional[int],
    now_ms: int,
) -> Optional[GlucoseReading]:
    """Decode one 8-byte generation-3 record; None when raw is outside 1..5000."""
    if offset + GEN3_RECORD_SIZE > len(data):
        return None

    raw, flags, seconds_since_start = _GEN3_RECORD.unpack_from(data, offset)
    if raw <= 0 or raw > GEN3_MAX_RAW_GLUCOSE:
        return None

    if sensor_start_ms is not None:
        timestamp_ms = sensor_start_ms + seconds_since_start * 1000
    else:
        timestamp_ms = now_ms

    return GlucoseReading(
        timestamp_ms=timestamp_ms,
        glucose_mg_dl=round(raw * GEN3_GLUCOSE_SCALE, 1),
        quality=decode_quality(flags),
        raw_value=float(raw),
    )


def decode_gen3_glucose(
    data: bytes,
    sensor_start_ms: Optional[int],
    now_ms: int,
) -> List[GlucoseReading]:
    """
    Decode a decrypted generation-3 glucose payload.

    Args:
        data: Back-to-back 8-byte records; a trailing partial record is ignored
        sensor_start_ms: Sensor start time, or None if not known yet
        now_ms: Timestamp used when the sensor start is unknown

    Returns:
        Valid readings in payload order
    """
    readings: List[GlucoseReading] = []
    for offset in range(0, len(data) - GEN3_RECORD_SIZE + 1, GEN3_RECORD_SIZE):
        reading = decode_gen3_record(data, offset, sensor_start_ms, now_ms)
        if reading is not None:
            readings.append(reading)

    logger.debug("Parsed generation-3 glucose readings", extra={"count": len(readings)})
    return readings


# =============================================================================
# Sensor Info
# =============================================================================

def _decode_serial(raw: bytes) -> str:
    return raw.decode("utf-8", errors="replace").replace("\x00", "").strip()


def decode_gen2_sensor_info(data: bytes, now_ms: int) -> Optional[SensorInfo]:
    """
    Decode a generation-2 patch info response.

    Args:
        data: Response bytes (at least 20)
        now_ms: Decode time used to turn sensor age into a start time

    Returns:
        SensorInfo carrying the first 24 bytes as patch info, or None
    """
    if len(data) < GEN2_SENSOR_INFO_MIN_SIZE:
        return None

    serial = _decode_serial(data[GEN2_SERIAL_OFFSET:GEN2_SERIAL_OFFSET + GEN2_SERIAL_SIZE])
    (age_minutes,) = struct.unpack_from("<H", data, GEN2_START_MINUTES_OFFSET)
    start_ms = now_ms - age_minutes * MS_PER_MINUTE

    return SensorInfo(
        serial_number=serial,
        start_time_ms=start_ms,
        expiry_time_ms=start_ms + SENSOR_LIFESPAN_MS,
        generation=SensorGeneration.GEN2,
        patch_info=bytes(data[:GEN2_PATCH_INFO_SIZE]),
    )


def decode_gen3_sensor_info(data: bytes, now_ms: int) -> Optional[SensorInfo]:
    """
    Decode a generation-3 sensor info payload.

    Args:
        data: Payload bytes (at least 24)
        now_ms: Decode time used to turn sensor age into a start time

    Returns:
        SensorInfo, or None if the payload is short or declares no lifetime
    """
    if len(data) < GEN3_SENSOR_INFO_MIN_SIZE:
        return None

    serial = _decode_serial(data[:GEN3_SERIAL_SIZE])
    (age_minutes,) = struct.unpack_from("<I", data, GEN3_AGE_MINUTES_OFFSET)
    (max_life_minutes,) = struct.unpack_from("<I", data, GEN3_MAX_LIFE_MINUTES_OFFSET)

    if max_life_minutes == 0:
        logger.warning("Sensor info declares zero lifetime", extra={"serial": serial})
        return None

    start_ms = now_ms - age_minutes * MS_PER_MINUTE
    return SensorInfo(
        serial_number=serial,
        start_time_ms=start_ms,
        expiry_time_ms=start_ms + max_life_minutes * MS_PER_MINUTE,
        generation=SensorGeneration.GEN3,
    )
