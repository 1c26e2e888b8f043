"""
Generation-2 sensor protocol.

The device unlocks the sensor with a key derived from patch info read over
NFC, then polls for a single large glucose block. Responses are identified
by their first byte and may arrive split across several notifications.
"""

import logging
from typing import Callable, Optional

from .constants import (
    GEN2_GLUCOSE_BLOCK_SIZE,
    GEN2_SENSOR_INFO_MIN_SIZE,
    Gen2Command,
    Gen2Response,
)
from .crypto import decrypt_gen2, derive_unlock_key
from .framing import ReceiveBuffer, decode_gen2_glucose, decode_gen2_sensor_info
from .exceptions import MalformedInputError
from .models import ProtocolState, SensorGeneration, SensorInfo
from .protocol import ProtocolEngine

logger = logging.getLogger(__name__)


class Gen2Protocol(ProtocolEngine):
    """Protocol engine for generation-2 sensors."""

    generation = SensorGeneration.GEN2

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        super().__init__(clock=clock)
        self._buffer = ReceiveBuffer()
        self._unlock_key = b""

    @property
    def unlock_key(self) -> bytes:
        return self._unlock_key

    def initialize(self, sensor_info: Optional[SensorInfo] = None) -> None:
        self._buffer.clear()
        self._set_state(ProtocolState.IDLE)
        self._sensor_info = sensor_info
        self._unlock_key = b""

        if sensor_info is not None and sensor_info.patch_info:
            self._unlock_key = derive_unlock_key(sensor_info.patch_info)
            logger.info(
                "Unlock key derived from patch info",
                extra={"serial": sensor_info.serial_number},
            )

    def start_authentication(self) -> None:
        if not self._unlock_key:
            self._fail_authentication("No unlock key available; patch info must be read first")
            return

        self._buffer.clear()
        self._set_state(ProtocolState.AUTHENTICATING)
        self._callback.send_bytes(bytes([Gen2Command.UNLOCK]) + self._unlock_key)

    def request_glucose_data(self) -> bool:
        if self._state != ProtocolState.AUTHENTICATED:
            logger.warning(
                "Glucose request ignored: not authenticated",
                extra={"state": self._state.value},
            )
            return False

        self._set_state(ProtocolState.READING)
        self._callback.send_bytes(bytes([Gen2Command.GET_GLUCOSE]))
        return True

    def reset(self) -> None:
        self._buffer.clear()
        self._unlock_key = b""
        self._set_state(ProtocolState.IDLE)

    def handle_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._buffer.append(data)
        self._process_buffer()

    # =========================================================================
    # Receive Path
    # =========================================================================

    def _process_buffer(self) -> None:
        pending = self._buffer.peek()
        if not pending:
            return

        response = pending[0]
        if response == Gen2Response.UNLOCK_SUCCESS:
            self._buffer.clear()
            self._handle_unlock_success()
        elif response == Gen2Response.PATCH_INFO:
            if len(pending) >= GEN2_SENSOR_INFO_MIN_SIZE:
                self._buffer.clear()
                self._handle_patch_info(pending)
        elif response == Gen2Response.GLUCOSE_DATA:
            if len(pending) >= GEN2_GLUCOSE_BLOCK_SIZE:
                self._buffer.clear()
                self._handle_glucose(pending)
        else:
            logger.warning(
                "Dropping unknown response",
                extra={"response_type": response, "buffered": len(pending)},
            )
            self._buffer.clear()

    def _handle_unlock_success(self) -> None:
        if self._state != ProtocolState.AUTHENTICATING:
            logger.warning(
                "Unexpected unlock response dropped",
                extra={"state": self._state.value},
            )
            return

        logger.info("Generation-2 sensor unlocked")
        self._set_state(ProtocolState.AUTHENTICATED)
        self._callback.on_authentication_complete(True)

    def _handle_patch_info(self, data: bytes) -> None:
        info = decode_gen2_sensor_info(data, self._clock())
        if info is None:
            logger.warning("Patch info response could not be decoded", extra={"size": len(data)})
            return

        self._sensor_info = info
        if info.patch_info:
            self._unlock_key = derive_unlock_key(info.patch_info)
        self._callback.on_sensor_info(info)

    def _handle_glucose(self, data: bytes) -> None:
        if not self.is_authenticated():
            logger.warning(
                "Glucose response received while not authenticated",
                extra={"state": self._state.value},
            )
            return

        patch_info = self._sensor_info.patch_info if self._sensor_info is not None else None
        if self._unlock_key and patch_info:
            data = decrypt_gen2(data, patch_info)

        try:
            readings = decode_gen2_glucose(data, self._clock())
        except ValueError as e:
            self._fail(MalformedInputError("Failed to decode glucose data", details=str(e)).full_message)
            return

        # Single-shot response: ready for the next poll
        self._set_state(ProtocolState.AUTHENTICATED)
        if readings:
            self._callback.on_glucose_data(readings)
