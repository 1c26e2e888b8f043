"""
Generation-3 sensor protocol.

Authentication is started by the sensor: it sends a challenge, the device
answers with its device info and a fresh random, and the sensor confirms.
After that glucose data streams without being requested. All traffic is
framed (see :mod:`cgm_link.framing`) and glucose payloads are AES/CTR
encrypted with the session key.
"""

import logging
import struct
from typing import Callable, Optional

from Crypto.Random import get_random_bytes

from .constants import (
    GEN3_CHALLENGE_MIN_SIZE,
    GEN3_DEVICE_INFO_SIZE,
    GEN3_RANDOM_SIZE,
    Gen3MessageType,
)
from .crypto import decrypt_gen3, derive_gen3_session_key
from .framing import (
    ReceiveBuffer,
    decode_gen3_glucose,
    decode_gen3_sensor_info,
    encode_message,
    extract_messages,
)
from .exceptions import MalformedInputError, ProtocolViolationError
from .models import ProtocolMessage, ProtocolState, SensorGeneration, SensorInfo
from .protocol import ProtocolEngine

logger = logging.getLogger(__name__)


def default_device_info() -> bytes:
    """Fixed 16-byte device identifier sent in the auth response."""
    return bytes((i * 17 + 0x42) & 0xFF for i in range(GEN3_DEVICE_INFO_SIZE))


class Gen3Protocol(ProtocolEngine):
    """
    Protocol engine for generation-3 sensors.

    Args:
        clock: Millisecond clock used for timestamps
        random_bytes: Source of the device random, ``n -> bytes``
        device_info: 16-byte device identifier
    """

    generation = SensorGeneration.GEN3

    def __init__(
        self,
        clock: Optional[Callable[[], int]] = None,
        random_bytes: Callable[[int], bytes] = get_random_bytes,
        device_info: Optional[bytes] = None,
    ):
        super().__init__(clock=clock)
        self._random_bytes = random_bytes
        self._device_info = device_info if device_info is not None else default_device_info()
        self._buffer = ReceiveBuffer()
        self._session_key: Optional[bytes] = None
        self._sequence = 0

    @property
    def session_key(self) -> Optional[bytes]:
        return self._session_key

    def initialize(self, sensor_info: Optional[SensorInfo] = None) -> None:
        self._buffer.clear()
        self._session_key = None
        self._sequence = 0
        self._sensor_info = sensor_info
        self._set_state(ProtocolState.IDLE)

    def start_authentication(self) -> None:
        # The sensor sends the challenge; we only wait for it
        self._set_state(ProtocolState.AUTHENTICATING)
        logger.info("Waiting for sensor challenge")

    def request_glucose_data(self) -> bool:
        if not self.is_authenticated():
            logger.warning(
                "Glucose request ignored: not authenticated",
                extra={"state": self._state.value},
            )
            return False
        logger.debug("Glucose data streams automatically after authentication")
        return True

    def reset(self) -> None:
        self._buffer.clear()
        self._session_key = None
        self._sequence = 0
        self._set_state(ProtocolState.IDLE)

    def handle_bytes(self, data: bytes) -> None:
        if not data:
            return
        self._buffer.append(data)

        for message in extract_messages(self._buffer):
            try:
                self._dispatch(message)
            except (ValueError, struct.error) as e:
                error = MalformedInputError(
                    "Failed to process message",
                    details=f"type 0x{message.type:02X}: {e}",
                )
                logger.error(error.full_message, exc_info=True)

    # =========================================================================
    # Outbound
    # =========================================================================

    def _next_sequence(self) -> int:
        self._sequence = (self._sequence + 1) & 0xFF
        return self._sequence

    def _send(self, msg_type: Gen3MessageType, payload: bytes = b"") -> None:
        self._callback.send_bytes(encode_message(msg_type, payload, self._next_sequence()))

    # =========================================================================
    # Inbound
    # =========================================================================

    def _dispatch(self, message: ProtocolMessage) -> None:
        handlers = {
            Gen3MessageType.AUTH_CHALLENGE: self._handle_challenge,
            Gen3MessageType.AUTH_SUCCESS: self._handle_auth_success,
            Gen3MessageType.GLUCOSE_DATA: self._handle_glucose,
            Gen3MessageType.SENSOR_INFO: self._handle_sensor_info,
            Gen3MessageType.KEEP_ALIVE: self._handle_keep_alive,
        }
        handler = handlers.get(message.type)
        if handler is None:
            logger.warning("Unhandled message type", extra={"message_type": message.type})
            return
        handler(message.payload)

    def _handle_challenge(self, payload: bytes) -> None:
        if len(payload) < GEN3_CHALLENGE_MIN_SIZE:
            self._fail_authentication(f"Auth challenge too short: {len(payload)} bytes")
            return

        self._set_state(ProtocolState.AUTHENTICATING)

        sensor_random = payload[:GEN3_RANDOM_SIZE]
        self._session_key = derive_gen3_session_key(self._device_info, sensor_random)
        device_random = self._random_bytes(GEN3_RANDOM_SIZE)

        self._send(Gen3MessageType.AUTH_RESPONSE, self._device_info + device_random)
        logger.debug("Auth response sent")

    def _handle_auth_success(self, payload: bytes) -> None:
        if self._state != ProtocolState.AUTHENTICATING:
            # Not the expected next step: drop it and keep the current state
            error = ProtocolViolationError(
                "Unexpected auth success dropped",
                details=f"Protocol state: {self._state.value}",
            )
            logger.warning(error.full_message)
            return
        if self._session_key is None:
            self._fail_authentication("Auth success received without a completed challenge")
            return

        logger.info("Generation-3 authentication complete")
        self._set_state(ProtocolState.AUTHENTICATED)
        self._callback.on_authentication_complete(True)
        self.request_glucose_data()

    def _handle_glucose(self, payload: bytes) -> None:
        if self._session_key is None or not self.is_authenticated():
            logger.warning(
                "Glucose data before authentication dropped",
                extra={"state": self._state.value},
            )
            return

        decrypted = decrypt_gen3(payload, self._session_key)
        sensor_start = self._sensor_info.start_time_ms if self._sensor_info is not None else None
        readings = decode_gen3_glucose(decrypted, sensor_start, self._clock())
        if readings:
            self._callback.on_glucose_data(readings)

    def _handle_sensor_info(self, payload: bytes) -> None:
        info = decode_gen3_sensor_info(payload, self._clock())
        if info is None:
            logger.warning("Sensor info could not be decoded", extra={"size": len(payload)})
            return
        self._sensor_info = info
        self._callback.on_sensor_info(info)

    def _handle_keep_alive(self, payload: bytes) -> None:
        self._send(Gen3MessageType.KEEP_ALIVE)
