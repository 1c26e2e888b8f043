"""
Shared contract for the sensor protocol engines.

One engine instance serves one session. It consumes inbound bytes through
:meth:`ProtocolEngine.handle_bytes` and reports everything else (readings,
sensor info, authentication results, errors, outbound bytes) through a
:class:`ProtocolCallback`.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, List, Optional

from .models import GlucoseReading, ProtocolState, SensorGeneration, SensorInfo
from .scheduler import current_time_ms

logger = logging.getLogger(__name__)


class ProtocolCallback:
    """
    Receiver of protocol engine events.

    All methods are no-ops here; override the ones you need.
    """

    def on_glucose_data(self, readings: List[GlucoseReading]) -> None:
        pass

    def on_sensor_info(self, info: SensorInfo) -> None:
        pass

    def on_authentication_complete(self, success: bool) -> None:
        pass

    def on_error(self, message: str) -> None:
        pass

    def send_bytes(self, data: bytes) -> None:
        pass


class ProtocolEngine(ABC):
    """
    Base class for the generation-specific engines.

    State machine::

        Idle --start_authentication--> Authenticating --success--> Authenticated
        Authenticated --request_glucose_data--> Reading

    Decode or authentication failures move to Error; :meth:`reset` returns
    to Idle from anywhere.
    """

    generation: SensorGeneration

    def __init__(self, clock: Optional[Callable[[], int]] = None):
        self._clock = clock or current_time_ms
        self._callback: ProtocolCallback = ProtocolCallback()
        self._state = ProtocolState.IDLE
        self._sensor_info: Optional[SensorInfo] = None

    @property
    def state(self) -> ProtocolState:
        return self._state

    @property
    def sensor_info(self) -> Optional[SensorInfo]:
        return self._sensor_info

    def is_authenticated(self) -> bool:
        return self._state in (ProtocolState.AUTHENTICATED, ProtocolState.READING)

    def set_callback(self, callback: ProtocolCallback) -> None:
        self._callback = callback

    def _set_state(self, state: ProtocolState) -> None:
        if state != self._state:
            logger.debug(
                "Protocol state change",
                extra={
                    "generation": self.generation.value,
                    "from_state": self._state.value,
                    "to_state": state.value,
                },
            )
        self._state = state

    def _fail(self, message: str) -> None:
        """Report an error that ends the current attempt."""
        logger.error(message, extra={"generation": self.generation.value})
        self._set_state(ProtocolState.ERROR)
        self._callback.on_error(message)

    def _fail_authentication(self, message: str) -> None:
        self._fail(message)
        self._callback.on_authentication_complete(False)

    @abstractmethod
    def initialize(self, sensor_info: Optional[SensorInfo] = None) -> None:
        """Prepare for a new session, optionally with known sensor info."""

    @abstractmethod
    def handle_bytes(self, data: bytes) -> None:
        """Feed bytes received from the transport. Never raises."""

    @abstractmethod
    def start_authentication(self) -> None:
        """Begin the authentication handshake."""

    @abstractmethod
    def request_glucose_data(self) -> bool:
        """Ask for glucose data; returns False when the state does not allow it."""

    @abstractmethod
    def reset(self) -> None:
        """Return to Idle, clearing buffers and key material."""


def create_protocol(
    generation: SensorGeneration,
    clock: Optional[Callable[[], int]] = None,
    **kwargs,
) -> ProtocolEngine:
    """
    Build the protocol engine for a sensor generation.

    Args:
        generation: Sensor generation selected for the session
        clock: Millisecond clock; defaults to the wall clock
        **kwargs: Passed through to the engine constructor

    Returns:
        A fresh engine in the Idle state
    """
    # Local imports: the engines import this module for the base class
    from .gen2_protocol import Gen2Protocol
    from .gen3_protocol import Gen3Protocol

    if generation == SensorGeneration.GEN2:
        return Gen2Protocol(clock=clock, **kwargs)
    if generation == SensorGeneration.GEN3:
        return Gen3Protocol(clock=clock, **kwargs)
    raise ValueError(f"Unsupported sensor generation: {generation}")
