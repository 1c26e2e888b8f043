"""
Transport collaborator contract.

The radio link (BLE or anything else) lives outside this package. A
transport delivers inbound bytes and connection events to a
:class:`TransportListener` and accepts outbound bytes through
:meth:`Transport.send`.
"""

from abc import ABC, abstractmethod
from typing import Optional


class TransportListener:
    """Receiver of transport notifications. Methods default to no-ops."""

    def on_device_found(self, device_id: str) -> None:
        pass

    def on_connected(self) -> None:
        pass

    def on_disconnected(self, reason: Optional[str] = None) -> None:
        pass

    def on_bytes_received(self, data: bytes) -> None:
        pass

    def on_error(self, code: int) -> None:
        pass


class Transport(ABC):
    """Link to a single sensor."""

    def __init__(self):
        self.listener: TransportListener = TransportListener()

    def set_listener(self, listener: TransportListener) -> None:
        self.listener = listener

    @abstractmethod
    def start_scan(self) -> None:
        """Start looking for a sensor of the configured generation."""

    @abstractmethod
    def stop_scan(self) -> None:
        ...

    @abstractmethod
    def connect(self, device_id: str) -> bool:
        """
        Begin connecting to a device.

        Returns:
            False when the attempt could not be started; completion is
            reported later through ``on_connected``
        """

    @abstractmethod
    def disconnect(self) -> None:
        ...

    @abstractmethod
    def send(self, data: bytes) -> None:
        ...
