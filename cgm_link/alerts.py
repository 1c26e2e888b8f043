"""
Sensor expiry and connection-lost alerts.

The manager has no timers of its own: the host calls
:meth:`AlertManager.check_sensor_expiry` and
:meth:`AlertManager.check_connection` periodically. Each alert type is
snoozed after it fires so repeated checks do not spam the notifier.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from .config import Settings
from .constants import (
    EXPIRY_1H_MS,
    EXPIRY_12H_MS,
    EXPIRY_24H_MS,
    MS_PER_HOUR,
    MS_PER_MINUTE,
    SNOOZE_1H_MS,
    SNOOZE_12H_MS,
    SNOOZE_24H_MS,
    SNOOZE_CONNECTION_LOST_MS,
)
from .models import ConnectionState
from .scheduler import current_time_ms
from .store import SensorStateStore

logger = logging.getLogger(__name__)


class AlertType(str, Enum):
    EXPIRY_24H = "expiry_24h"
    EXPIRY_12H = "expiry_12h"
    EXPIRY_1H = "expiry_1h"
    EXPIRED = "expired"
    CONNECTION_LOST = "connection_lost"


class AlertLevel(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    URGENT = "urgent"


@dataclass(frozen=True)
class Alert:
    """A notification handed to the notifier."""
    type: AlertType
    level: AlertLevel
    message: str
    play_sound: bool = False


class Notifier:
    """Delivers and dismisses alerts. The default only logs."""

    def notify(self, alert: Alert) -> None:
        logger.warning(alert.message, extra={"alert": alert.type.value, "level": alert.level.value})

    def dismiss(self, alert_type: AlertType) -> None:
        logger.debug("Alert dismissed", extra={"alert": alert_type.value})


def format_remaining(remaining_ms: int) -> str:
    """Human readable remaining time, e.g. ``"5h 20m"`` or ``"45m"``."""
    remaining_ms = max(0, remaining_ms)
    hours = remaining_ms // MS_PER_HOUR
    minutes = (remaining_ms % MS_PER_HOUR) // MS_PER_MINUTE
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class AlertManager:
    """
    Evaluates expiry tiers and the connection-lost condition.

    Args:
        settings: Alert toggles and the connection-lost threshold
        state_store: Source of sensor expiry and last connection time
        notifier: Receives alerts; defaults to logging
        clock: Millisecond clock
    """

    def __init__(
        self,
        settings: Settings,
        state_store: SensorStateStore,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.settings = settings
        self.state_store = state_store
        self.notifier = notifier or Notifier()
        self._clock = clock or current_time_ms
        self._next_alert_ms: Dict[AlertType, int] = {}
        self._connection_state = ConnectionState.DISCONNECTED

    @property
    def connection_state(self) -> ConnectionState:
        return self._connection_state

    def on_connection_state(self, state: ConnectionState) -> None:
        """Track the session's connection projection."""
        self._connection_state = state
        if state == ConnectionState.CONNECTED:
            self.notifier.dismiss(AlertType.CONNECTION_LOST)

    def check_sensor_expiry(self) -> Optional[Alert]:
        """
        Fire the expiry alert for the current tier, if due.

        Returns:
            The alert sent, or None
        """
        state = self.state_store.load()
        if state.expiry_time_ms == 0:
            return None

        remaining = state.expiry_time_ms - self._clock()

        if remaining <= 0:
            alert = Alert(AlertType.EXPIRED, AlertLevel.URGENT, "Sensor expired", play_sound=True)
            self._send(alert)
            return alert

        tiers = (
            (EXPIRY_1H_MS, AlertType.EXPIRY_1H, self.settings.expiry_warning_1h,
             AlertLevel.URGENT, True, SNOOZE_1H_MS),
            (EXPIRY_12H_MS, AlertType.EXPIRY_12H, self.settings.expiry_warning_12h,
             AlertLevel.NORMAL, False, SNOOZE_12H_MS),
            (EXPIRY_24H_MS, AlertType.EXPIRY_24H, self.settings.expiry_warning_24h,
             AlertLevel.LOW, False, SNOOZE_24H_MS),
        )
        for threshold, alert_type, enabled, level, sound, snooze_ms in tiers:
            if remaining > threshold:
                continue
            # Only the tightest matching tier is considered
            if not enabled or not self._due(alert_type):
                return None
            alert = Alert(
                alert_type,
                level,
                f"Sensor expires in {format_remaining(remaining)}",
                play_sound=sound,
            )
            self._send(alert)
            self._snooze(alert_type, snooze_ms)
            return alert

        return None

    def check_connection(self) -> Optional[Alert]:
        """
        Fire the connection-lost alert when disconnected past the threshold.

        Returns:
            The alert sent, or None
        """
        if not self.settings.connection_lost_alert:
            return None

        last_connection = self.state_store.load().last_connection_time_ms
        if last_connection == 0:
            return None

        elapsed = self._clock() - last_connection
        threshold = self.settings.connection_lost_threshold_minutes * MS_PER_MINUTE
        disconnected = self._connection_state != ConnectionState.CONNECTED

        if not (disconnected and elapsed > threshold):
            self.notifier.dismiss(AlertType.CONNECTION_LOST)
            return None

        if not self._due(AlertType.CONNECTION_LOST):
            return None

        alert = Alert(
            AlertType.CONNECTION_LOST,
            AlertLevel.NORMAL,
            f"No sensor connection for {elapsed // MS_PER_MINUTE} minutes",
        )
        self._send(alert)
        self._snooze(AlertType.CONNECTION_LOST, SNOOZE_CONNECTION_LOST_MS)
        return alert

    def reset_timers(self) -> None:
        """Clear every snooze and dismiss all alerts (on sensor change)."""
        self._next_alert_ms.clear()
        for alert_type in AlertType:
            self.notifier.dismiss(alert_type)
        logger.debug("Alert timers reset")

    def _due(self, alert_type: AlertType) -> bool:
        return self._clock() >= self._next_alert_ms.get(alert_type, 0)

    def _snooze(self, alert_type: AlertType, delay_ms: int) -> None:
        self._next_alert_ms[alert_type] = self._clock() + delay_ms

    def _send(self, alert: Alert) -> None:
        logger.info("Sending alert", extra={"alert": alert.type.value, "alert_message": alert.message})
        self.notifier.notify(alert)
