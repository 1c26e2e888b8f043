"""
Cancellable delayed callbacks and the wall clock.

The session layer only needs "run this later unless cancelled"; tests swap
in a manual scheduler and a fixed clock.
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def current_time_ms() -> int:
    """Milliseconds since the epoch."""
    return int(time.time() * 1000)


class TimerHandle(ABC):
    """A scheduled callback that can be cancelled."""

    @abstractmethod
    def cancel(self) -> None:
        ...

    @property
    @abstractmethod
    def cancelled(self) -> bool:
        ...


class Scheduler(ABC):
    """Schedules callbacks after a delay."""

    @abstractmethod
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        ...


class _ThreadingTimerHandle(TimerHandle):
    def __init__(self, timer: threading.Timer):
        self._timer = timer
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True
        self._timer.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class ThreadingScheduler(Scheduler):
    """
    Scheduler backed by daemon ``threading.Timer`` threads.

    Callbacks run on timer threads; the orchestrator serialises them with
    its own lock. Exceptions raised by a callback are logged, not lost.
    """

    def __init__(self, name: str = "cgm-link"):
        self._name = name

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        handle: Optional[_ThreadingTimerHandle] = None

        def run() -> None:
            if handle is not None and handle.cancelled:
                return
            try:
                callback()
            except Exception:
                logger.exception("Scheduled callback failed", extra={"scheduler": self._name})

        timer = threading.Timer(max(0.0, delay_seconds), run)
        timer.daemon = True
        timer.name = f"{self._name}-timer"
        handle = _ThreadingTimerHandle(timer)
        timer.start()
        return handle
