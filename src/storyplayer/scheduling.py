"""Delayed-callback scheduling used to drive playback timing."""

from __future__ import annotations

import threading
from typing import Callable, Protocol


class TimerHandle(Protocol):
    """Handle returned by :meth:`Scheduler.schedule`."""

    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    """Run ``callback`` once after ``delay_seconds`` unless cancelled first."""

    def schedule(self, callback: Callable[[], None], delay_seconds: float) -> TimerHandle:
        ...


class ThreadingScheduler:
    """Scheduler backed by :class:`threading.Timer`.

    Callbacks fire on the timer's own thread. Timers are daemonic so pending
    playback never keeps the interpreter alive.
    """

    def __init__(self, *, daemon: bool = True) -> None:
        self._daemon = daemon

    def schedule(self, callback: Callable[[], None], delay_seconds: float) -> TimerHandle:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        timer = threading.Timer(delay_seconds, callback)
        timer.daemon = self._daemon
        timer.start()
        return timer


__all__ = ["Scheduler", "ThreadingScheduler", "TimerHandle"]
