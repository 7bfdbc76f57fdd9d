"""Helpers for driving ``PlayerController`` instances deterministically in tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Sequence

from .player import EVENT_TYPES, PlayerController, PlayerEvent


@dataclass
class FakeTimer:
    """A pending callback registered with :class:`FakeScheduler`."""

    due_at: float
    sequence: int
    callback: Callable[[], None]
    delay_seconds: float
    cancelled: bool = False
    fired: bool = False

    def cancel(self) -> None:
        self.cancelled = True


@dataclass
class FakeScheduler:
    """Manual clock implementing the ``Scheduler`` protocol.

    Nothing fires until :meth:`advance` or :meth:`run_next` is called. Timers
    due at the same instant fire in registration order, and timers scheduled
    by a firing callback are picked up within the same :meth:`advance` call
    when they fall inside the window.
    """

    now: float = 0.0
    timers: list[FakeTimer] = field(default_factory=list)
    _sequence: int = 0

    def schedule(self, callback: Callable[[], None], delay_seconds: float) -> FakeTimer:
        if delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        self._sequence += 1
        timer = FakeTimer(
            due_at=self.now + delay_seconds,
            sequence=self._sequence,
            callback=callback,
            delay_seconds=delay_seconds,
        )
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> tuple[FakeTimer, ...]:
        """Live timers ordered by due time."""

        live = [timer for timer in self.timers if not timer.cancelled and not timer.fired]
        return tuple(sorted(live, key=lambda timer: (timer.due_at, timer.sequence)))

    def run_next(self) -> bool:
        """Jump to the next due timer and fire it. Return ``False`` when idle."""

        pending = self.pending
        if not pending:
            return False
        timer = pending[0]
        self.now = max(self.now, timer.due_at)
        timer.fired = True
        timer.callback()
        return True

    def advance(self, seconds: float) -> int:
        """Move the clock forward by ``seconds`` firing every timer that comes due."""

        if seconds < 0:
            raise ValueError("seconds must not be negative")
        target = self.now + seconds
        fired = 0
        while True:
            pending = self.pending
            if not pending or pending[0].due_at > target:
                break
            self.run_next()
            fired += 1
        self.now = target
        return fired

    def run_all(self, *, limit: int = 1000) -> int:
        """Fire timers until none remain, guarding against runaway loops."""

        fired = 0
        while self.run_next():
            fired += 1
            if fired >= limit:
                raise RuntimeError(f"FakeScheduler exceeded {limit} timer callbacks")
        return fired


class EventRecorder:
    """Subscribe to player events and keep them in emission order."""

    def __init__(
        self,
        controller: PlayerController,
        event_types: Iterable[str] | None = None,
    ) -> None:
        self.events: list[PlayerEvent] = []
        self._unsubscribers = [
            controller.subscribe(event_type, self.events.append)
            for event_type in (event_types if event_types is not None else EVENT_TYPES)
        ]

    @property
    def types(self) -> list[str]:
        return [event.type for event in self.events]

    def labels(self, *, exclude: Sequence[str] = ()) -> list[str]:
        """Return compact labels such as ``stage-change(audio)`` for assertions."""

        return [
            describe_event(event) for event in self.events if event.type not in exclude
        ]

    def of_type(self, event_type: str) -> list[PlayerEvent]:
        return [event for event in self.events if event.type == event_type]

    def clear(self) -> None:
        self.events.clear()

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []


def describe_event(event: PlayerEvent) -> str:
    """Render ``event`` as ``type(detail)`` with the most useful field."""

    detail: object | None
    if event.type == "stage-change":
        detail = event.stage.value
    elif event.type == "pause-change":
        detail = event.is_paused
    elif event.type == "music-change":
        detail = event.cue_name
    elif hasattr(event, "scenelet_id"):
        detail = event.scenelet_id
    else:
        detail = None
    return event.type if detail is None else f"{event.type}({detail})"


__all__ = [
    "EventRecorder",
    "FakeScheduler",
    "FakeTimer",
    "describe_event",
]
