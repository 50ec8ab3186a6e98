"""
Shared room timers.

A ``RoomTimer`` is a small state machine with three phases:

    idle ──start──▶ running ──pause──▶ paused ──start──▶ running
      ▲                │  │                │
      └────reset───────┘  └──reaches 0─────┴──▶ idle (session count + 1)

A running timer always owns exactly one interval handle; every other phase
owns none. Intervals come from an ``IntervalScheduler`` so that tests can
drive ticks by hand.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

TICK_SECONDS = 1.0


class TimerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"


@dataclass(frozen=True)
class TimerEvents:
    started: str
    tick: str
    complete: str
    paused: str
    reset: str
    state: str
    duration_updated: str


class TimerKind(str, Enum):
    POMODORO = "pomodoro"
    BREAK = "break"

    @property
    def events(self) -> TimerEvents:
        return TIMER_EVENTS[self]

    @property
    def default_duration(self) -> int:
        return DEFAULT_DURATIONS[self]


TIMER_EVENTS = {
    TimerKind.POMODORO: TimerEvents(
        started="pomodoroStarted",
        tick="pomodoroTick",
        complete="pomodoroComplete",
        paused="pomodoroPaused",
        reset="pomodoroReset",
        state="pomodoroState",
        duration_updated="durationUpdated",
    ),
    TimerKind.BREAK: TimerEvents(
        started="breakStarted",
        tick="breakTick",
        complete="breakComplete",
        paused="breakPaused",
        reset="breakReset",
        state="breakState",
        duration_updated="breakDurationUpdated",
    ),
}

DEFAULT_DURATIONS = {
    TimerKind.POMODORO: 25 * 60,
    TimerKind.BREAK: 5 * 60,
}


@dataclass
class TimerState:
    is_running: bool = False
    remaining_seconds: int = 0
    total_duration_seconds: int = 0
    completed_session_count: int = 0

    def to_payload(self) -> dict:
        return {
            "isRunning": self.is_running,
            "remainingSeconds": self.remaining_seconds,
            "totalDurationSeconds": self.total_duration_seconds,
            "completedSessionCount": self.completed_session_count,
        }


class TimerHandle(ABC):
    @abstractmethod
    def cancel(self):
        """Stop the interval. Safe to call more than once."""


class IntervalScheduler(ABC):
    """Runs ``callback`` every ``period`` seconds until it returns False or is cancelled"""

    @abstractmethod
    def every(self, period: float, callback: Callable[[], Awaitable[bool]]) -> TimerHandle:
        ...


class AsyncioTimerHandle(TimerHandle):
    def __init__(self, task: "asyncio.Task"):
        self.task = task

    def cancel(self):
        if not self.task.done():
            self.task.cancel()


class AsyncioIntervalScheduler(IntervalScheduler):
    """One task per interval; a tick never starts before the previous one finished"""

    def every(self, period, callback):
        task = asyncio.get_running_loop().create_task(self._run(period, callback))
        return AsyncioTimerHandle(task)

    @staticmethod
    async def _run(period, callback):
        while True:
            await asyncio.sleep(period)
            if not await callback():
                break


class RoomTimer:
    """Countdown shared by every member of one room"""

    def __init__(self, kind: TimerKind):
        self.kind = kind
        self.state = TimerState(total_duration_seconds=kind.default_duration)
        self.phase = TimerPhase.IDLE
        # Bumped on every start so that stale interval callbacks can tell they are stale
        self.generation = 0
        self._handle: Optional[TimerHandle] = None

    @property
    def events(self) -> TimerEvents:
        return self.kind.events

    @property
    def has_interval(self) -> bool:
        return self._handle is not None

    def start(self, duration: Optional[int] = None) -> int:
        """
        Enter the running phase and return the new generation.

        A paused timer resumes from its remaining time; otherwise a fresh
        countdown starts from ``duration`` or the configured total. The
        caller attaches the interval with ``attach``.
        """
        self.cancel_interval()

        in_flight = self.phase in (TimerPhase.PAUSED, TimerPhase.RUNNING) and self.state.remaining_seconds > 0
        if not in_flight:
            seconds = duration or self.state.total_duration_seconds or self.kind.default_duration
            self.state.total_duration_seconds = seconds
            self.state.remaining_seconds = seconds

        self.state.is_running = True
        self.phase = TimerPhase.RUNNING
        self.generation += 1
        return self.generation

    def attach(self, handle: TimerHandle):
        if self.phase is not TimerPhase.RUNNING:
            handle.cancel()
            return
        self.cancel_interval()
        self._handle = handle

    def is_current(self, generation: int) -> bool:
        return self.phase is TimerPhase.RUNNING and self.generation == generation

    def tick(self) -> bool:
        """Count down one second; True when this tick completed the session"""
        if self.phase is not TimerPhase.RUNNING:
            return False

        self.state.remaining_seconds = max(self.state.remaining_seconds - 1, 0)
        if self.state.remaining_seconds > 0:
            return False

        # The interval stops itself by returning False, so it is released rather than cancelled
        self._handle = None
        self.state.is_running = False
        self.state.completed_session_count += 1
        self.phase = TimerPhase.IDLE
        return True

    def pause(self):
        self.cancel_interval()
        self.state.is_running = False
        self.phase = TimerPhase.PAUSED if self.state.remaining_seconds > 0 else TimerPhase.IDLE

    def reset(self):
        self.cancel_interval()
        self.state.is_running = False
        self.state.remaining_seconds = 0
        self.phase = TimerPhase.IDLE

    def change_duration(self, seconds: int) -> bool:
        """Set a new duration; refused (False) while running"""
        if self.phase is TimerPhase.RUNNING:
            return False
        self.state.total_duration_seconds = seconds
        self.state.remaining_seconds = seconds
        self.phase = TimerPhase.IDLE
        return True

    def cancel_interval(self):
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()

    def stop(self):
        """Cancel the interval for good; used when the room is discarded"""
        self.cancel_interval()
        self.state.is_running = False
        if self.phase is TimerPhase.RUNNING:
            self.phase = TimerPhase.PAUSED if self.state.remaining_seconds > 0 else TimerPhase.IDLE
