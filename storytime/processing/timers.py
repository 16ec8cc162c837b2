"""
Storytime - Timer Engine

Two independently resettable countdown timers on a shared clock:

  • pre_roll        - armed when the assistant stops talking; when it
                      elapses, narration playback is requested
  • silence_window  - armed when narration ends; when it elapses, the
                      page auto-advances

Each timer ticks on a fixed cadence (default 100 ms) reporting the
remaining time, and completes exactly once. Every run carries a
generation number so a tick queued by a cancelled or superseded run can
never fire into the next one.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..core.config import workflow_cfg
from ..core.interfaces import CancelHandle, Scheduler
from ..core.models import TimerSnapshot

logger = logging.getLogger("storytime.timers")


class TimerName(str, Enum):
    PRE_ROLL = "pre_roll"
    SILENCE_WINDOW = "silence_window"


TickCallback = Callable[["TimerName", float], None]
CompleteCallback = Callable[["TimerName"], None]


class CountdownTimer:
    """
    A single countdown. Not reentrant-safe across threads - it lives on one
    event loop like everything else in the core.

    Usage:
        timer = CountdownTimer(TimerName.PRE_ROLL, on_tick=..., on_complete=...)
        timer.start(1000)    # ticks at 100 ms, completes at 1000 ms
        timer.cancel()       # synchronous; no further callbacks
    """

    def __init__(
        self,
        name: TimerName,
        on_tick: Optional[TickCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
        tick_ms: int = workflow_cfg.tick_ms,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        if tick_ms <= 0:
            raise ValueError(f"tick_ms must be positive, got {tick_ms}")
        self.name = name
        self._on_tick = on_tick
        self._on_complete = on_complete
        self._tick_ms = tick_ms
        self._scheduler = scheduler

        self._generation = 0
        self._handle: Optional[CancelHandle] = None
        self._active = False
        self._remaining_ms = 0.0
        self._total_ms = 0.0

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def remaining_ms(self) -> float:
        return self._remaining_ms

    @property
    def total_ms(self) -> float:
        return self._total_ms

    def snapshot(self) -> TimerSnapshot:
        return TimerSnapshot(
            name=self.name.value,
            remaining_ms=self._remaining_ms,
            total_ms=self._total_ms,
            is_active=self._active,
        )

    def start(self, duration_ms: float) -> None:
        """Arm the timer. An active run is cancelled first - runs never overlap."""
        if duration_ms < 0:
            raise ValueError(f"duration_ms must be non-negative, got {duration_ms}")

        if self._active:
            logger.debug(f"Timer {self.name.value} restarted with {self._remaining_ms:.0f}ms left")
            self.cancel()

        self._generation += 1
        self._active = True
        self._total_ms = float(duration_ms)
        self._remaining_ms = float(duration_ms)
        self._schedule_next(self._generation)
        logger.debug(f"Timer {self.name.value} started ({duration_ms:.0f}ms)")

    def cancel(self) -> None:
        if not self._active:
            return
        self._generation += 1
        self._active = False
        self._remaining_ms = 0.0
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        logger.debug(f"Timer {self.name.value} cancelled")

    # ── Internals ──────────────────────────────────────────────────────

    def _get_scheduler(self) -> Scheduler:
        if self._scheduler is None:
            self._scheduler = asyncio.get_running_loop()
        return self._scheduler

    def _schedule_next(self, generation: int) -> None:
        # The last step may be shorter than a tick so completion lands on the
        # exact duration rather than the next tick boundary.
        step_ms = min(self._tick_ms, self._remaining_ms)
        self._handle = self._get_scheduler().call_later(
            step_ms / 1000.0, self._fire, generation, step_ms
        )

    def _fire(self, generation: int, step_ms: float) -> None:
        if generation != self._generation or not self._active:
            return  # stale callback from a cancelled/replaced run

        self._handle = None
        self._remaining_ms = max(0.0, self._remaining_ms - step_ms)

        if self._on_tick:
            try:
                self._on_tick(self.name, self._remaining_ms)
            except Exception as e:
                logger.error(f"Timer {self.name.value} tick callback error: {e}")

        # The tick listener may have cancelled or restarted this timer
        if generation != self._generation:
            return

        if self._remaining_ms > 0:
            self._schedule_next(generation)
            return

        self._active = False
        logger.debug(f"Timer {self.name.value} completed")
        if self._on_complete:
            try:
                self._on_complete(self.name)
            except Exception as e:
                logger.error(f"Timer {self.name.value} completion callback error: {e}")


class TimerEngine:
    """
    Owns the pre-roll and silence-window timers. Consumers address timers
    by name only and never hold a timer object.

    Listeners receive `on_timer_tick(name, remaining_ms)` and
    `on_timer_complete(name)`.
    """

    def __init__(
        self,
        tick_ms: int = workflow_cfg.tick_ms,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._tick_listeners: List[TickCallback] = []
        self._complete_listeners: List[CompleteCallback] = []
        self._timers: Dict[TimerName, CountdownTimer] = {
            name: CountdownTimer(
                name,
                on_tick=self._dispatch_tick,
                on_complete=self._dispatch_complete,
                tick_ms=tick_ms,
                scheduler=scheduler,
            )
            for name in TimerName
        }

    def subscribe(
        self,
        on_complete: CompleteCallback,
        on_tick: Optional[TickCallback] = None,
    ) -> Callable[[], None]:
        """Register listeners; returns a function that removes them."""
        self._complete_listeners.append(on_complete)
        if on_tick:
            self._tick_listeners.append(on_tick)

        def unsubscribe() -> None:
            if on_complete in self._complete_listeners:
                self._complete_listeners.remove(on_complete)
            if on_tick and on_tick in self._tick_listeners:
                self._tick_listeners.remove(on_tick)

        return unsubscribe

    def start(self, name: TimerName, duration_ms: float) -> None:
        self._timers[name].start(duration_ms)

    def cancel(self, name: TimerName) -> None:
        self._timers[name].cancel()

    def cancel_all(self) -> None:
        for timer in self._timers.values():
            timer.cancel()

    def is_active(self, name: TimerName) -> bool:
        return self._timers[name].is_active

    @property
    def any_active(self) -> bool:
        return any(t.is_active for t in self._timers.values())

    def snapshot(self) -> Dict[str, TimerSnapshot]:
        return {name.value: timer.snapshot() for name, timer in self._timers.items()}

    def _dispatch_tick(self, name: TimerName, remaining_ms: float) -> None:
        for listener in list(self._tick_listeners):
            listener(name, remaining_ms)

    def _dispatch_complete(self, name: TimerName) -> None:
        for listener in list(self._complete_listeners):
            listener(name)
