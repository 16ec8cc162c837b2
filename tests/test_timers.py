"""Tests for the timer engine."""

import pytest

from storytime.processing.timers import CountdownTimer, TimerEngine, TimerName


def _timer(scheduler, tick_ms=100):
    ticks, completions = [], []
    timer = CountdownTimer(
        TimerName.PRE_ROLL,
        on_tick=lambda name, remaining: ticks.append(remaining),
        on_complete=lambda name: completions.append(name),
        tick_ms=tick_ms,
        scheduler=scheduler,
    )
    return timer, ticks, completions


def test_ticks_every_100ms_and_completes_once(scheduler):
    timer, ticks, completions = _timer(scheduler)
    timer.start(1000)
    assert timer.is_active

    scheduler.advance(999)
    assert completions == []
    assert ticks == [900, 800, 700, 600, 500, 400, 300, 200, 100]

    scheduler.advance(1)
    assert completions == [TimerName.PRE_ROLL]
    assert ticks[-1] == 0
    assert not timer.is_active

    scheduler.advance(5000)
    assert completions == [TimerName.PRE_ROLL]


def test_duration_not_multiple_of_tick_completes_exactly(scheduler):
    timer, ticks, completions = _timer(scheduler)
    timer.start(250)
    scheduler.advance(249)
    assert completions == []
    scheduler.advance(1)
    assert completions == [TimerName.PRE_ROLL]
    assert ticks == [150, 50, 0]


def test_restart_cancels_previous_run(scheduler):
    """Only one completion per logical arm, even when re-armed mid-run."""
    timer, ticks, completions = _timer(scheduler)
    timer.start(1000)
    scheduler.advance(500)
    timer.start(1000)

    scheduler.advance(600)
    assert completions == []  # first run would have completed at 1000ms

    scheduler.advance(400)
    assert completions == [TimerName.PRE_ROLL]
    scheduler.advance(2000)
    assert completions == [TimerName.PRE_ROLL]


def test_cancel_stops_ticks_and_completion(scheduler):
    timer, ticks, completions = _timer(scheduler)
    timer.start(1000)
    scheduler.advance(300)
    tick_count = len(ticks)

    timer.cancel()
    assert not timer.is_active
    assert timer.remaining_ms == 0
    scheduler.advance(2000)
    assert len(ticks) == tick_count
    assert completions == []


def test_cancel_inactive_is_noop(scheduler):
    timer, _, completions = _timer(scheduler)
    timer.cancel()
    assert not timer.is_active
    assert scheduler.pending == []


def test_stale_callback_is_dropped(scheduler):
    """A tick queued by a superseded run must not fire into the new run."""
    timer, ticks, completions = _timer(scheduler)
    timer.start(100)
    stale = scheduler.pending[0]
    timer.start(1000)

    # Fire the superseded handle by hand, as a racing loop might
    stale.callback(*stale.args)
    assert ticks == []
    assert timer.remaining_ms == 1000


def test_zero_duration_completes_on_next_loop_turn(scheduler):
    timer, _, completions = _timer(scheduler)
    timer.start(0)
    assert completions == []
    scheduler.advance(0)
    assert completions == [TimerName.PRE_ROLL]


def test_negative_duration_rejected(scheduler):
    timer, _, _ = _timer(scheduler)
    with pytest.raises(ValueError):
        timer.start(-1)


def test_tick_listener_cancelling_timer_prevents_completion(scheduler):
    completions = []
    holder = {}

    def on_tick(name, remaining):
        holder["timer"].cancel()

    timer = CountdownTimer(
        TimerName.SILENCE_WINDOW, on_tick=on_tick,
        on_complete=completions.append, tick_ms=100, scheduler=scheduler,
    )
    holder["timer"] = timer
    timer.start(100)
    scheduler.advance(100)
    assert completions == []


def test_snapshot_reports_remaining(scheduler):
    timer, _, _ = _timer(scheduler)
    timer.start(3000)
    scheduler.advance(1200)
    snap = timer.snapshot()
    assert snap.name == "pre_roll"
    assert snap.remaining_ms == 1800
    assert snap.total_ms == 3000
    assert snap.is_active


# --- TimerEngine ---

def test_engine_timers_are_independent(scheduler):
    engine = TimerEngine(tick_ms=100, scheduler=scheduler)
    completed = []
    engine.subscribe(on_complete=completed.append)

    engine.start(TimerName.PRE_ROLL, 1000)
    engine.start(TimerName.SILENCE_WINDOW, 3000)
    engine.cancel(TimerName.PRE_ROLL)

    assert not engine.is_active(TimerName.PRE_ROLL)
    assert engine.is_active(TimerName.SILENCE_WINDOW)

    scheduler.advance(3000)
    assert completed == [TimerName.SILENCE_WINDOW]


def test_engine_cancel_all(scheduler):
    engine = TimerEngine(tick_ms=100, scheduler=scheduler)
    engine.start(TimerName.PRE_ROLL, 1000)
    engine.start(TimerName.SILENCE_WINDOW, 3000)
    engine.cancel_all()
    assert not engine.any_active
    assert scheduler.pending == []


def test_engine_tick_listener_and_unsubscribe(scheduler):
    engine = TimerEngine(tick_ms=100, scheduler=scheduler)
    ticks, completed = [], []
    unsubscribe = engine.subscribe(
        on_complete=completed.append,
        on_tick=lambda name, remaining: ticks.append((name, remaining)),
    )
    engine.start(TimerName.PRE_ROLL, 200)
    scheduler.advance(100)
    assert ticks == [(TimerName.PRE_ROLL, 100)]

    unsubscribe()
    scheduler.advance(100)
    assert ticks == [(TimerName.PRE_ROLL, 100)]
    assert completed == []


def test_engine_snapshot_names(scheduler):
    engine = TimerEngine(tick_ms=100, scheduler=scheduler)
    snap = engine.snapshot()
    assert set(snap) == {"pre_roll", "silence_window"}
    assert not any(s.is_active for s in snap.values())
