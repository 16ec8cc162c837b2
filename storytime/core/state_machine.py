"""
Storytime - Narration Workflow State Machine

Interleaves four independent signal sources into one deterministic
reading workflow:

  • assistant speech   (start / stop)
  • child speech       (start / stop, plus the derived true-silence signal)
  • narration audio    (playback start / end / error)
  • two chained timers (pre-roll, silence window)

and drives the timer engine, the audio playback manager and the
navigation provider in response. All transitions go through this module
so illegitimate states are impossible and every transition is logged.

Handlers are synchronous and run to completion on the event loop.
Anything asynchronous (resolving + playing narration, resuming, turning a
page) runs in a tracked task stamped with the current epoch; interruptions
bump the epoch so a late result can never act on a newer workflow.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections import deque
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Deque, Dict, FrozenSet, List, Optional, Set, Tuple,
)

from .config import WorkflowConfig, workflow_cfg
from .errors import (
    BusyError, IllegalTransitionError, NavigationError, PlaybackError, SignalError,
)
from .interfaces import NarrationSource, NavigationProvider
from .models import (
    ContextSnapshot, ErrorInfo, PageRef, TransitionRecord, WorkflowContext,
)
from ..processing.playback import AudioPlaybackManager
from ..processing.timers import TimerEngine, TimerName

logger = logging.getLogger("storytime.workflow")


class WorkflowState(str, Enum):
    """Reading workflow states - exactly one is active at a time."""
    IDLE = "idle"
    ASSISTANT_SPEAKING = "assistant_speaking"
    WAITING_FOR_NARRATION = "waiting_for_narration"
    NARRATION_PLAYING = "narration_playing"
    NARRATION_PAUSED = "narration_paused"
    SILENCE_TIMING = "silence_timing"
    TURNING_PAGE = "turning_page"
    ERROR = "error"


class WorkflowEvent(str, Enum):
    ASSISTANT_SPEECH_START = "assistant_speech_start"
    ASSISTANT_SPEECH_STOP = "assistant_speech_stop"
    CHILD_SPEECH_START = "child_speech_start"
    CHILD_SPEECH_STOP = "child_speech_stop"
    PRE_ROLL_ELAPSED = "pre_roll_elapsed"
    SILENCE_ELAPSED = "silence_elapsed"
    PLAYBACK_START = "narration_playback_start"
    PLAYBACK_END = "narration_playback_end"
    PAGE_TURN_COMPLETE = "page_turn_complete"
    END_OF_BOOK = "end_of_book"
    NARRATION_ERROR = "narration_error"
    NAVIGATION_ERROR = "navigation_error"
    SKIP = "skip"
    RESET = "reset"
    DISABLE = "disable"


_S = WorkflowState
_E = WorkflowEvent
_ANY: FrozenSet[WorkflowState] = frozenset(WorkflowState)

# Legal transitions: (sources, event, targets)
_TRANSITIONS: List[Tuple[FrozenSet[WorkflowState], WorkflowEvent, FrozenSet[WorkflowState]]] = [
    (frozenset({_S.IDLE}), _E.ASSISTANT_SPEECH_START, frozenset({_S.ASSISTANT_SPEAKING})),
    (frozenset({_S.ASSISTANT_SPEAKING}), _E.ASSISTANT_SPEECH_STOP,
     frozenset({_S.NARRATION_PLAYING, _S.WAITING_FOR_NARRATION})),
    (frozenset({_S.WAITING_FOR_NARRATION}), _E.PRE_ROLL_ELAPSED, frozenset({_S.WAITING_FOR_NARRATION})),
    (frozenset({_S.WAITING_FOR_NARRATION}), _E.CHILD_SPEECH_START,
     frozenset({_S.IDLE, _S.WAITING_FOR_NARRATION})),
    (frozenset({_S.SILENCE_TIMING}), _E.CHILD_SPEECH_START, frozenset({_S.IDLE})),
    (_ANY, _E.PLAYBACK_START, frozenset({_S.NARRATION_PLAYING})),
    (frozenset({_S.NARRATION_PLAYING}), _E.CHILD_SPEECH_START, frozenset({_S.NARRATION_PAUSED})),
    (frozenset({_S.NARRATION_PAUSED}), _E.CHILD_SPEECH_STOP, frozenset({_S.NARRATION_PLAYING})),
    (frozenset({_S.NARRATION_PLAYING}), _E.PLAYBACK_END, frozenset({_S.SILENCE_TIMING})),
    (frozenset({_S.SILENCE_TIMING}), _E.SILENCE_ELAPSED, frozenset({_S.IDLE, _S.TURNING_PAGE})),
    (frozenset({_S.TURNING_PAGE}), _E.PAGE_TURN_COMPLETE, frozenset({_S.WAITING_FOR_NARRATION})),
    (frozenset({_S.TURNING_PAGE}), _E.END_OF_BOOK, frozenset({_S.IDLE})),
    (_ANY, _E.NARRATION_ERROR, frozenset({_S.ERROR})),
    (_ANY, _E.NAVIGATION_ERROR, frozenset({_S.ERROR})),
    (_ANY - {_S.ERROR}, _E.SKIP, frozenset({_S.TURNING_PAGE})),
    (_ANY, _E.RESET, frozenset({_S.IDLE})),
    (_ANY, _E.DISABLE, frozenset({_S.IDLE})),
]

_LEGAL: Dict[Tuple[WorkflowState, WorkflowEvent], Set[WorkflowState]] = {}
for _sources, _event, _targets in _TRANSITIONS:
    for _source in _sources:
        _LEGAL.setdefault((_source, _event), set()).update(_targets)


def transition_graph() -> Dict[str, Any]:
    """Nodes + edges of the legal transition table, for a workflow visualizer."""
    edges = []
    for sources, event, targets in _TRANSITIONS:
        source_ids = ["*"] if sources == _ANY else sorted(s.value for s in sources)
        for source in source_ids:
            for target in sorted(t.value for t in targets):
                edges.append({"source": source, "target": target, "label": event.value})
    return {
        "nodes": [{"id": s.value, "label": s.name.replace("_", " ").title()} for s in WorkflowState],
        "edges": edges,
        "entry_point": WorkflowState.IDLE.value,
    }


StateListener = Callable[[WorkflowState, ContextSnapshot], None]


def _event_handler(method: Callable[..., None]) -> Callable[..., None]:
    """
    No-op while disabled. Signal errors are logged and dropped; anything
    else becomes an ERROR transition - nothing escapes to the caller.
    """
    @functools.wraps(method)
    def wrapper(self: "WorkflowStateMachine", *args: Any, **kwargs: Any) -> None:
        if not self._enabled:
            logger.debug(f"{self._log_prefix}{method.__name__} ignored (workflow disabled)")
            return
        try:
            method(self, *args, **kwargs)
        except SignalError as e:
            logger.warning(f"{self._log_prefix}{method.__name__} ignored: {e}")
        except Exception as e:
            logger.exception(f"{self._log_prefix}{method.__name__} failed")
            self._enter_error(f"Internal error in {method.__name__}: {e}", _E.NARRATION_ERROR)
    return wrapper


class WorkflowStateMachine:
    """
    Owns the reading workflow. Collaborators are injected; none are
    discovered at runtime.

    Usage:
        machine = WorkflowStateMachine(timers, playback, navigator, narration)
        unsubscribe = machine.subscribe(lambda state, ctx: ...)
        machine.set_current_page(first_page)
        machine.handle_assistant_speech_start()   # IDLE -> ASSISTANT_SPEAKING
        machine.handle_assistant_speech_stop()    # -> WAITING_FOR_NARRATION
        # ... pre-roll elapses, narration plays, silence window, next page ...
    """

    def __init__(
        self,
        timers: TimerEngine,
        playback: AudioPlaybackManager,
        navigator: NavigationProvider,
        narration: NarrationSource,
        config: WorkflowConfig = workflow_cfg,
        session_id: str = "",
    ) -> None:
        self.session_id = session_id
        self._log_prefix = f"[{session_id}] " if session_id else ""
        self._config = config

        self._timers = timers
        self._playback = playback
        self._navigator = navigator
        self._narration = narration

        self._state = WorkflowState.IDLE
        self._context = WorkflowContext()
        self._enabled = True
        self._listeners: List[StateListener] = []
        self._history: Deque[TransitionRecord] = deque(maxlen=config.history_limit)

        # Interruption bookkeeping
        self._epoch = 0
        self._tasks: Set[asyncio.Task] = set()
        self._play_pending = False
        self._silence_held = False
        self._is_silent = True

        self._unsubscribe_timers = timers.subscribe(on_complete=self._on_timer_complete)
        self._unsubscribe_playback = playback.subscribe(self)

    # ── Published state ─────────────────────────────────────────────────

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def context(self) -> ContextSnapshot:
        return self._context.snapshot()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def config(self) -> WorkflowConfig:
        return self._config

    @property
    def history(self) -> List[TransitionRecord]:
        return list(self._history)

    @property
    def pending_tasks(self) -> int:
        return len(self._tasks)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call `listener(state, context)` on every published change."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def diagnostics(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "context": self.context.to_dict(),
            "enabled": self._enabled,
            "timers": {name: t.to_dict() for name, t in self._timers.snapshot().items()},
            "playback": self._playback.diagnostics(),
            "play_pending": self._play_pending,
            "silence_held": self._silence_held,
            "pending_tasks": len(self._tasks),
            "history": [r.to_dict() for r in list(self._history)[-10:]],
        }

    # ── Speech handlers ─────────────────────────────────────────────────

    @_event_handler
    def handle_assistant_speech_start(self) -> None:
        if self._state is not _S.IDLE:
            self._ignore(_E.ASSISTANT_SPEECH_START)
            return
        self._transition(_S.ASSISTANT_SPEAKING, _E.ASSISTANT_SPEECH_START)

    @_event_handler
    def handle_assistant_speech_stop(self) -> None:
        if self._state is not _S.ASSISTANT_SPEAKING:
            self._ignore(_E.ASSISTANT_SPEECH_STOP)
            return

        if self._playback.is_playing:
            logger.debug(f"{self._log_prefix}Narration already playing - not restarting it")
            self._transition(_S.NARRATION_PLAYING, _E.ASSISTANT_SPEECH_STOP)
            return

        self._transition(_S.WAITING_FOR_NARRATION, _E.ASSISTANT_SPEECH_STOP)
        self._timers.start(TimerName.PRE_ROLL, self._config.pre_roll_ms)

    @_event_handler
    def handle_child_speech_start(self) -> None:
        state = self._state

        if state is _S.NARRATION_PLAYING:
            try:
                position = self._playback.pause()
            except BusyError as e:
                raise SignalError(str(e)) from e
            except PlaybackError:
                return  # reported through on_playback_error
            if position is None:
                raise SignalError("No narration playing to pause")

            def capture(ctx: WorkflowContext) -> None:
                ctx.pause_position_ms = position

            self._transition(_S.NARRATION_PAUSED, _E.CHILD_SPEECH_START, capture)

        elif state is _S.WAITING_FOR_NARRATION:
            # Narration may already be resolving/starting - that counts as waiting too
            self._interrupt(release_audio=self._play_pending)
            if self._config.waiting_interrupt_policy == "rearm":
                logger.info(f"{self._log_prefix}Child spoke before narration - waiting for silence")
                self._transition(_S.WAITING_FOR_NARRATION, _E.CHILD_SPEECH_START)
            else:
                self._transition(_S.IDLE, _E.CHILD_SPEECH_START)

        elif state is _S.SILENCE_TIMING:
            self._timers.cancel(TimerName.SILENCE_WINDOW)
            self._silence_held = False
            self._transition(_S.IDLE, _E.CHILD_SPEECH_START)

        else:
            self._ignore(_E.CHILD_SPEECH_START)

    @_event_handler
    def handle_child_speech_stop(self) -> None:
        if self._state is not _S.NARRATION_PAUSED:
            self._ignore(_E.CHILD_SPEECH_STOP)
            return

        position = self._context.pause_position_ms or 0.0

        def clear(ctx: WorkflowContext) -> None:
            ctx.pause_position_ms = None

        self._transition(_S.NARRATION_PLAYING, _E.CHILD_SPEECH_STOP, clear)
        self._spawn("resume", self._resume_narration, position, self._epoch)

    def handle_silence_change(self, is_silent: bool) -> None:
        """
        Derived gate signal: holds / re-arms timers, never transitions.
        The flag is tracked even while disabled so it is current on re-enable.
        """
        self._is_silent = is_silent
        self._apply_silence_change(is_silent)

    @_event_handler
    def _apply_silence_change(self, is_silent: bool) -> None:
        state = self._state

        if state is _S.SILENCE_TIMING:
            if not is_silent and self._timers.is_active(TimerName.SILENCE_WINDOW):
                logger.debug(f"{self._log_prefix}Silence window held - someone is talking")
                self._timers.cancel(TimerName.SILENCE_WINDOW)
                self._silence_held = True
            elif is_silent and self._silence_held:
                logger.debug(f"{self._log_prefix}Silence window re-armed")
                self._silence_held = False
                self._timers.start(TimerName.SILENCE_WINDOW, self._config.silence_window_ms)

        elif (
            state is _S.WAITING_FOR_NARRATION
            and is_silent
            and self._config.waiting_interrupt_policy == "rearm"
            and not self._play_pending
            and not self._timers.is_active(TimerName.PRE_ROLL)
        ):
            logger.debug(f"{self._log_prefix}Pre-roll re-armed after child finished")
            self._timers.start(TimerName.PRE_ROLL, self._config.pre_roll_ms)

    # ── Timer handlers ──────────────────────────────────────────────────

    @_event_handler
    def handle_pre_roll_elapsed(self) -> None:
        if self._state is not _S.WAITING_FOR_NARRATION:
            self._ignore(_E.PRE_ROLL_ELAPSED)
            return
        if self._play_pending:
            raise SignalError("Narration already requested")

        page = self._context.current_page
        if page is None:
            self._enter_error("No page loaded to narrate", _E.NARRATION_ERROR)
            return

        self._play_pending = True
        self._transition(_S.WAITING_FOR_NARRATION, _E.PRE_ROLL_ELAPSED)
        self._spawn("narrate", self._play_narration, page, self._epoch)

    @_event_handler
    def handle_silence_elapsed(self) -> None:
        if self._state is not _S.SILENCE_TIMING:
            self._ignore(_E.SILENCE_ELAPSED)
            return

        if self._context.is_last_page:
            logger.info(f"{self._log_prefix}📖 Reached end of book")
            self._transition(_S.IDLE, _E.SILENCE_ELAPSED)
            return

        self._transition(_S.TURNING_PAGE, _E.SILENCE_ELAPSED)
        self._spawn("navigate", self._navigate, "next", self._epoch)

    def _on_timer_complete(self, name: TimerName) -> None:
        if name is TimerName.PRE_ROLL:
            self.handle_pre_roll_elapsed()
        elif name is TimerName.SILENCE_WINDOW:
            self.handle_silence_elapsed()

    # ── Playback handlers ───────────────────────────────────────────────

    @_event_handler
    def handle_narration_playback_start(self) -> None:
        self._play_pending = False
        self._silence_held = False
        self._timers.cancel_all()

        def clear(ctx: WorkflowContext) -> None:
            ctx.pause_position_ms = None

        self._transition(_S.NARRATION_PLAYING, _E.PLAYBACK_START, clear)

    @_event_handler
    def handle_narration_playback_end(self) -> None:
        if self._state is not _S.NARRATION_PLAYING:
            self._ignore(_E.PLAYBACK_END)
            return

        self._transition(_S.SILENCE_TIMING, _E.PLAYBACK_END)
        if self._is_silent:
            self._timers.start(TimerName.SILENCE_WINDOW, self._config.silence_window_ms)
        else:
            self._silence_held = True

    @_event_handler
    def handle_narration_error(self, reason: str) -> None:
        self._enter_error(reason or "Unknown narration error", _E.NARRATION_ERROR)

    # PlaybackListener protocol
    def on_playback_start(self) -> None:
        self.handle_narration_playback_start()

    def on_playback_end(self) -> None:
        self.handle_narration_playback_end()

    def on_playback_error(self, reason: str) -> None:
        self.handle_narration_error(reason)

    # ── Navigation handlers ─────────────────────────────────────────────

    @_event_handler
    def handle_page_turn_complete(self, page: PageRef, is_last: Optional[bool] = None) -> None:
        if not isinstance(page, PageRef):
            raise SignalError(f"page_turn_complete needs a PageRef, got {type(page).__name__}")
        if self._state is not _S.TURNING_PAGE:
            self._ignore(_E.PAGE_TURN_COMPLETE)
            return

        def load(ctx: WorkflowContext) -> None:
            ctx.set_page(page, is_last)
            ctx.pause_position_ms = None

        self._transition(_S.WAITING_FOR_NARRATION, _E.PAGE_TURN_COMPLETE, load)
        logger.info(f"{self._log_prefix}📖 Now on page {page.index}/{page.total}")
        self._timers.start(TimerName.PRE_ROLL, self._config.pre_roll_ms)

    @_event_handler
    def handle_navigation_error(self, reason: str) -> None:
        self._enter_error(reason or "Unknown navigation error", _E.NAVIGATION_ERROR)

    @_event_handler
    def _handle_end_of_book(self, direction: str) -> None:
        if self._state is not _S.TURNING_PAGE:
            return
        logger.info(f"{self._log_prefix}📖 No {direction} page")

        def mark(ctx: WorkflowContext) -> None:
            if direction == "next":
                ctx.is_last_page = True

        self._transition(_S.IDLE, _E.END_OF_BOOK, mark)

    # ── Imperative controls ─────────────────────────────────────────────

    def reset(self) -> None:
        """
        Back to IDLE with an empty context, from any state.

        Unlike the event handlers this also runs while disabled, and it
        leaves the enabled flag as it is.
        """
        self._interrupt(release_audio=True)
        self._transition(_S.IDLE, _E.RESET, lambda ctx: ctx.clear())

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return

        if enabled:
            self._enabled = True
            logger.info(f"{self._log_prefix}Workflow enabled")
            self._notify()
            return

        self._enabled = False
        logger.info(f"{self._log_prefix}Workflow disabled")
        self._interrupt(release_audio=True)

        def clear(ctx: WorkflowContext) -> None:
            ctx.pause_position_ms = None

        self._transition(_S.IDLE, _E.DISABLE, clear, force_notify=True)

    @_event_handler
    def skip_to_next_page(self) -> None:
        self._skip("next")

    @_event_handler
    def skip_to_previous_page(self) -> None:
        self._skip("previous")

    def set_current_page(self, page: Optional[PageRef], is_last: Optional[bool] = None) -> None:
        """Load a page without turning (book opened, page picked in the UI)."""
        before = self._context.snapshot()
        self._context.set_page(page, is_last)
        if self._context.snapshot() != before:
            self._notify()

    def close(self) -> None:
        """Detach from collaborators and stop everything."""
        self._interrupt(release_audio=True)
        self._unsubscribe_timers()
        self._unsubscribe_playback()
        self._listeners.clear()

    # ── Internals ───────────────────────────────────────────────────────

    def _skip(self, direction: str) -> None:
        if self._state is _S.ERROR:
            raise SignalError("Workflow is in ERROR - reset() first")
        self._interrupt(release_audio=True)

        def clear(ctx: WorkflowContext) -> None:
            ctx.pause_position_ms = None

        self._transition(_S.TURNING_PAGE, _E.SKIP, clear)
        self._spawn("navigate", self._navigate, direction, self._epoch)

    def _enter_error(self, reason: str, event: WorkflowEvent) -> None:
        self._interrupt(release_audio=True)

        def record(ctx: WorkflowContext) -> None:
            ctx.last_error = ErrorInfo(reason=reason)
            ctx.pause_position_ms = None

        logger.error(f"{self._log_prefix}🚨 Workflow error: {reason}")
        self._transition(_S.ERROR, event, record)

    def _interrupt(self, release_audio: bool) -> None:
        """Synchronously cancel timers, pending tasks and (optionally) audio."""
        self._epoch += 1
        self._timers.cancel_all()
        self._cancel_tasks()
        self._play_pending = False
        self._silence_held = False
        if release_audio:
            self._playback.release()

    def _ignore(self, event: WorkflowEvent) -> None:
        logger.debug(f"{self._log_prefix}Ignoring {event.value} in {self._state.value}")

    def _transition(
        self,
        target: WorkflowState,
        event: WorkflowEvent,
        mutate: Optional[Callable[[WorkflowContext], None]] = None,
        force_notify: bool = False,
    ) -> None:
        source = self._state
        if target not in _LEGAL.get((source, event), ()):
            raise IllegalTransitionError(
                f"Illegal transition: {source.value} → {target.value} on {event.value}"
            )

        before = self._context.snapshot()
        if mutate is not None:
            mutate(self._context)
        self._state = target

        changed = source is not target or self._context.snapshot() != before
        if not (changed or force_notify or target is _S.ERROR):
            return

        self._history.append(
            TransitionRecord(source=source.value, target=target.value, event=event.value)
        )
        logger.info(f"{self._log_prefix}STATE: {source.value} → {target.value} ({event.value})")
        self._notify()

    def _notify(self) -> None:
        state, snapshot = self._state, self._context.snapshot()
        for listener in list(self._listeners):
            try:
                listener(state, snapshot)
            except Exception as e:
                logger.error(f"{self._log_prefix}State listener error: {e}")

    # ── Async work ──────────────────────────────────────────────────────

    def _spawn(self, name: str, fn: Callable[..., Awaitable[None]], *args: Any) -> None:
        loop = asyncio.get_running_loop()
        task = loop.create_task(fn(*args), name=f"{name}-{self.session_id or 'workflow'}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_tasks(self) -> None:
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in list(self._tasks):
            if task is not current and not task.done():
                task.cancel()
        self._tasks.clear()

    async def _play_narration(self, page: PageRef, epoch: int) -> None:
        try:
            url = await self._narration.resolve(page)
        except Exception as e:
            if epoch == self._epoch:
                self.handle_narration_error(f"Narration unavailable for page {page.index}: {e}")
            return

        if epoch != self._epoch:
            return

        try:
            await self._playback.play(url)
        except BusyError as e:
            if epoch == self._epoch:
                logger.warning(f"{self._log_prefix}Narration start rejected: {e}")
                self._play_pending = False
        except PlaybackError as e:
            logger.debug(f"{self._log_prefix}Narration start failed: {e}")

    async def _resume_narration(self, position_ms: float, epoch: int) -> None:
        try:
            await self._playback.resume(position_ms)
        except BusyError as e:
            if epoch == self._epoch:
                self.handle_narration_error(f"Resume rejected: {e}")
        except PlaybackError as e:
            # Failures inside the media element were already reported
            if epoch == self._epoch and self._state is not _S.ERROR:
                self.handle_narration_error(e.reason)

    async def _navigate(self, direction: str, epoch: int) -> None:
        try:
            if direction == "next":
                result = await self._navigator.next()
            else:
                result = await self._navigator.previous()
        except Exception as e:
            if epoch == self._epoch:
                reason = e.reason if isinstance(e, NavigationError) else str(e)
                self.handle_navigation_error(f"Could not load {direction} page: {reason}")
            return

        if epoch != self._epoch:
            return
        if result is None:
            self._handle_end_of_book(direction)
        else:
            self.handle_page_turn_complete(result.page, result.is_last_page)
