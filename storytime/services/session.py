"""
Storytime - Reading Session

================================================================================
ONE READING SESSION PER CONNECTED CLIENT
================================================================================

`ReadingSession` is the composition root for the narration core. It builds
and wires, per session:

  1. TimerEngine           - pre-roll + silence-window countdowns
  2. AudioPlaybackManager  - one narration clip at a time
  3. WorkflowStateMachine  - the reading workflow
  4. SpeechSignalGate      - assistant/child speech -> workflow

and translates validated client messages into typed calls on them.
State changes, timer ticks and audio commands are pushed out through the
callbacks supplied by the server layer.
================================================================================
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional

from ..core.config import WorkflowConfig, workflow_cfg
from ..core.errors import SignalError
from ..core.interfaces import MediaFactory, NarrationSource, Scheduler
from ..core.models import ContextSnapshot, SessionTelemetry
from ..core.state_machine import WorkflowState, WorkflowStateMachine
from ..processing.playback import AudioPlaybackManager
from ..processing.speech_gate import SpeechSignalGate
from ..processing.timers import TimerEngine, TimerName
from .book import BookNavigator, PageAudioSource
from .media import RemoteMediaHub

logger = logging.getLogger("storytime.session")

_AUDIO_MESSAGES = frozenset({
    "audio_started", "audio_failed", "audio_progress", "audio_ended", "audio_error",
})


class ReadingSession:
    """
    Lifecycle:
        session = ReadingSession(session_id, on_state=..., on_timer=..., on_audio_command=...)
        await session.start(BookNavigator.from_payload(book))
        session.handle_client_message({"type": "speech", "speaker": "assistant", "active": True})
        ...
        summary = await session.stop()
    """

    def __init__(
        self,
        session_id: str,
        on_state: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_timer: Optional[Callable[[Dict[str, Any]], Any]] = None,
        on_audio_command: Optional[Callable[[Dict[str, Any]], Any]] = None,
        config: WorkflowConfig = workflow_cfg,
        media_factory: Optional[MediaFactory] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self.session_id = session_id
        self.telemetry = SessionTelemetry(session_id=session_id)
        self._config = config

        self._on_state = on_state
        self._on_timer = on_timer
        self._on_audio_command = on_audio_command

        self._media_hub = RemoteMediaHub(self._send_audio_command, config.media_command_timeout_s)
        self._media_factory = media_factory or self._media_hub.create
        self._scheduler = scheduler

        self._timers: Optional[TimerEngine] = None
        self._playback: Optional[AudioPlaybackManager] = None
        self._machine: Optional[WorkflowStateMachine] = None
        self._gate: Optional[SpeechSignalGate] = None
        self._navigator: Optional[BookNavigator] = None

        self._active = False
        self._started_at: Optional[float] = None
        self._last_state = WorkflowState.IDLE
        self._outbox: set = set()

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def machine(self) -> WorkflowStateMachine:
        if self._machine is None:
            raise RuntimeError(f"Session {self.session_id} not started")
        return self._machine

    @property
    def gate(self) -> SpeechSignalGate:
        if self._gate is None:
            raise RuntimeError(f"Session {self.session_id} not started")
        return self._gate

    # ── Lifecycle ───────────────────────────────────────────────────────

    async def start(
        self,
        navigator: BookNavigator,
        narration: Optional[NarrationSource] = None,
    ) -> Dict[str, Any]:
        if self._active:
            raise SignalError("Session already started")

        self._navigator = navigator
        self._timers = TimerEngine(tick_ms=self._config.tick_ms, scheduler=self._scheduler)
        self._playback = AudioPlaybackManager(self._media_factory, session_id=self.session_id)
        self._machine = WorkflowStateMachine(
            timers=self._timers,
            playback=self._playback,
            navigator=navigator,
            narration=narration or PageAudioSource(),
            config=self._config,
            session_id=self.session_id,
        )
        self._gate = SpeechSignalGate(self._machine, session_id=self.session_id)

        self._timers.subscribe(on_complete=self._log_timer_completion, on_tick=self._handle_tick)
        self._machine.subscribe(self._handle_state)
        self._machine.set_current_page(navigator.current_page)

        self._active = True
        self._started_at = time.time()
        self.telemetry.book_id = navigator.book_id
        logger.info(
            f"[{self.session_id}] Reading session started "
            f"({navigator.book_id}, {navigator.page_count} pages)"
        )
        return {
            "session_id": self.session_id,
            "book_id": navigator.book_id,
            "page_count": navigator.page_count,
            "state": self._machine.state.value,
            "context": self._machine.context.to_dict(),
            "config": {
                "pre_roll_ms": self._config.pre_roll_ms,
                "silence_window_ms": self._config.silence_window_ms,
                "tick_ms": self._config.tick_ms,
                "waiting_interrupt_policy": self._config.waiting_interrupt_policy,
            },
        }

    async def stop(self) -> Dict[str, Any]:
        """Stop timers, audio and pending work; return a session summary."""
        self._active = False
        duration = time.time() - (self._started_at or time.time())

        if self._machine is not None:
            self._machine.close()
        if self._gate is not None:
            self._gate.reset()

        for task in list(self._outbox):
            if not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, Exception):
                    pass

        summary = {"duration_seconds": round(duration, 1), **self.telemetry.to_dict()}
        logger.info(f"[{self.session_id}] Reading session stopped: {summary}")
        return summary

    # ── Client messages ─────────────────────────────────────────────────

    def handle_client_message(self, message: Dict[str, Any]) -> None:
        """Validate one client message and apply it. Raises SignalError if malformed."""
        if not self._active:
            raise SignalError("No active reading session")

        msg_type = message.get("type", "")

        if msg_type == "speech":
            speaker = message.get("speaker")
            active = message.get("active")
            if speaker not in ("assistant", "child") or not isinstance(active, bool):
                raise SignalError(f"Invalid speech event: speaker={speaker!r} active={active!r}")
            self.telemetry.speech_events += 1
            if speaker == "assistant":
                self.gate.set_assistant_speaking(active)
            else:
                self.gate.set_child_speaking(active)

        elif msg_type in _AUDIO_MESSAGES:
            self._media_hub.route(message)

        elif msg_type == "skip_next":
            self.machine.skip_to_next_page()

        elif msg_type == "skip_previous":
            self.machine.skip_to_previous_page()

        elif msg_type == "reset":
            self.machine.reset()
            if self._navigator is not None:
                self.machine.set_current_page(self._navigator.current_page)

        elif msg_type == "set_enabled":
            enabled = message.get("enabled")
            if not isinstance(enabled, bool):
                raise SignalError(f"set_enabled needs a boolean, got {enabled!r}")
            self.machine.set_enabled(enabled)

        else:
            raise SignalError(f"Unknown message type {msg_type!r}")

    def diagnostics(self) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "session_id": self.session_id,
            "active": self._active,
            "telemetry": self.telemetry.to_dict(),
        }
        if self._machine is not None:
            info["workflow"] = self._machine.diagnostics()
        if self._gate is not None:
            info["speech"] = {
                "assistant_speaking": self._gate.assistant_speaking,
                "child_speaking": self._gate.child_speaking,
            }
        return info

    # ── Outbound callbacks ──────────────────────────────────────────────

    def _handle_state(self, state: WorkflowState, context: ContextSnapshot) -> None:
        previous, self._last_state = self._last_state, state
        self._count_transition(previous, state)
        self.telemetry.workflow_state = state.value
        self._emit(self._on_state, {
            "state": state.value,
            "previous_state": previous.value,
            "enabled": self.machine.enabled,
            "context": context.to_dict(),
        })

    def _handle_tick(self, name: TimerName, remaining_ms: float) -> None:
        self._emit(self._on_timer, {"timer": name.value, "remaining_ms": remaining_ms})

    def _log_timer_completion(self, name: TimerName) -> None:
        logger.debug(f"[{self.session_id}] Timer {name.value} elapsed")

    def _count_transition(self, previous: WorkflowState, state: WorkflowState) -> None:
        t = self.telemetry
        if state is WorkflowState.NARRATION_PLAYING:
            # Resuming, or the assistant finishing over live narration, is not a new start
            if previous not in (WorkflowState.NARRATION_PAUSED, WorkflowState.ASSISTANT_SPEAKING):
                t.narrations_started += 1
        elif state is WorkflowState.NARRATION_PAUSED:
            t.pauses += 1
        elif state is WorkflowState.SILENCE_TIMING:
            t.narrations_completed += 1
        elif state is WorkflowState.WAITING_FOR_NARRATION and previous is WorkflowState.TURNING_PAGE:
            t.pages_turned += 1
        elif state is WorkflowState.ERROR:
            t.errors += 1

    async def _send_audio_command(self, command: Dict[str, Any]) -> None:
        if self._on_audio_command:
            cb = self._on_audio_command(command)
            if asyncio.iscoroutine(cb):
                await cb

    def _emit(self, callback: Optional[Callable[[Dict[str, Any]], Any]], payload: Dict[str, Any]) -> None:
        if callback is None:
            return
        cb = callback(payload)
        if not asyncio.iscoroutine(cb):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            cb.close()  # No event loop - skip
            return
        task = loop.create_task(cb)
        self._outbox.add(task)
        task.add_done_callback(self._outbox.discard)
