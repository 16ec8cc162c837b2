"""
Storytime - Speech Signal Gate

Derives one "is anyone talking" signal from two independent speaker
channels (assistant, child). Each channel is a boolean changed only by
paired start/stop calls; repeating the current value is a no-op so that
noisy VAD edges never churn the workflow.

Per-speaker edges are forwarded to the listener first, then the derived
true-silence signal - but only when it actually changes.
"""

from __future__ import annotations

import logging
from typing import Protocol

logger = logging.getLogger("storytime.speech")


class SpeechListener(Protocol):
    def handle_assistant_speech_start(self) -> None:
        ...

    def handle_assistant_speech_stop(self) -> None:
        ...

    def handle_child_speech_start(self) -> None:
        ...

    def handle_child_speech_stop(self) -> None:
        ...

    def handle_silence_change(self, is_silent: bool) -> None:
        ...


class SpeechSignalGate:
    def __init__(self, listener: SpeechListener, session_id: str = "") -> None:
        self._listener = listener
        self._log_prefix = f"[{session_id}] " if session_id else ""
        self._assistant_speaking = False
        self._child_speaking = False

    @property
    def assistant_speaking(self) -> bool:
        return self._assistant_speaking

    @property
    def child_speaking(self) -> bool:
        return self._child_speaking

    @property
    def is_silent(self) -> bool:
        return not self._assistant_speaking and not self._child_speaking

    # ── Speech event source API ─────────────────────────────────────────

    def assistant_speech_started(self) -> None:
        self.set_assistant_speaking(True)

    def assistant_speech_stopped(self) -> None:
        self.set_assistant_speaking(False)

    def child_speech_started(self) -> None:
        self.set_child_speaking(True)

    def child_speech_stopped(self) -> None:
        self.set_child_speaking(False)

    def set_assistant_speaking(self, speaking: bool) -> None:
        if speaking == self._assistant_speaking:
            return
        was_silent = self.is_silent
        self._assistant_speaking = speaking
        logger.debug(f"{self._log_prefix}Assistant speaking: {speaking}")
        if speaking:
            self._listener.handle_assistant_speech_start()
        else:
            self._listener.handle_assistant_speech_stop()
        self._emit_if_changed(was_silent)

    def set_child_speaking(self, speaking: bool) -> None:
        if speaking == self._child_speaking:
            return
        was_silent = self.is_silent
        self._child_speaking = speaking
        logger.debug(f"{self._log_prefix}Child speaking: {speaking}")
        if speaking:
            self._listener.handle_child_speech_start()
        else:
            self._listener.handle_child_speech_stop()
        self._emit_if_changed(was_silent)

    def reset(self) -> None:
        """Forget both channels without notifying (used on session teardown)."""
        self._assistant_speaking = False
        self._child_speaking = False

    def _emit_if_changed(self, was_silent: bool) -> None:
        now_silent = self.is_silent
        if now_silent != was_silent:
            self._listener.handle_silence_change(now_silent)
