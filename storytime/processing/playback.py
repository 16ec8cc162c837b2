"""
Storytime - Audio Playback Manager

================================================================================
ONE NARRATION CLIP AT A TIME
================================================================================

Wraps the external media primitive (see `MediaElement`) and guarantees:

  1. At most one AudioSession is live. `play()` discards the previous
     session before creating the next one.
  2. play / pause / resume / stop are serialized by a single non-reentrant
     "operation in flight" guard. An overlapping call raises BusyError
     instead of corrupting playback state.
  3. Natural completion fires `on_playback_end` exactly once.
  4. Any failure fires `on_playback_error(reason)` and discards the session.
  5. Discarding always pauses and zeroes the position first.

`release()` is the teardown path used by reset/disable: it bypasses the
guard, invalidates whatever operation is in flight and discards the session.
A play() that resolves after a release finds itself superseded and throws
its element away without firing any callback.
================================================================================
"""

from __future__ import annotations

import itertools
import logging
from typing import Callable, List, Optional, Protocol

from ..core.errors import BusyError, PlaybackError
from ..core.interfaces import MediaElement, MediaFactory

logger = logging.getLogger("storytime.playback")

_session_ids = itertools.count(1)


class PlaybackListener(Protocol):
    def on_playback_start(self) -> None:
        ...

    def on_playback_end(self) -> None:
        ...

    def on_playback_error(self, reason: str) -> None:
        ...


class AudioSession:
    """The currently loaded narration clip. Owned by AudioPlaybackManager."""

    __slots__ = ("session_id", "url", "element", "playing", "finished")

    def __init__(self, url: str, element: MediaElement) -> None:
        self.session_id = next(_session_ids)
        self.url = url
        self.element = element
        self.playing = False
        self.finished = False

    def discard(self) -> None:
        """Pause, zero the position, detach. Safe to call more than once."""
        self.playing = False
        self.finished = True
        for step in (self.element.pause, self._rewind, self.element.close):
            try:
                step()
            except Exception as e:
                logger.warning(f"Audio session {self.session_id} cleanup step failed: {e}")

    def _rewind(self) -> None:
        self.element.current_time_ms = 0.0


class AudioPlaybackManager:
    """
    Usage:
        manager = AudioPlaybackManager(media_factory)
        manager.subscribe(listener)
        await manager.play(url)              # fires on_playback_start
        position = manager.pause()           # exact media position in ms
        await manager.resume(position)
        manager.release()                    # teardown, always succeeds
    """

    def __init__(self, media_factory: MediaFactory, session_id: str = "") -> None:
        self._media_factory = media_factory
        self._log_prefix = f"[{session_id}] " if session_id else ""
        self._listeners: List[PlaybackListener] = []

        self._session: Optional[AudioSession] = None
        self._op_name: Optional[str] = None
        self._op_token = 0

    # ── Observers ───────────────────────────────────────────────────────

    def subscribe(self, listener: PlaybackListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    @property
    def is_playing(self) -> bool:
        return self._session is not None and self._session.playing

    @property
    def has_session(self) -> bool:
        return self._session is not None

    @property
    def is_busy(self) -> bool:
        return self._op_name is not None

    @property
    def current_url(self) -> Optional[str]:
        return self._session.url if self._session else None

    @property
    def position_ms(self) -> float:
        if self._session is None:
            return 0.0
        return self._session.element.current_time_ms

    def diagnostics(self) -> dict:
        return {
            "is_playing": self.is_playing,
            "has_session": self.has_session,
            "busy": self._op_name,
            "url": self.current_url,
            "position_ms": self.position_ms,
        }

    # ── Operation guard ─────────────────────────────────────────────────

    def _acquire(self, name: str) -> int:
        if self._op_name is not None:
            logger.warning(f"{self._log_prefix}Audio {name} rejected - {self._op_name} in progress")
            raise BusyError(name, self._op_name)
        self._op_token += 1
        self._op_name = name
        return self._op_token

    def _release_guard(self, token: int) -> None:
        # A release() in the meantime already cleared the guard and may have
        # handed it to a newer operation.
        if token == self._op_token:
            self._op_name = None

    def _is_current(self, token: int, session: AudioSession) -> bool:
        return token == self._op_token and session is self._session

    # ── Commands ────────────────────────────────────────────────────────

    async def play(self, url: str) -> None:
        token = self._acquire("play")
        try:
            if not url:
                self._emit("on_playback_error", "No narration audio URL")
                raise PlaybackError("No narration audio URL")

            if self._session is not None:
                logger.info(f"{self._log_prefix}Replacing audio session {self._session.session_id}")
                self._discard_session()

            session = self._create_session(url)
            self._session = session
            logger.info(f"{self._log_prefix}🔊 Starting narration {url} (session {session.session_id})")

            try:
                await session.element.play()
            except Exception as e:
                if self._is_current(token, session):
                    self._fail(session, f"Playback failed: {e}")
                else:
                    session.discard()
                raise PlaybackError(f"Playback failed: {e}") from e

            if not self._is_current(token, session):
                logger.info(f"{self._log_prefix}Narration session {session.session_id} superseded during start")
                session.discard()
                return

            session.playing = True
            self._emit("on_playback_start")
        finally:
            self._release_guard(token)

    def pause(self) -> Optional[float]:
        """Pause and return the exact position in ms, or None if nothing is playing."""
        token = self._acquire("pause")
        try:
            session = self._session
            if session is None or not session.playing:
                return None
            session.element.pause()
            session.playing = False
            position = session.element.current_time_ms
            logger.info(f"{self._log_prefix}⏸️ Narration paused at {position:.0f}ms")
            return position
        except Exception as e:
            if self._session is not None:
                self._fail(self._session, f"Pause failed: {e}")
            raise PlaybackError(f"Pause failed: {e}") from e
        finally:
            self._release_guard(token)

    async def resume(self, position_ms: float) -> None:
        token = self._acquire("resume")
        try:
            session = self._session
            if session is None:
                raise PlaybackError("No narration session to resume")
            if session.playing:
                return

            try:
                session.element.current_time_ms = position_ms
                await session.element.play()
            except Exception as e:
                if self._is_current(token, session):
                    self._fail(session, f"Resume failed: {e}")
                raise PlaybackError(f"Resume failed: {e}") from e

            if not self._is_current(token, session):
                return
            session.playing = True
            logger.info(f"{self._log_prefix}▶️ Narration resumed at {position_ms:.0f}ms")
        finally:
            self._release_guard(token)

    def stop(self) -> None:
        token = self._acquire("stop")
        try:
            if self._session is not None:
                logger.info(f"{self._log_prefix}⏹️ Narration stopped")
                self._discard_session()
        finally:
            self._release_guard(token)

    def release(self) -> None:
        """Teardown: never busy, never raises, invalidates in-flight work."""
        self._op_token += 1
        self._op_name = None
        if self._session is not None:
            logger.info(f"{self._log_prefix}Narration released")
            self._discard_session()

    # ── Media element events ────────────────────────────────────────────

    def _create_session(self, url: str) -> AudioSession:
        holder: List[AudioSession] = []

        def on_ended() -> None:
            if holder:
                self._handle_ended(holder[0])

        def on_error(reason: str) -> None:
            if holder:
                self._handle_media_error(holder[0], reason)

        session = AudioSession(url, self._media_factory(url, on_ended, on_error))
        holder.append(session)
        return session

    def _handle_ended(self, session: AudioSession) -> None:
        if session is not self._session or session.finished:
            return  # late event from a discarded session
        logger.info(f"{self._log_prefix}🔊 Narration completed (session {session.session_id})")
        self._discard_session()
        self._emit("on_playback_end")

    def _handle_media_error(self, session: AudioSession, reason: str) -> None:
        if session is not self._session or session.finished:
            return
        self._fail(session, reason or "Unknown media error")

    def _fail(self, session: AudioSession, reason: str) -> None:
        logger.error(f"{self._log_prefix}🚨 Narration error: {reason}")
        if session is self._session:
            self._session = None
        session.discard()
        self._emit("on_playback_error", reason)

    def _discard_session(self) -> None:
        session, self._session = self._session, None
        if session is not None:
            session.discard()

    def _emit(self, method: str, *args: str) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(*args)
            except Exception as e:
                logger.error(f"{self._log_prefix}Playback listener {method} error: {e}")
