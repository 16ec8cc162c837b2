"""
Storytime - Remote Media

A MediaElement whose audio actually plays in the browser. Commands go out
as `audio_command` messages; the client answers with lifecycle messages
(`audio_started`, `audio_failed`, `audio_progress`, `audio_ended`,
`audio_error`) which the hub routes back to the element by `media_id`.

play() only resolves once the client acknowledges that playback really
started, so a blocked autoplay surfaces as a playback failure.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from ..core.config import workflow_cfg
from ..core.errors import PlaybackError, SignalError

logger = logging.getLogger("storytime.media")

SendFn = Callable[[Dict[str, Any]], Awaitable[None]]


class RemoteMediaElement:
    def __init__(
        self,
        url: str,
        send: SendFn,
        on_ended: Callable[[], None],
        on_error: Callable[[str], None],
        timeout_s: float = workflow_cfg.media_command_timeout_s,
    ) -> None:
        self.media_id = uuid.uuid4().hex[:8]
        self.url = url
        self._send = send
        self._on_ended = on_ended
        self._on_error = on_error
        self._timeout_s = timeout_s

        self._position_ms = 0.0
        self._pending_start: Optional[asyncio.Future] = None
        self._closed = False
        self._outbox: Set[asyncio.Task] = set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def current_time_ms(self) -> float:
        return self._position_ms

    @current_time_ms.setter
    def current_time_ms(self, value: float) -> None:
        self._position_ms = float(value)
        if not self._closed:
            self._command("seek", position_ms=self._position_ms)

    async def play(self) -> None:
        if self._closed:
            raise PlaybackError("Media element already closed")

        future = asyncio.get_running_loop().create_future()
        self._pending_start = future
        await self._send(self._message("play", url=self.url, position_ms=self._position_ms))
        try:
            await asyncio.wait_for(future, timeout=self._timeout_s)
        except asyncio.TimeoutError as e:
            raise PlaybackError(f"Client did not start audio within {self._timeout_s}s") from e
        finally:
            if self._pending_start is future:
                self._pending_start = None

    def pause(self) -> None:
        if not self._closed:
            self._command("pause", position_ms=self._position_ms)

    def close(self) -> None:
        if self._closed:
            return
        self._command("close")
        self._closed = True
        if self._pending_start and not self._pending_start.done():
            self._pending_start.set_exception(PlaybackError("Media element closed"))

    # ── Client lifecycle messages ───────────────────────────────────────

    def started(self, position_ms: Optional[float] = None) -> None:
        if position_ms is not None:
            self._position_ms = float(position_ms)
        if self._pending_start and not self._pending_start.done():
            self._pending_start.set_result(None)

    def failed(self, reason: str) -> None:
        if self._pending_start and not self._pending_start.done():
            self._pending_start.set_exception(PlaybackError(reason))

    def progress(self, position_ms: float) -> None:
        self._position_ms = float(position_ms)

    def ended(self) -> None:
        if not self._closed:
            self._on_ended()

    def errored(self, reason: str) -> None:
        if not self._closed:
            self._on_error(reason)

    # ── Internals ───────────────────────────────────────────────────────

    def _message(self, action: str, **fields: Any) -> Dict[str, Any]:
        return {"type": "audio_command", "action": action, "media_id": self.media_id, **fields}

    def _command(self, action: str, **fields: Any) -> None:
        """Fire-and-forget command for the synchronous media operations."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"Media {self.media_id}: no event loop for {action} command")
            return
        task = loop.create_task(self._send(self._message(action, **fields)))
        self._outbox.add(task)
        task.add_done_callback(self._outbox.discard)


class RemoteMediaHub:
    """Per-session factory and router for RemoteMediaElements."""

    def __init__(self, send: SendFn, timeout_s: float = workflow_cfg.media_command_timeout_s) -> None:
        self._send = send
        self._timeout_s = timeout_s
        self._elements: Dict[str, RemoteMediaElement] = {}

    def create(
        self,
        url: str,
        on_ended: Callable[[], None],
        on_error: Callable[[str], None],
    ) -> RemoteMediaElement:
        # Only the newest element can still receive client events
        for stale in [mid for mid, el in self._elements.items() if el.closed]:
            del self._elements[stale]
        element = RemoteMediaElement(url, self._send, on_ended, on_error, self._timeout_s)
        self._elements[element.media_id] = element
        return element

    def route(self, message: Dict[str, Any]) -> None:
        """Apply a client audio lifecycle message to its element."""
        msg_type = message.get("type", "")
        media_id = message.get("media_id")
        element = self._elements.get(media_id) if isinstance(media_id, str) else None
        if element is None:
            raise SignalError(f"{msg_type} for unknown media {media_id!r}")

        if msg_type == "audio_started":
            element.started(_position(message, required=False))
        elif msg_type == "audio_failed":
            element.failed(str(message.get("reason") or "Playback refused"))
        elif msg_type == "audio_progress":
            element.progress(_position(message, required=True))
        elif msg_type == "audio_ended":
            element.ended()
        elif msg_type == "audio_error":
            element.errored(str(message.get("reason") or "Media error"))
        else:
            raise SignalError(f"Unknown audio message {msg_type!r}")


def _position(message: Dict[str, Any], required: bool) -> Optional[float]:
    value = message.get("position_ms")
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
        raise SignalError(f"Invalid position_ms: {value!r}")
    return float(value)
