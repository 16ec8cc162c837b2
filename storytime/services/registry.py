"""
Storytime - Session Registry

One ReadingSession per connected client, keyed by session_id.
Single event loop, no locking.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional, Tuple

from .book import BookNavigator
from .session import ReadingSession

logger = logging.getLogger("storytime.registry")


class SessionRegistry:
    def __init__(self) -> None:
        self._sessions: Dict[str, ReadingSession] = {}

    def create(
        self,
        session_id: str,
        on_state: Optional[Callable] = None,
        on_timer: Optional[Callable] = None,
        on_audio_command: Optional[Callable] = None,
    ) -> ReadingSession:
        """Register a session without starting it."""
        if session_id in self._sessions:
            raise ValueError(f"Session {session_id} already registered")

        session = ReadingSession(
            session_id=session_id,
            on_state=on_state,
            on_timer=on_timer,
            on_audio_command=on_audio_command,
        )
        self._sessions[session_id] = session
        return session

    async def open(
        self,
        session_id: str,
        navigator: BookNavigator,
        **callbacks: Callable,
    ) -> Tuple[ReadingSession, Dict[str, Any]]:
        """Create and start a reading session for `navigator`'s book."""
        session = self.create(session_id, **callbacks)
        try:
            info = await session.start(navigator)
        except Exception:
            self._sessions.pop(session_id, None)
            await session.stop()
            raise
        logger.info(
            f"[{session_id}] Opened reading of {navigator.book_id} "
            f"({self.active_count} reading now)"
        )
        return session, info

    async def stop_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Stop and forget a session. Returns its summary, or None if unknown."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return None
        try:
            summary = await session.stop()
        except Exception as e:
            logger.error(f"[{session_id}] Session teardown failed: {e}", exc_info=True)
            summary = session.telemetry.to_dict()
        logger.info(f"[{session_id}] Closed reading session ({self.active_count} reading now)")
        return summary

    async def stop_all(self) -> None:
        for sid in list(self._sessions):
            await self.stop_session(sid)

    def get(self, session_id: str) -> Optional[ReadingSession]:
        return self._sessions.get(session_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

    @property
    def all_sessions(self) -> Dict[str, ReadingSession]:
        return dict(self._sessions)
