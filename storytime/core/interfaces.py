"""
Storytime - Collaborator Interfaces

Protocol definitions for everything the narration core consumes but does
not own:
  1. Scheduler   - the shared clock the timers tick on
  2. Media       - the external audio primitive behind a narration session
  3. Navigation  - the book/page store
  4. Narration   - page -> playable audio URL

The core talks to collaborators only through these protocols - never by
reaching into another layer's internals.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .models import NavigationResult, PageRef


# ═══════════════════════════════════════════════════════════════════════════
# Clock
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class CancelHandle(Protocol):
    def cancel(self) -> None:
        ...


@runtime_checkable
class Scheduler(Protocol):
    """Anything shaped like `asyncio.AbstractEventLoop.call_later`."""

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> CancelHandle:
        ...


# ═══════════════════════════════════════════════════════════════════════════
# Media
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class MediaElement(Protocol):
    """One loaded narration clip (an <audio> element or equivalent)."""

    @property
    def current_time_ms(self) -> float:
        """Playback position in milliseconds."""
        ...

    @current_time_ms.setter
    def current_time_ms(self, value: float) -> None:
        ...

    async def play(self) -> None:
        """Start or continue playback. Raises if playback is refused."""
        ...

    def pause(self) -> None:
        ...

    def close(self) -> None:
        """Detach listeners and free the underlying resource."""
        ...


# factory(url, on_ended, on_error) -> MediaElement
MediaFactory = Callable[[str, Callable[[], None], Callable[[str], None]], MediaElement]


# ═══════════════════════════════════════════════════════════════════════════
# Book / narration
# ═══════════════════════════════════════════════════════════════════════════

@runtime_checkable
class NavigationProvider(Protocol):
    """Moves through the active book. `None` means there is no such page."""

    async def next(self) -> Optional[NavigationResult]:
        ...

    async def previous(self) -> Optional[NavigationResult]:
        ...


@runtime_checkable
class NarrationSource(Protocol):
    """Resolves the narration recording for a page."""

    async def resolve(self, page: PageRef) -> str:
        ...
