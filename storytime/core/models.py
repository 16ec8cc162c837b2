"""
Storytime - Data Models

Dataclasses for every piece of data flowing through the narration core.
Mutable records stay inside their owner; everything handed to a
subscriber is a frozen snapshot.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, Optional


# ---------------------------------------------------------------------------
# Book pages
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PageRef:
    """A page of the active book. `index` is the 1-based page number."""
    page_id: str
    index: int
    total: int
    audio_url: Optional[str] = None
    title: str = ""

    @property
    def is_last(self) -> bool:
        return self.total > 0 and self.index >= self.total

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class NavigationResult:
    """What a navigation provider returns after moving to another page."""
    page: PageRef
    is_last_page: bool


# ---------------------------------------------------------------------------
# Workflow context
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ErrorInfo:
    reason: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class ContextSnapshot:
    """Immutable copy of WorkflowContext handed to subscribers."""
    current_page: Optional[PageRef] = None
    is_last_page: bool = False
    pause_position_ms: Optional[float] = None
    last_error: Optional[ErrorInfo] = None

    @property
    def is_empty(self) -> bool:
        return self == ContextSnapshot()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_page": self.current_page.to_dict() if self.current_page else None,
            "is_last_page": self.is_last_page,
            "pause_position_ms": self.pause_position_ms,
            "last_error": self.last_error.to_dict() if self.last_error else None,
        }


@dataclass
class WorkflowContext:
    """
    Mutable record owned exclusively by the state machine.

    `is_last_page` is recomputed by `set_page()`; callers never assign it
    directly.
    """
    current_page: Optional[PageRef] = None
    is_last_page: bool = False
    pause_position_ms: Optional[float] = None
    last_error: Optional[ErrorInfo] = None

    def set_page(self, page: Optional[PageRef], is_last: Optional[bool] = None) -> None:
        self.current_page = page
        if page is None:
            self.is_last_page = False
        elif is_last is not None:
            self.is_last_page = is_last
        else:
            self.is_last_page = page.is_last

    def clear(self) -> None:
        self.current_page = None
        self.is_last_page = False
        self.pause_position_ms = None
        self.last_error = None

    def snapshot(self) -> ContextSnapshot:
        return ContextSnapshot(
            current_page=self.current_page,
            is_last_page=self.is_last_page,
            pause_position_ms=self.pause_position_ms,
            last_error=self.last_error,
        )


# ---------------------------------------------------------------------------
# Timers
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TimerSnapshot:
    name: str
    remaining_ms: float = 0.0
    total_ms: float = 0.0
    is_active: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionRecord:
    """One entry of the machine's bounded transition history."""
    source: str
    target: str
    event: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionTelemetry:
    """Per-session counters - never crashes the session."""
    session_id: str = ""
    book_id: str = ""
    speech_events: int = 0
    narrations_started: int = 0
    narrations_completed: int = 0
    pauses: int = 0
    pages_turned: int = 0
    errors: int = 0
    workflow_state: str = "idle"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
