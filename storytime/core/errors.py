"""
Storytime - Error Taxonomy

Signal errors are logged and ignored. Playback and navigation errors move
the workflow into ERROR. Nothing here is terminal: reset() always recovers.
"""

from __future__ import annotations


class StorytimeError(Exception):
    """Base class for every error raised by the narration core."""


class SignalError(StorytimeError):
    """A malformed or unexpected event. Logged, never transitions."""


class BusyError(StorytimeError):
    """Another playback operation is still in flight."""

    def __init__(self, requested: str, in_flight: str) -> None:
        super().__init__(
            f"Cannot {requested}: '{in_flight}' is still in progress"
        )
        self.requested = requested
        self.in_flight = in_flight


class PlaybackError(StorytimeError):
    """Narration audio failed (autoplay blocked, decode, network)."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NavigationError(StorytimeError):
    """The navigation provider could not fetch the next/previous page."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class IllegalTransitionError(StorytimeError, ValueError):
    """A transition that the legal transition table does not allow."""
