"""
Storytime - Configuration

Centralised settings from environment variables.
All tuneable constants live here - zero magic numbers in other files.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ServerConfig:
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    cors_origins: tuple[str, ...] = (
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    )


# ---------------------------------------------------------------------------
# Narration workflow tunables
# ---------------------------------------------------------------------------

WAITING_POLICIES = ("reset", "rearm")


@dataclass(frozen=True)
class WorkflowConfig:
    # Pause after the assistant stops talking before narration starts
    pre_roll_ms: int = int(os.getenv("STORYTIME_PRE_ROLL_MS", "1000"))
    # Pause after narration ends before the page auto-advances
    silence_window_ms: int = int(os.getenv("STORYTIME_SILENCE_WINDOW_MS", "3000"))
    # Countdown tick cadence shared by both timers
    tick_ms: int = int(os.getenv("STORYTIME_TICK_MS", "100"))
    # Child speech before narration starts: "reset" -> IDLE, "rearm" -> wait again
    waiting_interrupt_policy: str = os.getenv("STORYTIME_WAITING_POLICY", "reset")
    # Transitions kept for diagnostics
    history_limit: int = 50
    # How long a remote media element waits for the client to acknowledge a command
    media_command_timeout_s: float = float(os.getenv("STORYTIME_MEDIA_TIMEOUT_S", "5.0"))

    def __post_init__(self) -> None:
        if self.pre_roll_ms < 0 or self.silence_window_ms < 0:
            raise ValueError("Timer durations must be non-negative")
        if self.tick_ms <= 0:
            raise ValueError(f"tick_ms must be positive, got {self.tick_ms}")
        if self.waiting_interrupt_policy not in WAITING_POLICIES:
            raise ValueError(
                f"waiting_interrupt_policy must be one of {WAITING_POLICIES}, "
                f"got {self.waiting_interrupt_policy!r}"
            )


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------

server_cfg = ServerConfig()
workflow_cfg = WorkflowConfig()
