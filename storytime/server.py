"""
Storytime - FastAPI Server

================================================================================
Architecture:
  • One ReadingSession per WebSocket connection, tracked by SessionRegistry
  • The client forwards already-translated speech events (assistant / child)
    from its realtime voice transport, plus lifecycle events of the <audio>
    element that plays the narration
  • The server runs the narration workflow and streams back state
    snapshots, timer countdowns and audio commands
================================================================================

Endpoints:
  WS  /ws/reading           - reading session stream
  GET /health               - server health
  GET /sessions             - list active sessions with telemetry
  GET /session/{session_id} - single session diagnostics
  GET /workflow-graph       - legal transition table as nodes + edges

Client → Server messages:
  { type: "start_session", book: {book_id, start_page, pages: [...]} }
  { type: "speech", speaker: "assistant"|"child", active: bool }
  { type: "audio_started"|"audio_ended", media_id, position_ms? }
  { type: "audio_progress", media_id, position_ms }
  { type: "audio_failed"|"audio_error", media_id, reason }
  { type: "skip_next" } / { type: "skip_previous" }
  { type: "reset" } / { type: "set_enabled", enabled: bool }
  { type: "stop_session" }
  { type: "ping" }

Server → Client messages:
  { type: "workflow_state", data: {...} }   → state + context snapshot
  { type: "timer_tick", data: {...} }       → pre-roll / silence countdown
  { type: "audio_command", action, media_id, ... } → play/pause/seek/close
  { type: "session_started", data: {...} }  → ack
  { type: "session_stopped", data: {...} }  → ack + summary
  { type: "pong" }                          → keepalive ack
  { type: "error", message: "..." }         → error
"""

from __future__ import annotations

import json
import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.config import server_cfg, workflow_cfg
from .core.errors import StorytimeError
from .core.state_machine import transition_graph
from .services.book import BookNavigator
from .services.registry import SessionRegistry
from .services.session import ReadingSession

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("storytime")
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)

VERSION = "1.0.0"

# ---------------------------------------------------------------------------
# Session Registry
# ---------------------------------------------------------------------------

registry = SessionRegistry()

# ---------------------------------------------------------------------------
# FastAPI Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("🚀 Storytime backend starting...")
    logger.info(
        f"   pre-roll {workflow_cfg.pre_roll_ms}ms, silence window "
        f"{workflow_cfg.silence_window_ms}ms, tick {workflow_cfg.tick_ms}ms"
    )
    yield
    logger.info("🛑 Shutting down - stopping all reading sessions...")
    await registry.stop_all()
    logger.info("🛑 Storytime backend stopped")


# ---------------------------------------------------------------------------
# FastAPI App
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Storytime - Narration Workflow",
    version=VERSION,
    description=(
        "Orchestrates page narration for an interactive storytelling companion: "
        "narrates after the assistant finishes, pauses when the child speaks, "
        "and turns the page after a window of silence."
    ),
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(server_cfg.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# REST Endpoints
# ---------------------------------------------------------------------------

@app.get("/health")
async def health():
    return {
        "status": "ok",
        "version": VERSION,
        "active_sessions": registry.active_count,
    }


@app.get("/sessions")
async def list_sessions():
    return {
        sid: {
            "active": session.is_active,
            "telemetry": session.telemetry.to_dict(),
        }
        for sid, session in registry.all_sessions.items()
    }


@app.get("/session/{session_id}")
async def session_detail(session_id: str):
    session = registry.get(session_id)
    if session is None:
        return JSONResponse(status_code=404, content={"error": "session not found"})
    return session.diagnostics()


@app.get("/workflow-graph")
async def workflow_graph():
    return {"workflows": {"narrationWorkflow": transition_graph()}}


# ---------------------------------------------------------------------------
# WebSocket: Per-Session Reading Stream
# ---------------------------------------------------------------------------

@app.websocket("/ws/reading")
async def websocket_reading(ws: WebSocket):
    """
    WebSocket endpoint - one ReadingSession per connection.
    Workflow state, timer ticks and audio commands are streamed back.
    """
    await ws.accept()

    session_id = uuid.uuid4().hex[:12]
    current: Optional[ReadingSession] = None

    # Helper to send JSON safely
    async def send(data: Dict[str, Any]) -> None:
        try:
            await ws.send_text(json.dumps(data))
        except Exception as e:
            logger.debug(f"[{session_id}] Send failed: {e}")

    async def on_state(payload: Dict[str, Any]) -> None:
        await send({"type": "workflow_state", "data": payload})

    async def on_timer(payload: Dict[str, Any]) -> None:
        await send({"type": "timer_tick", "data": payload})

    async def on_audio_command(command: Dict[str, Any]) -> None:
        await send(command)

    try:
        while True:
            raw = await ws.receive_text()

            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await send({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(message, dict):
                await send({"type": "error", "message": "Messages must be JSON objects"})
                continue

            msg_type = message.get("type", "")

            # ── Start reading session ──
            if msg_type == "start_session":
                if current is not None:
                    await send({"type": "error", "message": "Session already active"})
                    continue
                try:
                    navigator = BookNavigator.from_payload(message.get("book") or {})
                except StorytimeError as e:
                    await send({"type": "error", "message": f"Invalid book: {e}"})
                    continue

                current, info = await registry.open(
                    session_id,
                    navigator,
                    on_state=on_state,
                    on_timer=on_timer,
                    on_audio_command=on_audio_command,
                )
                await send({"type": "session_started", "data": info})

            # ── Stop session ──
            elif msg_type == "stop_session":
                if current is None:
                    continue
                summary = await registry.stop_session(session_id) or {}
                current = None
                await send({"type": "session_stopped", "data": summary})

            # ── Keepalive ──
            elif msg_type == "ping":
                await send({"type": "pong"})

            # ── Workflow events ──
            else:
                if current is None:
                    await send({"type": "error", "message": "No active session"})
                    continue
                try:
                    current.handle_client_message(message)
                except StorytimeError as e:
                    logger.warning(f"[{session_id}] Rejected {msg_type!r}: {e}")
                    await send({"type": "error", "message": str(e)})

    except WebSocketDisconnect:
        logger.info(f"[{session_id}] WebSocket disconnected")
    except Exception as e:
        logger.error(f"[{session_id}] WebSocket error: {e}", exc_info=True)
    finally:
        if current is not None:
            await registry.stop_session(session_id)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    import uvicorn
    uvicorn.run(
        "storytime.server:app",
        host=server_cfg.host,
        port=server_cfg.port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
