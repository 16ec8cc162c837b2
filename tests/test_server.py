"""Tests for the FastAPI surface."""

import pytest
from fastapi.testclient import TestClient

from storytime.server import app

BOOK = {
    "book_id": "dragon",
    "pages": [
        {"id": "p1", "audio_url": "/audio/dragon/1.mp3"},
        {"id": "p2", "audio_url": "/audio/dragon/2.mp3"},
    ],
}


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client


def receive_until(ws, msg_type, limit=20):
    """Read messages until one of `msg_type` arrives; state pushes may interleave."""
    for _ in range(limit):
        message = ws.receive_json()
        if message["type"] == msg_type:
            return message
    raise AssertionError(f"No {msg_type!r} message received")


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["version"] == "1.0.0"


def test_workflow_graph(client):
    graph = client.get("/workflow-graph").json()["workflows"]["narrationWorkflow"]
    assert graph["entry_point"] == "idle"
    assert len(graph["nodes"]) == 8
    assert graph["edges"]


def test_unknown_session_is_404(client):
    response = client.get("/session/nope")
    assert response.status_code == 404


def test_websocket_session_lifecycle(client):
    with client.websocket_connect("/ws/reading") as ws:
        ws.send_json({"type": "start_session", "book": BOOK})
        started = receive_until(ws, "session_started")
        data = started["data"]
        assert data["book_id"] == "dragon"
        assert data["page_count"] == 2
        assert data["state"] == "idle"

        sessions = client.get("/sessions").json()
        assert data["session_id"] in sessions

        detail = client.get(f"/session/{data['session_id']}").json()
        assert detail["workflow"]["state"] == "idle"

        ws.send_json({"type": "speech", "speaker": "child", "active": True})
        ws.send_json({"type": "ping"})
        receive_until(ws, "pong")

        ws.send_json({"type": "stop_session"})
        stopped = receive_until(ws, "session_stopped")
        assert stopped["data"]["book_id"] == "dragon"
        assert stopped["data"]["speech_events"] == 1


def test_websocket_skip_streams_state(client):
    with client.websocket_connect("/ws/reading") as ws:
        ws.send_json({"type": "start_session", "book": BOOK})
        receive_until(ws, "session_started")

        ws.send_json({"type": "skip_next"})
        for _ in range(20):
            message = receive_until(ws, "workflow_state")
            if message["data"]["state"] == "waiting_for_narration":
                break
        else:
            raise AssertionError("page turn never published")
        assert message["data"]["context"]["current_page"]["page_id"] == "p2"

        ws.send_json({"type": "reset"})
        receive_until(ws, "workflow_state")


def test_websocket_errors(client):
    with client.websocket_connect("/ws/reading") as ws:
        ws.send_text("not json")
        assert receive_until(ws, "error")["message"] == "Invalid JSON"

        ws.send_json(["a", "list"])
        assert receive_until(ws, "error")["message"] == "Messages must be JSON objects"

        ws.send_json({"type": "speech", "speaker": "child", "active": True})
        assert receive_until(ws, "error")["message"] == "No active session"

        ws.send_json({"type": "start_session", "book": {"pages": []}})
        assert receive_until(ws, "error")["message"].startswith("Invalid book")

        ws.send_json({"type": "start_session", "book": BOOK})
        receive_until(ws, "session_started")

        ws.send_json({"type": "start_session", "book": BOOK})
        assert receive_until(ws, "error")["message"] == "Session already active"

        ws.send_json({"type": "speech", "speaker": "narrator", "active": True})
        assert "Invalid speech event" in receive_until(ws, "error")["message"]
