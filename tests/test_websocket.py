"""
Tests for WebSocket functionality.
"""

import asyncio
import json
import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from chunkflow.main import app
from chunkflow.models import EventType, UploadEvent
from chunkflow.services import coordinator as coordinator_module
from chunkflow.services.coordinator import UploadCoordinator, get_coordinator
from chunkflow.services.notifier import ConnectionManager, WebSocketNotifier, manager
from tests.helpers import OWNER, md5


@pytest.fixture
def ws_client(registry, chunk_store, merger, monkeypatch):
    coordinator = UploadCoordinator(registry, chunk_store, merger, notifier=WebSocketNotifier(manager))
    monkeypatch.setattr(coordinator_module, "coordinator", coordinator)
    app.dependency_overrides[get_coordinator] = lambda: coordinator
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


class TestWebSocketEndpoints:
    """Test WebSocket endpoint functionality."""

    def test_websocket_endpoint_invalid_session_id(self, ws_client):
        """Test WebSocket endpoint with invalid session ID."""
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with ws_client.websocket_connect("/ws/uploads/invalid-id") as websocket:
                websocket.receive_text()
        assert exc_info.value.code == 4000

    def test_websocket_endpoint_valid_session_id(self, ws_client):
        """Test WebSocket endpoint with valid session ID."""
        session_id = str(uuid.uuid4())

        with ws_client.websocket_connect(f"/ws/uploads/{session_id}") as websocket:
            message = json.loads(websocket.receive_text())

            assert message["type"] == "connected"
            assert message["session_id"] == session_id
            assert "timestamp" in message
            assert message["progress"] is None

    def test_websocket_ping_pong(self, ws_client):
        """Test WebSocket ping/pong functionality."""
        session_id = str(uuid.uuid4())

        with ws_client.websocket_connect(f"/ws/uploads/{session_id}") as websocket:
            websocket.receive_text()
            websocket.send_text(json.dumps({"type": "ping"}))

            message = json.loads(websocket.receive_text())
            assert message["type"] == "pong"
            assert "timestamp" in message

    def test_progress_and_completion_events(self, ws_client):
        """Chunk uploads push progress and completion events to subscribers."""
        data = b"only-chunk"
        created = ws_client.post("/v1/uploads", headers={"X-User-Id": OWNER}, json={
            "content_hash": "ws-hash",
            "original_name": "one.bin",
            "declared_size": len(data),
            "total_chunks": 1,
        }).json()
        session_id = created["session_id"]

        with ws_client.websocket_connect(f"/ws/uploads/{session_id}") as websocket:
            connected = json.loads(websocket.receive_text())
            assert connected["type"] == "connected"
            assert connected["progress"] == {"uploaded_chunks": 0, "total_chunks": 1, "percent": 0.0}

            response = ws_client.put(
                f"/v1/uploads/{session_id}/chunks/0",
                headers={"X-User-Id": OWNER, "X-Chunk-Checksum": md5(data)},
                files={"chunk": ("part_0", data, "application/octet-stream")},
            )
            assert response.status_code == 200

            progress = json.loads(websocket.receive_text())
            assert progress["type"] == "progress"
            assert progress["session_id"] == session_id
            assert progress["data"] == {"session_id": session_id, "uploaded_chunks": 1, "total_chunks": 1}

            completed = json.loads(websocket.receive_text())
            assert completed["type"] == "completed"
            assert completed["data"]["final_object_key"] == f"{session_id}.bin"


class FakeSocket:
    def __init__(self):
        self.sent = []

    async def accept(self):
        pass

    async def send_text(self, text):
        self.sent.append(json.loads(text))


class BrokenSocket(FakeSocket):
    async def send_text(self, text):
        raise RuntimeError("closed")


class TestConnectionManager:
    """Delivery bookkeeping of the connection manager."""

    @pytest.mark.asyncio
    async def test_publish_reaches_only_session_subscribers(self):
        local = ConnectionManager()
        mine, other = FakeSocket(), FakeSocket()
        await local.subscribe(mine, "s1")
        await local.subscribe(other, "s2")

        delivered = await local.publish(UploadEvent(type=EventType.PROGRESS, session_id="s1", data={"uploaded_chunks": 1}))

        assert delivered == 1
        assert [m["type"] for m in mine.sent] == ["progress"]
        assert mine.sent[0]["data"] == {"uploaded_chunks": 1}
        assert other.sent == []

    @pytest.mark.asyncio
    async def test_failed_socket_is_dropped(self):
        local = ConnectionManager()
        healthy = FakeSocket()
        await local.subscribe(BrokenSocket(), "s1")
        await local.subscribe(healthy, "s1")

        delivered = await local.publish(UploadEvent(type=EventType.PROGRESS, session_id="s1"))

        assert delivered == 1
        assert local.subscriber_count("s1") == 1
        assert len(healthy.sent) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_cleans_up_session(self):
        local = ConnectionManager()
        socket = FakeSocket()
        await local.subscribe(socket, "s1")
        local.unsubscribe(socket)
        local.unsubscribe(socket)
        assert local.subscribers == {}
        assert await local.publish(UploadEvent(type=EventType.PROGRESS, session_id="s1")) == 0

    @pytest.mark.asyncio
    async def test_notifier_does_not_block(self):
        delivered = asyncio.Event()

        class SlowManager(ConnectionManager):
            async def publish(self, event):
                await asyncio.sleep(0.01)
                delivered.set()
                return 1

        slow = SlowManager()
        await slow.subscribe(FakeSocket(), "s1")
        notifier = WebSocketNotifier(slow)
        notifier.notify("s1", UploadEvent(type=EventType.COMPLETED, session_id="s1"))
        assert not delivered.is_set()
        await asyncio.wait_for(delivered.wait(), timeout=1)

    @pytest.mark.asyncio
    async def test_notifier_skips_sessions_without_subscribers(self):
        notifier = WebSocketNotifier(ConnectionManager())
        notifier.notify("s1", UploadEvent(type=EventType.PROGRESS, session_id="s1"))
        assert notifier._tasks == set()

    @pytest.mark.asyncio
    async def test_notifier_without_loop_is_silent(self):
        local = ConnectionManager()
        await local.subscribe(FakeSocket(), "s1")
        notifier = WebSocketNotifier(local)
        event = UploadEvent(type=EventType.PROGRESS, session_id="s1")
        await asyncio.to_thread(notifier.notify, "s1", event)
        assert notifier._tasks == set()
