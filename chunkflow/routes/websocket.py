"""
WebSocket routes for real-time upload progress.
"""

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
import logging
import json
from datetime import datetime
import uuid

from chunkflow.errors import NotFound
from chunkflow.services.coordinator import UploadCoordinator, get_coordinator
from chunkflow.services.notifier import manager

logger = logging.getLogger(__name__)
router = APIRouter()

INVALID_SESSION_CLOSE_CODE = 4000


@router.websocket("/ws/uploads/{session_id}")
async def upload_events(
    websocket: WebSocket,
    session_id: str,
    coordinator: UploadCoordinator = Depends(get_coordinator),
):
    """
    Stream ``progress``, ``completed`` and ``status-changed`` events of one
    upload session.

    The first message is a ``connected`` snapshot carrying the session's
    current progress, or ``null`` when the session does not exist yet, so a
    client that reconnects mid-upload can redraw without polling.
    """
    try:
        uuid.UUID(session_id)
    except ValueError:
        await websocket.close(code=INVALID_SESSION_CLOSE_CODE, reason="Invalid session_id format")
        return

    try:
        progress = (await coordinator.get_progress(session_id)).model_dump()
    except NotFound:
        progress = None

    await manager.subscribe(websocket, session_id)
    try:
        await websocket.send_text(json.dumps({
            "type": "connected",
            "session_id": session_id,
            "timestamp": datetime.now().isoformat(),
            "progress": progress,
        }))

        while True:
            data = await websocket.receive_text()
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from subscriber of upload {session_id}")
                continue
            if isinstance(message, dict) and message.get("type") == "ping":
                await websocket.send_text(json.dumps({
                    "type": "pong",
                    "timestamp": datetime.now().isoformat()
                }))
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for upload {session_id}: {e}")
    finally:
        manager.unsubscribe(websocket)
