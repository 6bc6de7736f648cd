"""
Progress notification for upload sessions.

The coordinator only depends on ``ProgressNotifier.notify``; delivery is
fire-and-forget and a notifier must never raise into the caller.
"""

import asyncio
import json
import logging
from typing import Dict, List, Set

from fastapi import WebSocket

from chunkflow.models.upload import UploadEvent

logger = logging.getLogger(__name__)


class ProgressNotifier:
    """Receives upload events. Implementations must not block."""

    def notify(self, session_id: str, event: UploadEvent) -> None:
        raise NotImplementedError


class NullNotifier(ProgressNotifier):
    def notify(self, session_id: str, event: UploadEvent) -> None:
        pass


class RecordingNotifier(ProgressNotifier):
    """Keeps events in memory; handy for introspection and tests."""

    def __init__(self):
        self.events: List[UploadEvent] = []

    def notify(self, session_id: str, event: UploadEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: str) -> List[UploadEvent]:
        return [e for e in self.events if e.type == event_type]


# WebSocket connection management
class ConnectionManager:
    """Tracks WebSocket subscribers per upload session and publishes events to them."""

    def __init__(self):
        self.subscribers: Dict[str, Set[WebSocket]] = {}
        self.socket_sessions: Dict[WebSocket, str] = {}

    async def subscribe(self, websocket: WebSocket, session_id: str):
        """Accept ``websocket`` and register it for ``session_id`` events."""
        await websocket.accept()
        self.subscribers.setdefault(session_id, set()).add(websocket)
        self.socket_sessions[websocket] = session_id
        logger.info(f"Subscriber attached to upload {session_id} ({len(self.subscribers[session_id])} total)")

    def unsubscribe(self, websocket: WebSocket):
        session_id = self.socket_sessions.pop(websocket, None)
        if session_id is None:
            return
        sockets = self.subscribers.get(session_id)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.subscribers[session_id]
        logger.info(f"Subscriber detached from upload {session_id}")

    def subscriber_count(self, session_id: str) -> int:
        return len(self.subscribers.get(session_id, ()))

    async def publish(self, event: UploadEvent) -> int:
        """
        Deliver ``event`` to every subscriber of its session.

        Sockets that fail are dropped. Returns the number of deliveries.
        """
        sockets = list(self.subscribers.get(event.session_id, ()))
        if not sockets:
            return 0

        message = json.dumps(event.model_dump(mode="json"))
        delivered = 0
        for websocket in sockets:
            try:
                await websocket.send_text(message)
                delivered += 1
            except Exception as e:
                logger.warning(f"Dropping subscriber of upload {event.session_id}: {e}")
                self.unsubscribe(websocket)
        return delivered


class WebSocketNotifier(ProgressNotifier):
    """Pushes events to the session's WebSocket subscribers without awaiting delivery."""

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, session_id: str, event: UploadEvent) -> None:
        if not self.manager.subscriber_count(session_id):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No event loop to deliver {event.type} for {session_id}")
            return
        task = loop.create_task(self.manager.publish(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


# Global connection manager
manager = ConnectionManager()
