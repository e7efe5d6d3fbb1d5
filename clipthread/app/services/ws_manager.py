import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import WebSocket

from clipthread.app.services.notifications import SessionObserver

logger = logging.getLogger(__name__)


class NotificationBroadcaster(SessionObserver):
    """
    Forwards session notifications to WebSocket clients.

    Each client gets a bounded queue; when a slow client falls behind, its
    oldest messages are dropped.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self.connections: Dict[WebSocket, Tuple[Optional[str], asyncio.Queue]] = {}
        self.lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket, session_id: Optional[str] = None) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        async with self.lock:
            self.connections[websocket] = (session_id, queue)
        await websocket.accept()
        logger.info("Notification client connected (total: %d)", len(self.connections))
        return queue

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self.lock:
            self.connections.pop(websocket, None)
        logger.info("Notification client disconnected")

    def publish(self, kind: str, session_id: Optional[str], payload: Dict[str, Any]) -> None:
        message = {
            "type": kind,
            "session_id": session_id,
            "payload": payload,
            "at": datetime.now(timezone.utc).isoformat(),
        }
        for wanted, queue in list(self.connections.values()):
            if wanted is not None and session_id is not None and wanted != session_id:
                continue
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)

    def session_created(self, session, event, standalone):
        self.publish("session_created", session.id, {
            "session": session.model_dump(mode="json"),
            "event_id": event.id,
            "standalone": standalone,
        })

    def session_updated(self, session_id, session_type, item_count, activated):
        self.publish("session_updated", session_id, {
            "session_type": session_type,
            "item_count": item_count,
            "activated": activated,
        })

    def session_intent_analyzed(self, session_id, primary_intent, progress_status, themes):
        self.publish("session_intent_analyzed", session_id, {
            "primary_intent": primary_intent,
            "progress_status": progress_status,
            "themes": themes,
        })

    def session_research_started(self, session_id, session_type, item_count):
        self.publish("session_research_started", session_id, {"session_type": session_type, "item_count": item_count})

    def session_research_progress(self, session_id, progress):
        self.publish("session_research_progress", session_id, progress.model_dump())

    def session_research_completed(self, session_id, summary):
        self.publish("session_research_completed", session_id, summary)

    def session_research_failed(self, session_id, reason):
        self.publish("session_research_failed", session_id, {"reason": reason})

    def sessions_cleared(self, count):
        self.publish("sessions_cleared", None, {"count": count})
