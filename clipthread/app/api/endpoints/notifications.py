import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from clipthread.app.api.deps import get_broadcaster
from clipthread.app.services.ws_manager import NotificationBroadcaster

logger = logging.getLogger(__name__)

router = APIRouter()


async def _forward(websocket: WebSocket, queue: asyncio.Queue):
    while True:
        message = await queue.get()
        await websocket.send_json(message)


@router.websocket("/ws")
async def notifications_ws(
    websocket: WebSocket,
    session_id: Optional[str] = None,
    broadcaster: NotificationBroadcaster = Depends(get_broadcaster),
):
    """Streams session notifications; pass ?session_id= to follow one session."""
    queue = await broadcaster.connect(websocket, session_id)
    sender = asyncio.create_task(_forward(websocket, queue))
    try:
        # Client messages are not part of the protocol; reading detects the disconnect.
        while True:
            data = await websocket.receive_text()
            logger.debug("Ignoring client message on notification socket: %s", data[:100])
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        await broadcaster.disconnect(websocket)
