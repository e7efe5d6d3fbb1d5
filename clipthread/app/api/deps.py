from fastapi import Request, WebSocket

from clipthread.app.services.session_manager import SessionManager
from clipthread.app.services.ws_manager import NotificationBroadcaster


def get_session_manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def get_broadcaster(websocket: WebSocket) -> NotificationBroadcaster:
    return websocket.app.state.broadcaster
