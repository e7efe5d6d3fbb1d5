from fastapi import APIRouter

from clipthread.app.api.endpoints import capture, notifications, pipelines, sessions

api_router = APIRouter()
api_router.include_router(capture.router, prefix="/capture", tags=["capture"])
api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(pipelines.router, prefix="/pipelines", tags=["pipelines"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
