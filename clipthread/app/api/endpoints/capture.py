from fastapi import APIRouter, Depends, HTTPException

from clipthread.app.api.deps import get_session_manager
from clipthread.app.core.exceptions import StoreError
from clipthread.app.models.capture_event import CaptureEvent
from clipthread.app.services.session_manager import SessionManager

router = APIRouter()


@router.post("/events")
async def ingest_event(event: CaptureEvent, manager: SessionManager = Depends(get_session_manager)):
    """
    Routes one captured snippet into a session.
    Returns the session it joined or created, or a null session when the
    content is not session-worthy.
    """
    try:
        result = await manager.on_event(event)
        return result.to_dict()
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
