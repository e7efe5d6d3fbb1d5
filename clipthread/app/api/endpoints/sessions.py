from fastapi import APIRouter, Depends, HTTPException

from clipthread.app.api.deps import get_session_manager
from clipthread.app.core.exceptions import ResearchFailed, SessionEngineError, SessionNotFound
from clipthread.app.services.session_manager import SessionManager

router = APIRouter()


def _session_summary(session) -> dict:
    return session.model_dump(mode="json") | {"item_count": session.item_count}


@router.get("")
async def list_sessions(manager: SessionManager = Depends(get_session_manager)):
    sessions = manager.get_active_sessions()
    return [_session_summary(s) for s in sessions]


@router.get("/search")
async def search_sessions(q: str, manager: SessionManager = Depends(get_session_manager)):
    return [_session_summary(s) for s in manager.search_sessions(q)]


@router.get("/type/{session_type}")
async def sessions_by_type(session_type: str, manager: SessionManager = Depends(get_session_manager)):
    return [_session_summary(s) for s in manager.get_sessions_by_type(session_type)]


@router.delete("")
async def clear_sessions(manager: SessionManager = Depends(get_session_manager)):
    try:
        count = await manager.clear_all_sessions()
        return {"status": "cleared", "count": count}
    except SessionEngineError as e:
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{session_id}")
async def get_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    try:
        return manager.get_session(session_id).model_dump(mode="json")
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.get("/{session_id}/items")
async def get_session_items(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    try:
        return [item.model_dump(mode="json") for item in manager.get_session_items(session_id)]
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")


@router.post("/{session_id}/research")
async def research_session(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    """
    Runs a research and consolidation pass now and waits for it.
    Joins the pass already running for this session, if any.
    """
    try:
        outcome = await manager.perform_session_research(session_id)
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except ResearchFailed as e:
        raise HTTPException(status_code=409, detail=e.message)
    except SessionEngineError as e:
        raise HTTPException(status_code=500, detail=str(e))
    return {
        "session": outcome.session.model_dump(mode="json"),
        "result": outcome.result.model_dump(),
        "research_quality": outcome.digest.quality,
        "used_template": outcome.used_template,
    }


@router.post("/{session_id}/retype")
async def apply_retype(session_id: str, manager: SessionManager = Depends(get_session_manager)):
    try:
        return manager.apply_retype_proposal(session_id).model_dump(mode="json")
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionEngineError as e:
        raise HTTPException(status_code=409, detail=e.message)
