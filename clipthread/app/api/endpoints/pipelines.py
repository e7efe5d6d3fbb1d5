from fastapi import APIRouter, Depends, HTTPException

from clipthread.app.api.deps import get_session_manager
from clipthread.app.services.session_manager import SessionManager

router = APIRouter()


@router.get("")
async def list_pipelines(manager: SessionManager = Depends(get_session_manager)):
    return {
        "pipelines": manager.executor.registered(),
        "runs": [run.to_dict() for run in manager.executor.list_runs()[:50]],
    }


@router.get("/runs/{run_id}")
async def get_run(run_id: str, manager: SessionManager = Depends(get_session_manager)):
    run = manager.executor.get_run(run_id)
    if run is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return run.to_dict()
