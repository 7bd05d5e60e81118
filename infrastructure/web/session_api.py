# infrastructure/web/session_api.py
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from application.orchestrators.delegation_coordinator import DelegationCoordinator
from domain.errors import CoordinatorError
from domain.models.task_session import SessionStatus
from infrastructure.storage.session_store import TaskSessionStore
from infrastructure.web.dependencies import (
    ServiceComponents,
    get_components,
    get_coordinator,
    get_store,
    http_error_for,
)
from infrastructure.web.schemas import SessionView
from shared.logging import logger

router = APIRouter(tags=["sessions"])


@router.get("/sessions", response_model=List[SessionView])
async def list_sessions(
    status: Optional[SessionStatus] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    store: TaskSessionStore = Depends(get_store)
):
    """List sessions, newest first"""
    return [SessionView.from_session(s) for s in store.list_sessions(status)[:limit]]


@router.get("/sessions/active", response_model=List[SessionView])
async def list_active_sessions(store: TaskSessionStore = Depends(get_store)):
    return [SessionView.from_session(s) for s in store.list_active()]


@router.get("/sessions/{session_id}", response_model=SessionView)
async def get_session(session_id: str, store: TaskSessionStore = Depends(get_store)):
    try:
        return SessionView.from_session(store.get(session_id))
    except CoordinatorError as e:
        raise http_error_for(e)


@router.delete("/sessions/{session_id}", response_model=SessionView)
async def cancel_session(session_id: str, coordinator: DelegationCoordinator = Depends(get_coordinator)):
    """Cancel an active session; the delegate is asked to stop on a best-effort basis"""

    try:
        session = await coordinator.cancel_session(session_id)
        logger.info("Session cancelled via API", session_id=session_id)
        return SessionView.from_session(session)

    except CoordinatorError as e:
        raise http_error_for(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.error("Failed to cancel session", session_id=session_id, error=str(e))
        raise HTTPException(status_code=500, detail=f"Failed to cancel session: {str(e)}")


@router.get("/stats")
async def get_stats(components: ServiceComponents = Depends(get_components)) -> Dict[str, Any]:
    stats = components.coordinator.stats()
    stats["webhooks"] = {
        "issues": components.issue_verifier.stats(),
        "delegate": components.delegate_verifier.stats(),
    }
    stats["pending_notifications"] = components.relay.pending_deliveries()
    return stats
