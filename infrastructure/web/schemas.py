# infrastructure/web/schemas.py
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from domain.models.task_session import SessionChange, TaskSession


class SessionResultView(BaseModel):
    artifact_url: Optional[str] = None
    files_changed: int = 0
    summary: Optional[str] = None


class SessionErrorView(BaseModel):
    message: str
    error_class: Optional[str] = None


class SessionView(BaseModel):
    session_id: str
    issue_id: str
    delegate_task_id: Optional[str] = None
    strategy: str
    status: str
    progress: int = Field(..., ge=0, le=100)
    current_step: Optional[str] = None
    result: Optional[SessionResultView] = None
    error: Optional[SessionErrorView] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_session(cls, session: TaskSession) -> "SessionView":
        return cls(
            session_id=session.session_id,
            issue_id=session.issue_id,
            delegate_task_id=session.delegate_task_id,
            strategy=session.strategy.value,
            status=session.status.value,
            progress=session.progress,
            current_step=session.current_step,
            result=SessionResultView(
                artifact_url=session.result.artifact_url,
                files_changed=session.result.files_changed,
                summary=session.result.summary,
            ) if session.result else None,
            error=SessionErrorView(
                message=session.error.message,
                error_class=session.error.error_class,
            ) if session.error else None,
            created_at=session.created_at,
            updated_at=session.updated_at,
            started_at=session.started_at,
            completed_at=session.completed_at,
            metadata=dict(session.metadata),
        )


class WebhookAck(BaseModel):
    status: str = "accepted"
    duplicate: bool = False
    result: Dict[str, Any] = Field(default_factory=dict)


def change_summary(change: SessionChange) -> Dict[str, Any]:
    session = change.session
    return {
        "session_id": session.session_id,
        "issue_id": session.issue_id,
        "status": session.status.value,
        "progress": session.progress,
        "applied": change.applied,
    }
