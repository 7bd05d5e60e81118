# domain/models/task_session.py
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Sequence
from datetime import datetime
from enum import Enum

from domain.models.work_item import DelegationStrategy

class SessionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (SessionStatus.CREATED, SessionStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        return not self.is_active

@dataclass(frozen=True)
class SessionResult:
    """Artifact produced by a completed delegated task"""
    artifact_url: Optional[str] = None
    files_changed: int = 0
    summary: Optional[str] = None

@dataclass(frozen=True)
class SessionError:
    """Failure reported by the delegate or raised while dispatching"""
    message: str
    error_class: Optional[str] = None

@dataclass(frozen=True)
class TaskSession:
    """Immutable snapshot of one issue-to-delegated-task correlation.

    The session store replaces the snapshot on every mutation, so a value
    handed out by the store never changes underneath its holder.
    """
    session_id: str
    issue_id: str
    strategy: DelegationStrategy
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    delegate_task_id: Optional[str] = None
    progress: int = 0
    current_step: Optional[str] = None
    result: Optional[SessionResult] = None
    error: Optional[SessionError] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.status.is_active

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

@dataclass(frozen=True)
class SessionChange:
    """Outcome of one store mutation, computed under the session lock"""
    session: TaskSession
    previous: TaskSession
    applied: bool

    @property
    def status_changed(self) -> bool:
        return self.session.status != self.previous.status

    @property
    def accepted(self) -> bool:
        return (self.previous.status == SessionStatus.CREATED
                and self.session.status == SessionStatus.RUNNING)

    def milestones_crossed(self, milestones: Sequence[int]) -> List[int]:
        if self.session.status != SessionStatus.RUNNING:
            return []
        return [m for m in milestones
                if self.previous.progress < m <= self.session.progress]
