# domain/models/work_item.py
from dataclasses import dataclass, field
from typing import Optional, Tuple
from datetime import datetime
from enum import Enum

class TaskType(str, Enum):
    BUG_FIX = "bug_fix"
    FEATURE = "feature"
    REFACTOR = "refactor"
    DOCUMENTATION = "documentation"
    TEST = "test"
    INVESTIGATION = "investigation"
    OTHER = "other"

class Complexity(str, Enum):
    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"

class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class DelegationStrategy(str, Enum):
    NONE = "none"
    DIRECT = "direct"
    REVIEW_FIRST = "review_first"
    SPLIT = "split"
    PARALLEL = "parallel"

@dataclass(frozen=True)
class WorkItem:
    """Immutable view of one issue event, consumed once by classification"""
    issue_id: str
    title: str
    description: str
    labels: Tuple[str, ...] = ()
    priority_hint: Optional[Priority] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    identifier: Optional[str] = None
    assignee: Optional[str] = None

    @property
    def text(self) -> str:
        return f"{self.title or ''}\n{self.description or ''}".strip()

@dataclass(frozen=True)
class Classification:
    """Immutable classifier verdict for a work item"""
    task_type: TaskType
    complexity: Complexity
    priority: Priority
    complexity_score: int
    confidence: float
    cross_cutting: bool = False
    checklist_items: Tuple[str, ...] = ()
    parallel_requested: bool = False
    keywords: Tuple[str, ...] = ()

    @property
    def has_multi_part_signal(self) -> bool:
        return len(self.checklist_items) >= 2

@dataclass(frozen=True)
class DelegationDecision:
    """Immutable go/no-go verdict produced once per work item"""
    should_delegate: bool
    strategy: DelegationStrategy
    reason: str
    estimated_duration: str
    complexity_score: int
    requires_review: bool = False

@dataclass(frozen=True)
class DelegateTaskSpec:
    """Immutable request sent to the execution delegate"""
    issue_id: str
    session_id: str
    title: str
    prompt: str
    strategy: DelegationStrategy
    priority: Priority
    labels: Tuple[str, ...]
    branch_name: str
    require_review: bool
    timeout_seconds: int
    auto_merge: bool = False
    create_pr: bool = True
    callback_url: Optional[str] = None

_TRACKER_PRIORITY_NAMES = {
    "urgent": Priority.CRITICAL,
    "critical": Priority.CRITICAL,
    "high": Priority.HIGH,
    "medium": Priority.MEDIUM,
    "normal": Priority.MEDIUM,
    "low": Priority.LOW,
}

def priority_from_tracker(value) -> Optional[Priority]:
    """Map a tracker priority (1 urgent .. 4 low, 0 none, or a name) to a hint"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return {1: Priority.CRITICAL, 2: Priority.HIGH, 3: Priority.MEDIUM, 4: Priority.LOW}.get(value)
    text = str(value).strip().lower()
    if text.isdigit():
        return priority_from_tracker(int(text))
    return _TRACKER_PRIORITY_NAMES.get(text)
