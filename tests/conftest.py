# tests/conftest.py
from typing import Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

import pytest

from application.orchestrators.delegation_coordinator import DelegationCoordinator
from application.services.decision_engine import DecisionEngine, DelegationPolicy
from application.services.progress_relay import ProgressRelay
from application.services.task_classifier import TaskClassifier
from application.services.task_spec_builder import TaskSpecBuilder
from domain.errors import NotFoundError
from domain.models.work_item import DelegateTaskSpec, WorkItem
from infrastructure.resilience.retry import RetryPolicy
from infrastructure.storage.session_store import TaskSessionStore


class FakeIssueTracker:
    """In-memory tracker; queued errors are raised by the next comment calls"""

    def __init__(self, issues: Optional[Dict[str, WorkItem]] = None):
        self.issues = dict(issues or {})
        self.comments: List[Tuple[str, str]] = []
        self.transitions: List[Tuple[str, str]] = []
        self.comment_errors: List[Exception] = []
        self.comment_attempts = 0

    async def get_issue(self, issue_id: str) -> WorkItem:
        if issue_id not in self.issues:
            raise NotFoundError(f"Issue {issue_id} not found in tracker")
        return self.issues[issue_id]

    async def post_comment(self, issue_id: str, body: str) -> None:
        self.comment_attempts += 1
        if self.comment_errors:
            raise self.comment_errors.pop(0)
        self.comments.append((issue_id, body))

    async def transition_status(self, issue_id: str, state_id: str) -> None:
        self.transitions.append((issue_id, state_id))

    def comments_for(self, issue_id: str) -> List[str]:
        return [body for target, body in self.comments if target == issue_id]


class FakeExecutionDelegate:
    def __init__(self):
        self.created: List[DelegateTaskSpec] = []
        self.cancelled: List[str] = []
        self.create_error: Optional[Exception] = None
        self.cancel_error: Optional[Exception] = None

    async def create_task(self, spec: DelegateTaskSpec) -> str:
        if self.create_error is not None:
            raise self.create_error
        self.created.append(spec)
        return f"task-{len(self.created)}"

    async def cancel_task(self, delegate_task_id: str) -> None:
        if self.cancel_error is not None:
            raise self.cancel_error
        self.cancelled.append(delegate_task_id)


@pytest.fixture
def tracker():
    return FakeIssueTracker()


@pytest.fixture
def delegate():
    return FakeExecutionDelegate()


@pytest.fixture
def store():
    return TaskSessionStore()


@pytest.fixture
def instant_retry():
    """Retry policy that never actually sleeps"""
    return RetryPolicy(max_attempts=3, base_delay=0.5, max_delay=4.0, sleep=AsyncMock())


@pytest.fixture
def relay(store, tracker, instant_retry):
    return ProgressRelay(store, tracker, retry_policy=instant_retry,
                         completed_state_id="state-done", failed_state_id="state-failed")


@pytest.fixture
def coordinator(store, tracker, delegate, relay):
    return DelegationCoordinator(
        store=store,
        classifier=TaskClassifier(),
        engine=DecisionEngine(DelegationPolicy(threshold=6, max_concurrency=5)),
        spec_builder=TaskSpecBuilder("https://coordinator.example.com/webhooks/delegate"),
        delegate=delegate,
        tracker=tracker,
        relay=relay,
    )
