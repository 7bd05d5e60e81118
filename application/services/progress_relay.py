# application/services/progress_relay.py
import asyncio
from collections import Counter
from typing import Dict, Optional, Sequence, Set

from domain.errors import NotFoundError, UpstreamError
from domain.models.task_session import SessionChange, SessionStatus, TaskSession
from domain.models.webhook_events import (
    TaskCompletedCallback,
    TaskFailedCallback,
    TaskProgressCallback,
    TaskStartedCallback,
)
from domain.models.work_item import DelegateTaskSpec, DelegationDecision, WorkItem
from infrastructure.clients.issue_tracker import IssueTracker
from infrastructure.resilience.retry import RetryExhaustedError, RetryPolicy
from infrastructure.storage.session_store import TaskSessionStore
from shared.logging import logger, log_relay_delivery

DEFAULT_MILESTONES = (25, 50, 75, 100)

# Appended to every comment so intake can recognise its own echoes
COMMENT_MARKER = "<!-- delegation-coordinator -->"


def _progress_line(session: TaskSession) -> str:
    step = f": {session.current_step}" if session.current_step else ""
    return f"Progress {session.progress}%{step}"


class ProgressRelay:
    """Maps delegate callbacks onto session mutations and reports them on the issue.

    The session store is updated first; the tracker update is queued as a
    background delivery so a slow or failing tracker never holds up a
    callback. Deliveries for one issue are sent in the order they were queued.
    """

    def __init__(self,
                 store: TaskSessionStore,
                 tracker: IssueTracker,
                 retry_policy: Optional[RetryPolicy] = None,
                 milestones: Sequence[int] = DEFAULT_MILESTONES,
                 completed_state_id: Optional[str] = None,
                 failed_state_id: Optional[str] = None):
        self.store = store
        self.tracker = tracker
        self.retry_policy = retry_policy or RetryPolicy()
        self.milestones = tuple(sorted(milestones))
        self.completed_state_id = completed_state_id
        self.failed_state_id = failed_state_id
        self.counters: Counter = Counter()
        self._tasks: Set[asyncio.Task] = set()
        self._issue_locks: Dict[str, asyncio.Lock] = {}
        self._pending: Counter = Counter()

    async def handle_callback(self, event) -> SessionChange:
        try:
            session = self.store.lookup_by_delegate_id(event.task_id)
        except NotFoundError:
            logger.warning("Callback for unknown delegate task",
                           delegate_task_id=event.task_id, event_type=event.type)
            raise

        if isinstance(event, TaskStartedCallback):
            change = await self.store.advance(session.session_id, None, event.step)
        elif isinstance(event, TaskProgressCallback):
            change = await self.store.advance(session.session_id, event.progress, event.step)
        elif isinstance(event, TaskCompletedCallback):
            change = await self.store.complete(session.session_id, event.result.to_domain())
        elif isinstance(event, TaskFailedCallback):
            change = await self.store.fail(session.session_id, event.error.to_domain())
        else:
            raise TypeError(f"Unsupported delegate callback: {type(event).__name__}")

        self.counters[f"callback_{event.type}"] += 1
        self.announce(change)
        return change

    def announce(self, change: SessionChange):
        """Queue the tracker update for an externally meaningful transition"""
        if not change.applied:
            return
        session = change.session

        if change.accepted:
            self._enqueue(session.issue_id, "accepted",
                          f"The delegated agent accepted this issue and started work "
                          f"(task `{session.delegate_task_id}`).")

        crossed = change.milestones_crossed(self.milestones)
        if crossed:
            self._enqueue(session.issue_id, f"progress_{crossed[-1]}", _progress_line(session))

        if change.status_changed and session.status == SessionStatus.COMPLETED:
            self._enqueue(session.issue_id, "completed", self._completion_text(session),
                          self.completed_state_id)
        elif change.status_changed and session.status == SessionStatus.FAILED:
            self._enqueue(session.issue_id, "failed", self._failure_text(session),
                          self.failed_state_id)

    # Notifications raised outside the callback path

    def notify_cancelled(self, session: TaskSession):
        self._enqueue(session.issue_id, "cancelled",
                      f"Delegated work was cancelled at {session.progress}% progress.")

    def notify_not_delegated(self, work_item: WorkItem, decision: DelegationDecision):
        self._enqueue(work_item.issue_id, "not_delegated",
                      f"Not delegated: {decision.reason}. "
                      f"Estimated effort: {decision.estimated_duration}.")

    def notify_already_active(self, work_item: WorkItem, active: TaskSession):
        self._enqueue(work_item.issue_id, "not_delegated",
                      f"Not delegated: session {active.session_id} is already "
                      f"{active.status.value} for this issue.")

    def notify_delegated(self, session: TaskSession, decision: DelegationDecision,
                         spec: DelegateTaskSpec):
        review = " Human review is required before merge." if spec.require_review else ""
        self._enqueue(session.issue_id, "delegated",
                      f"Delegated with strategy `{decision.strategy.value}` on branch "
                      f"`{spec.branch_name}`. Estimated duration: "
                      f"{decision.estimated_duration}.{review}")

    def notify_delegation_failed(self, session: TaskSession, error: str):
        self._enqueue(session.issue_id, "delegation_failed",
                      f"Delegation failed before the agent started: {error}",
                      self.failed_state_id)

    # Delivery

    async def drain(self):
        """Wait for every queued delivery to finish"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def pending_deliveries(self) -> int:
        return len(self._tasks)

    def _enqueue(self, issue_id: str, notification: str, body: str,
                 state_id: Optional[str] = None):
        self._pending[issue_id] += 1
        task = asyncio.create_task(self._deliver(issue_id, notification, body, state_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, issue_id: str, notification: str, body: str,
                       state_id: Optional[str]):
        lock = self._issue_locks.setdefault(issue_id, asyncio.Lock())
        attempts = 0

        async def send():
            nonlocal attempts
            attempts += 1
            await self.tracker.post_comment(issue_id, f"{body}\n\n{COMMENT_MARKER}")

        try:
            async with lock:
                await self.retry_policy.run(send, f"comment:{notification}")
                if state_id:
                    await self.retry_policy.run(
                        lambda: self.tracker.transition_status(issue_id, state_id),
                        f"transition:{notification}")
            self.counters["delivered"] += 1
            log_relay_delivery(issue_id, notification, attempts, True)
        except RetryExhaustedError as e:
            self.counters["failed"] += 1
            log_relay_delivery(issue_id, notification, e.attempts, False, e.message)
        except UpstreamError as e:
            self.counters["failed"] += 1
            log_relay_delivery(issue_id, notification, attempts, False, e.message)
        except Exception as e:
            self.counters["failed"] += 1
            logger.error("Unexpected relay delivery error", issue_id=issue_id,
                         notification=notification, error=str(e))
        finally:
            self._pending[issue_id] -= 1
            if self._pending[issue_id] <= 0:
                del self._pending[issue_id]
                self._issue_locks.pop(issue_id, None)

    def _completion_text(self, session: TaskSession) -> str:
        result = session.result
        lines = ["Delegated work completed."]
        if result is not None:
            if result.artifact_url:
                lines.append(f"Artifact: {result.artifact_url}")
            lines.append(f"Files changed: {result.files_changed}")
            if result.summary:
                lines.append(result.summary)
        return "\n".join(lines)

    def _failure_text(self, session: TaskSession) -> str:
        error = session.error
        if error is None:
            return "Delegated work failed."
        kind = f" ({error.error_class})" if error.error_class else ""
        return f"Delegated work failed{kind}: {error.message}"
