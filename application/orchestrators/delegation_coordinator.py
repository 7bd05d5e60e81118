# application/orchestrators/delegation_coordinator.py
from collections import Counter
from dataclasses import replace
from typing import Any, Dict, Optional

from application.services.decision_engine import DecisionEngine
from application.services.progress_relay import COMMENT_MARKER, ProgressRelay
from application.services.task_classifier import TaskClassifier
from application.services.task_spec_builder import TaskSpecBuilder
from domain.errors import CapacityError, ConflictError, UpstreamError
from domain.models.task_session import SessionError, SessionStatus, TaskSession
from domain.models.webhook_events import IssueEventType, IssueWebhookEnvelope
from domain.models.work_item import WorkItem, priority_from_tracker
from infrastructure.clients.execution_delegate import ExecutionDelegate
from infrastructure.clients.issue_tracker import IssueTracker
from infrastructure.storage.session_store import TaskSessionStore
from shared.logging import logger, log_delegation_decision


class DelegationCoordinator:
    """Drives an issue event from intake to a dispatched delegate task.

    Classification and the decision are computed in memory; the only
    suspension points are the tracker lookup for comment events and the
    delegate dispatch.
    """

    def __init__(self,
                 store: TaskSessionStore,
                 classifier: TaskClassifier,
                 engine: DecisionEngine,
                 spec_builder: TaskSpecBuilder,
                 delegate: ExecutionDelegate,
                 tracker: IssueTracker,
                 relay: ProgressRelay):
        self.store = store
        self.classifier = classifier
        self.engine = engine
        self.spec_builder = spec_builder
        self.delegate = delegate
        self.tracker = tracker
        self.relay = relay
        self.counters: Counter = Counter()

    async def handle_issue_event(self, envelope: IssueWebhookEnvelope) -> Dict[str, Any]:
        if envelope.action == "remove":
            self.counters["ignored"] += 1
            return self._outcome("ignored", envelope.data.id, reason="remove action")

        if envelope.type == IssueEventType.COMMENT and COMMENT_MARKER in (envelope.data.body or ""):
            self.counters["ignored"] += 1
            return self._outcome("ignored", envelope.data.issue_id, reason="own comment")

        work_item = await self._work_item_for(envelope)
        # Explicit requests always get an answer; issue edits only when something changes
        explicit = envelope.action == "create" or envelope.type == IssueEventType.COMMENT

        active = self.store.find_active_for_issue(work_item.issue_id)
        if active is not None:
            return self._already_active(work_item, active, explicit)

        classification = self.classifier.classify(work_item)
        decision = self.engine.decide(classification, self.store.active_count())
        log_delegation_decision(work_item.issue_id, decision.should_delegate,
                                decision.strategy.value, decision.complexity_score,
                                decision.reason, classification.confidence)

        if not decision.should_delegate:
            self.counters["declined"] += 1
            if explicit:
                self.relay.notify_not_delegated(work_item, decision)
            return self._outcome("not_delegated", work_item.issue_id, reason=decision.reason,
                                 complexity_score=decision.complexity_score)

        try:
            session = await self.store.create(work_item.issue_id, decision.strategy, metadata={
                "identifier": work_item.identifier,
                "title": work_item.title,
                "task_type": classification.task_type.value,
                "complexity": classification.complexity.value,
                "complexity_score": classification.complexity_score,
                "priority": classification.priority.value,
                "confidence": classification.confidence,
                "estimated_duration": decision.estimated_duration,
            }, max_active=self.engine.policy.max_concurrency)
        except CapacityError as e:
            self.counters["declined"] += 1
            if explicit:
                self.relay.notify_not_delegated(work_item, replace(decision, should_delegate=False,
                                                                   reason=e.message))
            return self._outcome("not_delegated", work_item.issue_id, reason=e.message,
                                 complexity_score=decision.complexity_score)
        except ConflictError:
            active = self.store.find_active_for_issue(work_item.issue_id)
            if active is None:
                raise
            return self._already_active(work_item, active, explicit)

        spec = self.spec_builder.build(work_item, classification, decision, session)
        try:
            delegate_task_id = await self.delegate.create_task(spec)
        except UpstreamError as e:
            return await self._dispatch_failed(session, e)

        session = await self.store.attach_delegate_id(session.session_id, delegate_task_id)
        if session.is_terminal:
            # Cancelled while the dispatch was in flight
            logger.info("Session ended during dispatch, stopping delegate task",
                        issue_id=work_item.issue_id,
                        session_id=session.session_id,
                        delegate_task_id=delegate_task_id,
                        status=session.status.value)
            await self._cancel_downstream(session)
            return self._outcome(session.status.value, work_item.issue_id,
                                 session_id=session.session_id,
                                 delegate_task_id=delegate_task_id,
                                 reason="session ended during dispatch")

        self.counters["delegated"] += 1
        self.relay.notify_delegated(session, decision, spec)

        logger.info("Issue delegated",
                    issue_id=work_item.issue_id,
                    session_id=session.session_id,
                    delegate_task_id=delegate_task_id,
                    strategy=decision.strategy.value)
        return self._outcome("delegated", work_item.issue_id,
                             session_id=session.session_id,
                             delegate_task_id=delegate_task_id,
                             strategy=decision.strategy.value,
                             reason=decision.reason)

    async def cancel_session(self, session_id: str) -> TaskSession:
        """Cancel locally, then ask the delegate to stop on a best-effort basis"""
        change = await self.store.cancel(session_id)
        session = change.session
        self.counters["cancelled"] += 1
        self.relay.notify_cancelled(session)

        # Without a delegate id the dispatch is still pending; the dispatcher stops it
        if session.delegate_task_id:
            await self._cancel_downstream(session)
        return session

    def stats(self) -> Dict[str, Any]:
        completed = self.store.list_sessions(SessionStatus.COMPLETED)
        durations = [(s.completed_at - (s.started_at or s.created_at)).total_seconds()
                     for s in completed if s.completed_at]
        return {
            "sessions": self.store.status_counts(),
            "active": self.store.active_count(),
            "capacity": self.engine.policy.max_concurrency,
            "average_completion_seconds": round(sum(durations) / len(durations), 1) if durations else None,
            "delegation": dict(self.counters),
            "relay": dict(self.relay.counters),
        }

    async def _work_item_for(self, envelope: IssueWebhookEnvelope) -> WorkItem:
        data = envelope.data
        if envelope.type == IssueEventType.ISSUE:
            return WorkItem(
                issue_id=data.id,
                title=data.title or "",
                description=data.description or "",
                labels=tuple(data.labels),
                priority_hint=priority_from_tracker(data.priority),
                identifier=data.identifier,
                assignee=data.assignee,
            )

        issue = await self.tracker.get_issue(data.issue_id)
        description = "\n\n".join(part for part in (issue.description, data.body) if part)
        return replace(issue, description=description)

    def _already_active(self, work_item: WorkItem, active: TaskSession,
                        explicit: bool) -> Dict[str, Any]:
        self.counters["conflicts"] += 1
        logger.info("Issue already has an active session",
                    issue_id=work_item.issue_id,
                    session_id=active.session_id,
                    status=active.status.value)
        if explicit:
            self.relay.notify_already_active(work_item, active)
        return self._outcome("already_active", work_item.issue_id,
                             session_id=active.session_id,
                             reason=f"session {active.session_id} already {active.status.value}")

    async def _dispatch_failed(self, session: TaskSession, error: UpstreamError) -> Dict[str, Any]:
        self.counters["delegation_failures"] += 1
        logger.error("Delegate dispatch failed",
                     issue_id=session.issue_id,
                     session_id=session.session_id,
                     transient=error.transient,
                     error=error.message)
        change = await self.store.fail(session.session_id,
                                       SessionError(message=error.message,
                                                    error_class="delegation_failed"))
        if not change.applied:
            return self._outcome(change.session.status.value, session.issue_id,
                                 session_id=session.session_id, reason=error.message)

        self.relay.notify_delegation_failed(change.session, error.message)
        return self._outcome("delegation_failed", session.issue_id,
                             session_id=session.session_id, reason=error.message)

    async def _cancel_downstream(self, session: TaskSession):
        try:
            await self.delegate.cancel_task(session.delegate_task_id)
        except UpstreamError as e:
            logger.warning("Delegate cancellation not acknowledged",
                           session_id=session.session_id,
                           delegate_task_id=session.delegate_task_id,
                           error=e.message)

    @staticmethod
    def _outcome(status: str, issue_id: Optional[str], **details: Any) -> Dict[str, Any]:
        outcome = {"status": status, "issue_id": issue_id}
        outcome.update(details)
        return outcome
