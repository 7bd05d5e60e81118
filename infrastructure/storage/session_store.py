# infrastructure/storage/session_store.py
import asyncio
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Protocol

from domain.errors import (
    CapacityError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SessionIntegrityError,
)
from domain.models.task_session import (
    SessionChange,
    SessionError,
    SessionResult,
    SessionStatus,
    TaskSession,
)
from domain.models.work_item import DelegationStrategy
from shared.logging import logger, log_session_transition


class SessionPersistence(Protocol):
    """Durable backing for the session store"""

    async def save(self, session: TaskSession) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def load_all(self) -> List[TaskSession]: ...


class TaskSessionStore:
    """Single owner of task sessions and their issue / delegate-task indexes.

    Sessions are immutable snapshots; every mutation swaps in a new snapshot
    under that session's lock. Index changes happen without suspending, so the
    one-active-session-per-issue check and the insert cannot interleave.
    """

    def __init__(self, persistence: Optional[SessionPersistence] = None,
                 clock: Callable[[], datetime] = datetime.utcnow):
        self.persistence = persistence
        self._clock = clock
        self._sessions: Dict[str, TaskSession] = {}
        self._by_issue: Dict[str, str] = {}
        self._by_delegate: Dict[str, str] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def initialize(self):
        """Rebuild the in-memory indexes from persistence"""
        if self.persistence is None:
            return

        sessions = await self.persistence.load_all()
        for session in sorted(sessions, key=lambda s: s.created_at):
            self._sessions[session.session_id] = session
            self._locks[session.session_id] = asyncio.Lock()
            current = self._sessions.get(self._by_issue.get(session.issue_id, ""))
            if current is None or not current.is_active:
                self._by_issue[session.issue_id] = session.session_id
            if session.delegate_task_id:
                self._by_delegate[session.delegate_task_id] = session.session_id

        logger.info("Session store loaded", sessions=len(self._sessions),
                    active=self.active_count())

    # Creation and identity binding

    async def create(self, issue_id: str, strategy: DelegationStrategy,
                     metadata: Optional[Dict[str, Any]] = None,
                     max_active: Optional[int] = None) -> TaskSession:
        existing = self.find_active_for_issue(issue_id)
        if existing is not None:
            raise ConflictError(
                f"Issue {issue_id} already has active session {existing.session_id}")
        if max_active is not None and self.active_count() >= max_active:
            raise CapacityError(
                f"capacity reached: {self.active_count()} of {max_active} sessions in flight")

        now = self._clock()
        session = TaskSession(
            session_id=str(uuid.uuid4()),
            issue_id=issue_id,
            strategy=strategy,
            status=SessionStatus.CREATED,
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        self._sessions[session.session_id] = session
        self._locks[session.session_id] = asyncio.Lock()
        self._by_issue[issue_id] = session.session_id

        log_session_transition(session.session_id, issue_id, "none",
                               SessionStatus.CREATED.value, 0)
        await self._persist(session)
        return session

    async def attach_delegate_id(self, session_id: str, delegate_task_id: str) -> TaskSession:
        async with self._lock_for(session_id):
            previous = self._require(session_id)
            if previous.delegate_task_id == delegate_task_id:
                return previous
            if previous.delegate_task_id is not None:
                logger.warning("Duplicate delegate dispatch detected",
                               session_id=session_id,
                               bound_task_id=previous.delegate_task_id,
                               new_task_id=delegate_task_id)
                raise ConflictError(
                    f"Session {session_id} is already bound to delegate task "
                    f"{previous.delegate_task_id}")

            owner = self._by_delegate.get(delegate_task_id)
            if owner is not None and owner != session_id:
                raise ConflictError(
                    f"Delegate task {delegate_task_id} is already bound to session {owner}")

            updated = replace(previous, delegate_task_id=delegate_task_id,
                              updated_at=self._clock())
            self._by_delegate[delegate_task_id] = session_id
            self._sessions[session_id] = updated

            logger.info("Delegate task attached", session_id=session_id,
                        delegate_task_id=delegate_task_id)
            await self._persist(updated)
            return updated

    # Lifecycle transitions

    async def advance(self, session_id: str, progress: Optional[int] = None,
                      step: Optional[str] = None) -> SessionChange:
        """Record acceptance or progress; late callbacks on terminal sessions are dropped"""

        def mutate(previous: TaskSession) -> TaskSession:
            if previous.is_terminal:
                logger.info("Dropping stale callback for terminal session",
                            session_id=session_id,
                            status=previous.status.value,
                            progress=progress,
                            step=step)
                return previous

            if progress is not None and progress < previous.progress:
                logger.info("Ignoring progress regression",
                            session_id=session_id,
                            current=previous.progress,
                            received=progress)
                if previous.status == SessionStatus.RUNNING:
                    return previous
                new_progress, new_step = previous.progress, previous.current_step
            else:
                new_progress = previous.progress if progress is None else min(max(progress, 0), 100)
                new_step = step if step is not None else previous.current_step

            if (previous.status == SessionStatus.RUNNING
                    and new_progress == previous.progress
                    and new_step == previous.current_step):
                return previous

            now = self._clock()
            return replace(previous,
                           status=SessionStatus.RUNNING,
                           progress=new_progress,
                           current_step=new_step,
                           started_at=previous.started_at or now,
                           updated_at=now)

        return await self._mutate(session_id, mutate)

    async def complete(self, session_id: str, result: SessionResult) -> SessionChange:
        def mutate(previous: TaskSession) -> TaskSession:
            if previous.status == SessionStatus.COMPLETED:
                if previous.result == result:
                    return previous
                self._log_anomaly(previous, "completed", "conflicting completion result")
                raise ConflictError(
                    f"Session {session_id} already completed with a different result")
            if previous.status == SessionStatus.FAILED:
                self._log_anomaly(previous, "completed", "completion after failure")
                raise ConflictError(f"Session {session_id} already failed")
            if previous.status == SessionStatus.CANCELLED:
                logger.info("Dropping completion for cancelled session", session_id=session_id)
                return previous

            now = self._clock()
            return replace(previous,
                           status=SessionStatus.COMPLETED,
                           progress=100,
                           result=result,
                           started_at=previous.started_at or now,
                           completed_at=now,
                           updated_at=now)

        return await self._mutate(session_id, mutate)

    async def fail(self, session_id: str, error: SessionError) -> SessionChange:
        def mutate(previous: TaskSession) -> TaskSession:
            if previous.status == SessionStatus.FAILED:
                if previous.error == error:
                    return previous
                self._log_anomaly(previous, "failed", "conflicting failure details")
                raise ConflictError(
                    f"Session {session_id} already failed with a different error")
            if previous.status == SessionStatus.COMPLETED:
                self._log_anomaly(previous, "failed", "failure after completion")
                raise ConflictError(f"Session {session_id} already completed")
            if previous.status == SessionStatus.CANCELLED:
                logger.info("Dropping failure for cancelled session", session_id=session_id)
                return previous

            now = self._clock()
            return replace(previous,
                           status=SessionStatus.FAILED,
                           error=error,
                           completed_at=now,
                           updated_at=now)

        return await self._mutate(session_id, mutate)

    async def cancel(self, session_id: str) -> SessionChange:
        def mutate(previous: TaskSession) -> TaskSession:
            if previous.is_terminal:
                raise InvalidStateError(
                    f"Session {session_id} is {previous.status.value} and cannot be cancelled")
            now = self._clock()
            return replace(previous,
                           status=SessionStatus.CANCELLED,
                           completed_at=now,
                           updated_at=now)

        return await self._mutate(session_id, mutate)

    # Lookups

    def get(self, session_id: str) -> TaskSession:
        return self._require(session_id)

    def lookup_by_issue(self, issue_id: str) -> TaskSession:
        session_id = self._by_issue.get(issue_id)
        if session_id is None:
            raise NotFoundError(f"No session for issue {issue_id}")
        session = self._sessions.get(session_id)
        if session is None or session.issue_id != issue_id:
            raise SessionIntegrityError(
                f"Issue index for {issue_id} points at missing or foreign session {session_id}")
        return session

    def lookup_by_delegate_id(self, delegate_task_id: str) -> TaskSession:
        session_id = self._by_delegate.get(delegate_task_id)
        if session_id is None:
            raise NotFoundError(f"No session for delegate task {delegate_task_id}")
        session = self._sessions.get(session_id)
        if session is None or session.delegate_task_id != delegate_task_id:
            raise SessionIntegrityError(
                f"Delegate index for {delegate_task_id} points at missing or "
                f"foreign session {session_id}")
        return session

    def find_active_for_issue(self, issue_id: str) -> Optional[TaskSession]:
        session = self._sessions.get(self._by_issue.get(issue_id, ""))
        if session is not None and session.is_active:
            return session
        return None

    def list_sessions(self, status: Optional[SessionStatus] = None) -> List[TaskSession]:
        sessions = [s for s in self._sessions.values() if status is None or s.status == status]
        return sorted(sessions, key=lambda s: s.created_at, reverse=True)

    def list_active(self) -> List[TaskSession]:
        return [s for s in self.list_sessions() if s.is_active]

    def active_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_active)

    def status_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status.value] += 1
        return counts

    # Maintenance

    async def sweep(self, retention: timedelta, now: Optional[datetime] = None) -> int:
        """Remove terminal sessions that finished more than ``retention`` ago"""
        cutoff = (now or self._clock()) - retention
        candidates = [s.session_id for s in self._sessions.values()
                      if s.is_terminal and (s.completed_at or s.updated_at) < cutoff]

        removed = 0
        for session_id in candidates:
            lock = self._locks.get(session_id)
            if lock is None:
                continue
            async with lock:
                session = self._sessions.get(session_id)
                if session is None or not session.is_terminal:
                    continue
                del self._sessions[session_id]
                if self._by_issue.get(session.issue_id) == session_id:
                    del self._by_issue[session.issue_id]
                if session.delegate_task_id and self._by_delegate.get(session.delegate_task_id) == session_id:
                    del self._by_delegate[session.delegate_task_id]
                self._locks.pop(session_id, None)
                removed += 1

            if self.persistence is not None:
                try:
                    await self.persistence.delete(session_id)
                except Exception as e:
                    logger.error("Failed to delete persisted session",
                                 session_id=session_id, error=str(e))

        if removed:
            logger.info("Swept expired sessions", count=removed,
                        retention_hours=retention.total_seconds() / 3600)
        return removed

    # Internals

    def _require(self, session_id: str) -> TaskSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session {session_id} not found")
        return session

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            raise NotFoundError(f"Session {session_id} not found")
        return lock

    async def _mutate(self, session_id: str,
                      mutator: Callable[[TaskSession], TaskSession]) -> SessionChange:
        async with self._lock_for(session_id):
            previous = self._require(session_id)
            updated = mutator(previous)
            if updated is previous:
                return SessionChange(session=previous, previous=previous, applied=False)

            self._sessions[session_id] = updated
            if updated.status != previous.status:
                log_session_transition(session_id, updated.issue_id,
                                       previous.status.value, updated.status.value,
                                       updated.progress, updated.delegate_task_id)
            await self._persist(updated)
            return SessionChange(session=updated, previous=previous, applied=True)

    async def _persist(self, session: TaskSession):
        if self.persistence is None:
            return
        try:
            await self.persistence.save(session)
        except Exception as e:
            logger.error("Failed to persist session",
                         session_id=session.session_id, error=str(e))

    def _log_anomaly(self, session: TaskSession, attempted: str, detail: str):
        logger.warning("Contradictory terminal transition rejected",
                       session_id=session.session_id,
                       issue_id=session.issue_id,
                       status=session.status.value,
                       attempted=attempted,
                       detail=detail)
