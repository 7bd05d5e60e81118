# tests/unit/infrastructure/storage/test_session_store.py
import asyncio
from dataclasses import replace
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from domain.errors import (
    CapacityError,
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SessionIntegrityError,
)
from domain.models.task_session import SessionError, SessionResult, SessionStatus
from domain.models.work_item import DelegationStrategy
from infrastructure.storage.session_store import TaskSessionStore


class Clock:
    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def mock_persistence():
    persistence = AsyncMock()
    persistence.load_all.return_value = []
    return persistence


async def delegated_session(store, issue_id="issue-1", task_id="task-1"):
    session = await store.create(issue_id, DelegationStrategy.DIRECT)
    return await store.attach_delegate_id(session.session_id, task_id)


class TestSessionCreation:

    @pytest.mark.asyncio
    async def test_create_session(self, clock):
        store = TaskSessionStore(clock=clock)

        session = await store.create("issue-1", DelegationStrategy.DIRECT, {"title": "Fix"})

        assert session.status == SessionStatus.CREATED
        assert session.progress == 0
        assert session.created_at == clock.now
        assert session.metadata == {"title": "Fix"}
        assert store.lookup_by_issue("issue-1") == session
        assert store.active_count() == 1

    @pytest.mark.asyncio
    async def test_one_active_session_per_issue(self):
        store = TaskSessionStore()
        await store.create("issue-1", DelegationStrategy.DIRECT)

        with pytest.raises(ConflictError):
            await store.create("issue-1", DelegationStrategy.SPLIT)

    @pytest.mark.asyncio
    async def test_new_session_allowed_after_terminal(self):
        store = TaskSessionStore()
        first = await delegated_session(store)
        await store.fail(first.session_id, SessionError("boom"))

        second = await store.create("issue-1", DelegationStrategy.DIRECT)

        assert second.session_id != first.session_id
        assert store.lookup_by_issue("issue-1").session_id == second.session_id
        assert store.lookup_by_delegate_id("task-1").session_id == first.session_id

    @pytest.mark.asyncio
    async def test_create_enforces_active_cap(self):
        store = TaskSessionStore()
        first = await store.create("issue-1", DelegationStrategy.DIRECT, max_active=2)
        await store.create("issue-2", DelegationStrategy.DIRECT, max_active=2)

        with pytest.raises(CapacityError, match="2 of 2"):
            await store.create("issue-3", DelegationStrategy.DIRECT, max_active=2)

        await store.cancel(first.session_id)
        third = await store.create("issue-3", DelegationStrategy.DIRECT, max_active=2)
        assert third.status == SessionStatus.CREATED


class TestDelegateBinding:

    @pytest.mark.asyncio
    async def test_attach_is_idempotent_for_same_id(self):
        store = TaskSessionStore()
        session = await delegated_session(store)

        again = await store.attach_delegate_id(session.session_id, "task-1")

        assert again == session

    @pytest.mark.asyncio
    async def test_attach_rejects_second_delegate_id(self):
        store = TaskSessionStore()
        session = await delegated_session(store)

        with pytest.raises(ConflictError):
            await store.attach_delegate_id(session.session_id, "task-2")

        assert store.get(session.session_id).delegate_task_id == "task-1"

    @pytest.mark.asyncio
    async def test_delegate_id_belongs_to_one_session(self):
        store = TaskSessionStore()
        await delegated_session(store, "issue-1", "task-1")
        other = await store.create("issue-2", DelegationStrategy.DIRECT)

        with pytest.raises(ConflictError):
            await store.attach_delegate_id(other.session_id, "task-1")

    @pytest.mark.asyncio
    async def test_unknown_lookups(self):
        store = TaskSessionStore()

        with pytest.raises(NotFoundError):
            store.lookup_by_delegate_id("nope")
        with pytest.raises(NotFoundError):
            store.lookup_by_issue("nope")
        with pytest.raises(NotFoundError):
            store.get("nope")
        with pytest.raises(NotFoundError):
            await store.advance("nope", 10)

    @pytest.mark.asyncio
    async def test_diverged_index_is_an_integrity_error(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        store._sessions[session.session_id] = replace(session, delegate_task_id="task-9")

        with pytest.raises(SessionIntegrityError):
            store.lookup_by_delegate_id("task-1")


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_full_progress_round_trip(self):
        store = TaskSessionStore()
        session = await delegated_session(store)

        for progress in (25, 50, 75):
            change = await store.advance(session.session_id, progress, f"step {progress}")
            assert change.applied is True

        running = store.get(session.session_id)
        assert running.status == SessionStatus.RUNNING
        assert running.progress == 75
        assert running.current_step == "step 75"
        assert running.started_at is not None

        change = await store.complete(session.session_id,
                                      SessionResult(artifact_url="https://git.example.com/pr/1"))

        assert change.session.status == SessionStatus.COMPLETED
        assert change.session.progress == 100
        assert change.session.completed_at is not None
        assert store.lookup_by_issue("issue-1") == change.session
        assert store.lookup_by_delegate_id("task-1") == change.session
        assert store.active_count() == 0

    @pytest.mark.asyncio
    async def test_started_without_progress(self):
        store = TaskSessionStore()
        session = await delegated_session(store)

        change = await store.advance(session.session_id, None, "cloning")

        assert change.accepted is True
        assert change.session.progress == 0
        assert change.session.current_step == "cloning"

    @pytest.mark.asyncio
    async def test_progress_never_regresses(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.advance(session.session_id, 60)

        change = await store.advance(session.session_id, 40, "late")

        assert change.applied is False
        assert store.get(session.session_id).progress == 60

    @pytest.mark.asyncio
    async def test_concurrent_progress_keeps_maximum(self):
        store = TaskSessionStore()
        session = await delegated_session(store)

        await asyncio.gather(*[store.advance(session.session_id, p)
                               for p in (30, 90, 10, 60, 45)])

        assert store.get(session.session_id).progress == 90

    @pytest.mark.asyncio
    async def test_late_callbacks_on_terminal_session_are_dropped(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.complete(session.session_id, SessionResult(files_changed=2))

        change = await store.advance(session.session_id, 50, "late")

        assert change.applied is False
        assert store.get(session.session_id).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_repeated_completion_is_a_no_op(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        result = SessionResult(files_changed=2)
        await store.complete(session.session_id, result)

        change = await store.complete(session.session_id, result)

        assert change.applied is False

    @pytest.mark.asyncio
    async def test_conflicting_completion_rejected(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.complete(session.session_id, SessionResult(files_changed=2))

        with pytest.raises(ConflictError):
            await store.complete(session.session_id, SessionResult(files_changed=5))

    @pytest.mark.asyncio
    async def test_failure_after_completion_rejected(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.complete(session.session_id, SessionResult())

        with pytest.raises(ConflictError):
            await store.fail(session.session_id, SessionError("late failure"))

        assert store.get(session.session_id).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_completion_after_failure_rejected(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.fail(session.session_id, SessionError("boom", "runtime"))

        with pytest.raises(ConflictError):
            await store.complete(session.session_id, SessionResult())

        again = await store.fail(session.session_id, SessionError("boom", "runtime"))
        assert again.applied is False

    @pytest.mark.asyncio
    async def test_cancel_active_session(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.advance(session.session_id, 30)

        change = await store.cancel(session.session_id)

        assert change.session.status == SessionStatus.CANCELLED
        assert change.session.progress == 30
        assert store.find_active_for_issue("issue-1") is None

    @pytest.mark.asyncio
    async def test_cancel_terminal_session_rejected(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.cancel(session.session_id)

        with pytest.raises(InvalidStateError):
            await store.cancel(session.session_id)

    @pytest.mark.asyncio
    async def test_callbacks_after_cancel_are_ignored(self):
        store = TaskSessionStore()
        session = await delegated_session(store)
        await store.cancel(session.session_id)

        completed = await store.complete(session.session_id, SessionResult())
        failed = await store.fail(session.session_id, SessionError("boom"))

        assert completed.applied is False
        assert failed.applied is False
        assert store.get(session.session_id).status == SessionStatus.CANCELLED


class TestListingAndSweep:

    @pytest.mark.asyncio
    async def test_listing_newest_first(self, clock):
        store = TaskSessionStore(clock=clock)
        first = await store.create("issue-1", DelegationStrategy.DIRECT)
        clock.advance(minutes=1)
        second = await store.create("issue-2", DelegationStrategy.DIRECT)
        await store.cancel(first.session_id)

        assert [s.session_id for s in store.list_sessions()] == [second.session_id, first.session_id]
        assert [s.session_id for s in store.list_active()] == [second.session_id]
        assert store.status_counts()["cancelled"] == 1
        assert store.status_counts()["created"] == 1

    @pytest.mark.asyncio
    async def test_sweep_removes_expired_terminal_sessions(self, clock, mock_persistence):
        store = TaskSessionStore(mock_persistence, clock=clock)
        done = await delegated_session(store, "issue-1", "task-1")
        await store.complete(done.session_id, SessionResult())
        running = await delegated_session(store, "issue-2", "task-2")

        clock.advance(hours=25)
        removed = await store.sweep(timedelta(hours=24))

        assert removed == 1
        assert store.get(running.session_id).is_active
        with pytest.raises(NotFoundError):
            store.lookup_by_delegate_id("task-1")
        mock_persistence.delete.assert_awaited_once_with(done.session_id)

    @pytest.mark.asyncio
    async def test_sweep_keeps_recent_sessions(self, clock):
        store = TaskSessionStore(clock=clock)
        session = await delegated_session(store)
        await store.complete(session.session_id, SessionResult())

        clock.advance(hours=1)

        assert await store.sweep(timedelta(hours=24)) == 0


class TestPersistence:

    @pytest.mark.asyncio
    async def test_every_mutation_is_saved(self, mock_persistence):
        store = TaskSessionStore(mock_persistence)
        session = await delegated_session(store)
        await store.advance(session.session_id, 50)

        saved = [c.args[0] for c in mock_persistence.save.await_args_list]
        assert [s.status for s in saved] == [SessionStatus.CREATED, SessionStatus.CREATED,
                                             SessionStatus.RUNNING]

    @pytest.mark.asyncio
    async def test_persistence_failure_does_not_break_transition(self, mock_persistence):
        mock_persistence.save.side_effect = OSError("disk full")
        store = TaskSessionStore(mock_persistence)

        session = await store.create("issue-1", DelegationStrategy.DIRECT)

        assert store.get(session.session_id).status == SessionStatus.CREATED

    @pytest.mark.asyncio
    async def test_initialize_rebuilds_indexes(self, mock_persistence):
        source = TaskSessionStore()
        old = await delegated_session(source, "issue-1", "task-1")
        await source.fail(old.session_id, SessionError("boom"))
        current = await delegated_session(source, "issue-1", "task-2")
        mock_persistence.load_all.return_value = source.list_sessions()

        store = TaskSessionStore(mock_persistence)
        await store.initialize()

        assert store.find_active_for_issue("issue-1").session_id == current.session_id
        assert store.lookup_by_delegate_id("task-1").session_id == old.session_id
        assert store.active_count() == 1
        await store.advance(current.session_id, 10)
