# infrastructure/storage/postgres_session_persistence.py
import json
from typing import Any, Dict, List, Optional

import asyncpg

from domain.models.task_session import SessionError, SessionResult, SessionStatus, TaskSession
from domain.models.work_item import DelegationStrategy
from shared.logging import logger


class PostgresSessionPersistence:
    """asyncpg-backed durable copy of the session store"""

    def __init__(self, database_url: Optional[str] = None, pool: Optional[asyncpg.Pool] = None):
        self.database_url = database_url
        self.connection_pool: Optional[asyncpg.Pool] = pool
        self._owns_pool = pool is None

    async def initialize(self):
        """Create the connection pool and the session table"""
        if self.connection_pool is None:
            self.connection_pool = await asyncpg.create_pool(
                self.database_url,
                min_size=2,
                max_size=10,
                command_timeout=60
            )
        await self._create_tables()

    async def _create_tables(self):
        async with self.connection_pool.acquire() as conn:
            await conn.execute("""
                CREATE TABLE IF NOT EXISTS task_sessions (
                    session_id VARCHAR(36) PRIMARY KEY,
                    issue_id VARCHAR(200) NOT NULL,
                    delegate_task_id VARCHAR(200) UNIQUE,
                    strategy VARCHAR(20) NOT NULL,
                    status VARCHAR(20) NOT NULL,
                    progress INTEGER DEFAULT 0,
                    current_step TEXT,
                    result JSONB,
                    error JSONB,
                    metadata JSONB DEFAULT '{}',
                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL,
                    started_at TIMESTAMP,
                    completed_at TIMESTAMP
                )
            """)
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_session_issue ON task_sessions(issue_id)")
            await conn.execute("CREATE INDEX IF NOT EXISTS idx_session_status ON task_sessions(status)")

    async def save(self, session: TaskSession) -> None:
        async with self.connection_pool.acquire() as conn:
            await conn.execute("""
                INSERT INTO task_sessions
                (session_id, issue_id, delegate_task_id, strategy, status, progress,
                 current_step, result, error, metadata, created_at, updated_at,
                 started_at, completed_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (session_id) DO UPDATE SET
                delegate_task_id = $3, status = $5, progress = $6, current_step = $7,
                result = $8, error = $9, metadata = $10, updated_at = $12,
                started_at = $13, completed_at = $14
            """, *session_to_record(session))

    async def delete(self, session_id: str) -> None:
        async with self.connection_pool.acquire() as conn:
            await conn.execute("DELETE FROM task_sessions WHERE session_id = $1", session_id)

    async def load_all(self) -> List[TaskSession]:
        async with self.connection_pool.acquire() as conn:
            rows = await conn.fetch("SELECT * FROM task_sessions ORDER BY created_at")

        sessions = []
        for row in rows:
            try:
                sessions.append(record_to_session(row))
            except (KeyError, ValueError) as e:
                logger.error("Skipping unreadable session row",
                             session_id=row["session_id"], error=str(e))
        return sessions

    async def close(self):
        if self.connection_pool and self._owns_pool:
            await self.connection_pool.close()
            logger.info("Database connection pool closed")


def session_to_record(session: TaskSession) -> tuple:
    result = None
    if session.result is not None:
        result = json.dumps({
            "artifact_url": session.result.artifact_url,
            "files_changed": session.result.files_changed,
            "summary": session.result.summary,
        })
    error = None
    if session.error is not None:
        error = json.dumps({
            "message": session.error.message,
            "error_class": session.error.error_class,
        })

    return (
        session.session_id,
        session.issue_id,
        session.delegate_task_id,
        session.strategy.value,
        session.status.value,
        session.progress,
        session.current_step,
        result,
        error,
        json.dumps(session.metadata, default=str),
        session.created_at,
        session.updated_at,
        session.started_at,
        session.completed_at,
    )


def _load_json(value: Any) -> Optional[Dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return dict(value)


def record_to_session(row: Any) -> TaskSession:
    result = _load_json(row["result"])
    error = _load_json(row["error"])
    return TaskSession(
        session_id=row["session_id"],
        issue_id=row["issue_id"],
        strategy=DelegationStrategy(row["strategy"]),
        status=SessionStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        delegate_task_id=row["delegate_task_id"],
        progress=row["progress"] or 0,
        current_step=row["current_step"],
        result=SessionResult(**result) if result else None,
        error=SessionError(**error) if error else None,
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        metadata=_load_json(row["metadata"]) or {},
    )
