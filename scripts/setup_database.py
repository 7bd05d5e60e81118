# scripts/setup_database.py
"""
Database setup script for the delegation coordinator.
Creates the task session table and verifies it round-trips a session.
"""

import asyncio
import os
import sys
from datetime import datetime
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import asyncpg
from domain.models.task_session import SessionStatus, TaskSession
from domain.models.work_item import DelegationStrategy
from infrastructure.storage.postgres_session_persistence import PostgresSessionPersistence
from shared.logging import logger, setup_logging

async def create_database_if_not_exists(admin_url: str, database_name: str):
    """Create database if it doesn't exist"""
    try:
        admin_conn = await asyncpg.connect(admin_url)

        db_exists = await admin_conn.fetchval(
            "SELECT 1 FROM pg_database WHERE datname = $1", database_name
        )

        if not db_exists:
            await admin_conn.execute(f'CREATE DATABASE "{database_name}"')
            logger.info("Created database", database=database_name)
        else:
            logger.info("Database already exists", database=database_name)

        await admin_conn.close()

    except Exception as e:
        logger.error("Failed to create database", error=str(e))
        raise

async def setup_tables(persistence: PostgresSessionPersistence):
    """Create the session table, indexes and constraints"""
    logger.info("Creating database tables...")
    await persistence.initialize()
    logger.info("✓ Created task_sessions table and indexes")

    async with persistence.connection_pool.acquire() as conn:
        await conn.execute("""
            DO $$
            BEGIN
                IF NOT EXISTS (
                    SELECT 1 FROM pg_constraint WHERE conname = 'chk_session_status'
                ) THEN
                    ALTER TABLE task_sessions
                    ADD CONSTRAINT chk_session_status
                    CHECK (status IN ('created', 'running', 'completed', 'failed', 'cancelled'));
                END IF;
                IF NOT EXISTS (
                    SELECT 1 FROM pg_constraint WHERE conname = 'chk_session_progress'
                ) THEN
                    ALTER TABLE task_sessions
                    ADD CONSTRAINT chk_session_progress
                    CHECK (progress BETWEEN 0 AND 100);
                END IF;
            END
            $$
        """)
    logger.info("✓ Added data constraints")

async def verify_setup(persistence: PostgresSessionPersistence):
    """Write, read back and delete a check session"""
    logger.info("Verifying database setup...")

    now = datetime.utcnow()
    check_session = TaskSession(
        session_id="00000000-0000-0000-0000-setupverify0",
        issue_id="setup-verification",
        strategy=DelegationStrategy.DIRECT,
        status=SessionStatus.CREATED,
        created_at=now,
        updated_at=now,
        metadata={"schema_check": True},
    )

    await persistence.save(check_session)
    try:
        loaded = {s.session_id: s for s in await persistence.load_all()}
        if check_session.session_id not in loaded:
            raise RuntimeError("Probe session was not read back")
        if loaded[check_session.session_id].metadata != {"schema_check": True}:
            raise RuntimeError("Probe session metadata did not round-trip")
    finally:
        await persistence.delete(check_session.session_id)

    logger.info("✓ Basic session operations working")

async def main():
    """Main setup function"""
    setup_logging(level="INFO", json_logs=False)

    logger.info("Starting delegation coordinator database setup")

    database_url = os.getenv("DATABASE_URL")

    if not database_url:
        # Default local development setup
        host = os.getenv("DB_HOST", "localhost")
        port = os.getenv("DB_PORT", "5432")
        user = os.getenv("DB_USER", "postgres")
        password = os.getenv("DB_PASSWORD", "postgres")
        database = os.getenv("DB_NAME", "delegation_coordinator")

        database_url = f"postgresql://{user}:{password}@{host}:{port}/{database}"
        admin_url = f"postgresql://{user}:{password}@{host}:{port}/postgres"

        logger.info("Using database", host=host, port=port, database=database)

        try:
            await create_database_if_not_exists(admin_url, database)
        except Exception as e:
            logger.warning("Could not create database (may already exist)", error=str(e))

    persistence = PostgresSessionPersistence(database_url)
    try:
        await setup_tables(persistence)
        await verify_setup(persistence)
        logger.info("Database setup completed successfully")

    except Exception as e:
        logger.error("Database setup failed", error=str(e))
        sys.exit(1)
    finally:
        await persistence.close()

if __name__ == "__main__":
    asyncio.run(main())
