"""
Database migration system for the Picross service.
Handles schema changes and index creation.
"""

from sqlmodel import SQLModel, Field, create_engine, text, Session, select
from typing import Optional
from datetime import datetime

from . import config
from .clock import utcnow
from .logging_utils import get_logger

logger = get_logger("picross.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime


def get_engine():
    connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
    return create_engine(config.DATABASE_URL, echo=False, connect_args=connect_args)


def ensure_migration_table(engine):
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine, migration_name: str) -> bool:
    ensure_migration_table(engine)
    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def apply_migration(engine, migration_name: str, migration_sql: str):
    """Apply a migration and record it"""
    if has_migration_been_applied(engine, migration_name):
        logger.info(f"Migration {migration_name} already applied, skipping")
        return

    logger.info(f"Applying migration: {migration_name}")

    with Session(engine) as session:
        try:
            for statement in migration_sql.strip().split(';'):
                statement = statement.strip()
                if statement:
                    session.execute(text(statement))

            session.add(Migration(name=migration_name, applied_at=utcnow()))
            session.commit()
            logger.info(f"Migration {migration_name} applied successfully")

        except Exception as e:
            session.rollback()
            logger.error(f"Failed to apply migration {migration_name}: {e}")
            raise


MIGRATIONS = [
    ("001_attempt_indexes", """
    -- Owner lookups, eligibility checks and history pages
    CREATE INDEX IF NOT EXISTS idx_attempt_user_puzzle ON attempt(user_id, puzzle_id);
    CREATE INDEX IF NOT EXISTS idx_attempt_user_created ON attempt(user_id, created_at);

    -- Leaderboard scans
    CREATE INDEX IF NOT EXISTS idx_attempt_board ON attempt(completed, eligible, duration_ms)
    """),
    ("002_sweep_indexes", """
    -- Stale attempt sweeps
    CREATE INDEX IF NOT EXISTS idx_attempt_sweep_started ON attempt(completed, started_at);
    CREATE INDEX IF NOT EXISTS idx_attempt_sweep_created ON attempt(completed, created_at)
    """),
    ("003_move_replay_order", """
    -- Materialization and replays read moves in (at_ms, seq) order
    CREATE INDEX IF NOT EXISTS idx_move_attempt_time ON attemptmove(attempt_id, at_ms, seq)
    """),
]


def run_migrations(engine=None):
    """Run all pending migrations"""
    engine = engine or get_engine()
    for name, sql in MIGRATIONS:
        apply_migration(engine, name, sql)
    logger.info("All migrations completed")


if __name__ == "__main__":
    from .logging_utils import setup_logging

    setup_logging()
    run_migrations()
