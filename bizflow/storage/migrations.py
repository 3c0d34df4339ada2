"""Database migrations for query performance."""

from typing import Optional

from sqlalchemy import Engine, text

from .database import get_database_engine
from ..core.logging import get_logger

logger = get_logger(__name__)


INDEX_STATEMENTS = [
    # Instance lookups by definition and status (instance lists, delete guard)
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_instances_workflow_status
    ON workflow_instances(workflow_id, status)
    """,
    # Task inbox by assignee and status
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_tasks_assignee_status
    ON workflow_tasks(assigned_to, status)
    """,
    # Open task lookup for the node an instance is suspended on
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_tasks_instance_node
    ON workflow_tasks(instance_id, node_id, step)
    """,
    # Event history in chronological order
    """
    CREATE INDEX IF NOT EXISTS idx_workflow_events_instance_timestamp
    ON workflow_events(instance_id, timestamp)
    """,
]


def create_query_indexes(engine: Optional[Engine] = None) -> None:
    """Create database indexes used by the engine's lookups."""
    engine = engine or get_database_engine()
    try:
        with engine.connect() as connection:
            for statement in INDEX_STATEMENTS:
                connection.execute(text(statement))
            connection.commit()
        logger.info("Created workflow query indexes")
    except Exception as e:
        logger.error(f"Failed to create database indexes: {str(e)}")
        raise


def apply_sqlite_pragmas(engine: Optional[Engine] = None) -> None:
    """Enable WAL mode on file-backed SQLite databases."""
    engine = engine or get_database_engine()
    if engine.url.get_backend_name() != "sqlite" or engine.url.database in (None, "", ":memory:"):
        return
    with engine.connect() as connection:
        connection.execute(text("PRAGMA journal_mode=WAL"))
        connection.commit()
    logger.info("Applied SQLite WAL journal mode")


def run_migrations(engine: Optional[Engine] = None) -> None:
    """Run all migrations."""
    logger.info("Starting database migrations")
    create_query_indexes(engine)
    apply_sqlite_pragmas(engine)
    logger.info("Database migrations completed successfully")


if __name__ == "__main__":
    run_migrations()
