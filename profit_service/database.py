"""SQLModel database engine and session management."""

import logging

from sqlalchemy import inspect
from sqlmodel import SQLModel, create_engine, Session

from profit_service.config import settings

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """Create an engine; SQLite needs check_same_thread=False, PostgreSQL does not."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = 30
    return create_engine(database_url, echo=False, connect_args=connect_args)


engine = build_engine(settings.database_url)


def _run_migrations(target=None):
    """Backfill columns and indexes that older deployments created without."""
    from sqlalchemy import text

    target = target or engine
    inspector = inspect(target)

    tables = inspector.get_table_names()

    if "run_lock" in tables:
        columns = {col["name"] for col in inspector.get_columns("run_lock")}
        if "not_started" not in columns:
            logger.info("Migrating: adding run_lock.not_started")
            with target.connect() as conn:
                conn.execute(text(
                    "ALTER TABLE run_lock ADD COLUMN not_started INTEGER DEFAULT 0"
                ))
                conn.commit()

    if "distribution_record" not in tables:
        return

    # Older databases may lack the period lookup index used by the selector
    existing_indexes = inspector.get_indexes("distribution_record")
    has_period_idx = any(
        idx["name"] == "ix_distribution_record_period_key" for idx in existing_indexes
    )
    if not has_period_idx:
        logger.info("Migrating: adding ix_distribution_record_period_key")
        with target.connect() as conn:
            conn.execute(text(
                "CREATE INDEX ix_distribution_record_period_key "
                "ON distribution_record (period_key)"
            ))
            conn.commit()


def create_db_and_tables(target=None):
    """Create all tables. Called on startup."""
    import profit_service.models  # noqa: F401  registers table metadata

    target = target or engine
    SQLModel.metadata.create_all(target)
    _run_migrations(target)


def get_session() -> Session:
    """Dependency that yields a database session."""
    with Session(engine) as session:
        yield session
