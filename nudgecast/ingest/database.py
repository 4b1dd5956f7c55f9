"""
Database initialization and connection management.
"""

import logging
from pathlib import Path

from sqlalchemy import create_engine, event, Index
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from nudgecast.config import get_settings
from nudgecast.ingest.schema import (
    Base, Transaction, Account, NudgeAction, RiskSnapshot, Bill, Goal
)

logger = logging.getLogger(__name__)


def get_engine(db_url: str = None):
    """Get SQLAlchemy engine for database connection."""
    if db_url is None:
        db_url = get_settings().database_url

    engine_kwargs = {"echo": False}
    if db_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if db_url in ("sqlite://", "sqlite:///:memory:"):
            # One shared connection so every session sees the same in-memory database
            engine_kwargs["poolclass"] = StaticPool
        else:
            Path(db_url.replace("sqlite:///", "", 1)).parent.mkdir(parents=True, exist_ok=True)

    engine = create_engine(db_url, **engine_kwargs)

    if db_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINT nests inside it
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def get_session_factory(engine=None):
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine)


def get_session(engine=None):
    """Get SQLAlchemy session."""
    return get_session_factory(engine)()


# Declared once; each Index attaches itself to its table
INDEXES = (
    # Transaction indexes
    Index('idx_transactions_user_date', Transaction.user_id, Transaction.date),
    Index('idx_transactions_account', Transaction.account_id),
    Index('idx_transactions_recurring', Transaction.next_recurring_date),

    # Account indexes
    Index('idx_accounts_user', Account.user_id),

    # Nudge indexes
    Index('idx_nudges_user_created', NudgeAction.user_id, NudgeAction.created_at),
    Index('idx_nudges_status_expires', NudgeAction.status, NudgeAction.expires_at),
    Index('idx_nudges_user_type', NudgeAction.user_id, NudgeAction.nudge_type),

    # Risk, bill and goal indexes
    Index('idx_risk_snapshots_user_created', RiskSnapshot.user_id, RiskSnapshot.created_at),
    Index('idx_bills_user_due', Bill.user_id, Bill.next_due_date),
    Index('idx_goals_user_status', Goal.user_id, Goal.status),
)


def create_indexes(engine):
    """Create indexes for common query patterns."""
    for index in INDEXES:
        index.create(engine, checkfirst=True)


def init_database(db_url: str = None, drop_existing: bool = False, engine=None):
    """
    Initialize database schema.

    Args:
        db_url: SQLAlchemy URL (uses configured default if None)
        drop_existing: If True, drop all tables before creating
        engine: Existing engine to initialize instead of creating one

    Returns:
        SQLAlchemy engine
    """
    if engine is None:
        engine = get_engine(db_url)

    if drop_existing:
        logger.info("Dropping existing tables")
        Base.metadata.drop_all(engine)

    Base.metadata.create_all(engine)
    create_indexes(engine)

    logger.info("Database initialized at %s", engine.url)

    return engine


if __name__ == "__main__":
    from nudgecast.logging_config import setup_logging

    setup_logging()
    init_database(drop_existing=True)
