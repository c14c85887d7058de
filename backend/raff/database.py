"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine, session factory, FastAPI dependencies,
    and an explicit transaction scope for multi-table writes.

WHY:
    - Webhook handlers need one atomic unit per event (commission upsert,
      click aggregates, fraud signals), so transactions are opened explicitly
      instead of relying on ad-hoc commit calls.
    - Processing runs in a worker thread with its own session, so the session
      factory is exposed as a dependency as well.

USAGE:
    from raff.database import get_db, transaction_scope

    with transaction_scope(db):
        db.add(commission)
        ...

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_transaction.html
    - raff/services/attribution/processor.py (main consumer)
"""

import os
from contextlib import contextmanager
from typing import Callable, Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from raff.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

# SQLite engines (tests/dev) do not support pool_size/max_overflow.
# pool_timeout bounds how long a webhook waits for a connection.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_size=10,
        max_overflow=20,
        pool_timeout=5,
        pool_recycle=3600,
        pool_pre_ping=True,
    )

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> Callable[[], Session]:
    """Return the session factory used by background and threadpool work.

    WHAT:
        Exposes SessionLocal through dependency injection.

    WHY:
        Order processing and the audit sink outlive (or run beside) the
        request-scoped session; they open their own sessions from this
        factory. Tests override it to point at the test engine.
    """
    return SessionLocal


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session(session_factory: Callable[[], Session] = SessionLocal) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Example:
        with get_sync_session() as db:
            merchants = db.query(Merchant).all()
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction_scope(db: Session) -> Generator[Session, None, None]:
    """Run a block as one atomic unit on the given session.

    WHAT:
        Commits when the block exits normally, rolls back and re-raises on
        any exception.

    WHY:
        Attribution lookup, commission upsert, click aggregates, and fraud
        signals for one webhook must land together or not at all.

    Example:
        with transaction_scope(db):
            machine.apply(...)
            aggregator.apply(...)
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
