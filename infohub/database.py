"""
Database connection and session management.

PostgreSQL in production (POSTGRES_URL / DATABASE_URL), SQLite works for
local runs and tests.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from contextlib import contextmanager
from typing import Optional
from infohub.config import ConfigurationError

engine: Optional[Engine] = None
SessionLocal: Optional[sessionmaker] = None


def configure(database_url: Optional[str]):
    """
    Create the engine and session factory for `database_url`.

    Passing None leaves the database unconfigured; routes that need it
    answer 503.
    """
    global engine, SessionLocal

    if engine is not None:
        engine.dispose()

    if not database_url:
        engine = None
        SessionLocal = None
        return

    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are opened from worker threads (asyncio.to_thread)
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args)
    SessionLocal = sessionmaker(bind=engine)


def is_configured() -> bool:
    return SessionLocal is not None


def _session() -> Session:
    if SessionLocal is None:
        raise ConfigurationError("Database not configured")
    return SessionLocal()


def get_db() -> Session:
    """FastAPI dependency yielding a session; closed after the response."""
    db = _session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context():
    """
    Session scope for code running outside a request handler.

    Commits when the block exits normally, rolls back and re-raises otherwise.
    """
    db = _session()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db():
    """Create any missing tables. Existing tables are left untouched."""
    from infohub.db_models import Base

    if engine is None:
        raise ConfigurationError("Database not configured")

    Base.metadata.create_all(bind=engine)
