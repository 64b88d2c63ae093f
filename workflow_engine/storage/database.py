"""Database connection and session management."""

import os
from contextlib import contextmanager
from typing import Iterator, Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

_engine: Optional[Engine] = None
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False)


def _build_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with the settings appropriate for the database type."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url:
            # A single shared connection keeps the in-memory database alive across sessions
            return create_engine(
                database_url,
                connect_args=connect_args,
                poolclass=StaticPool,
                echo=echo
            )
        return create_engine(database_url, connect_args=connect_args, echo=echo)

    return create_engine(database_url, echo=echo, pool_pre_ping=True)


def init_database(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    (Re)bind the module-level engine and session factory.

    Args:
        database_url: Database URL; falls back to the DATABASE_URL environment variable
        echo: Enable SQLAlchemy statement logging

    Returns:
        The bound engine
    """
    global _engine

    if database_url is None:
        database_url = os.getenv("DATABASE_URL", "sqlite:///./workflow_engine.db")

    if _engine is not None:
        _engine.dispose()

    _engine = _build_engine(database_url, echo=echo)
    SessionLocal.configure(bind=_engine)
    return _engine


def get_database_engine() -> Engine:
    """Get the current engine, initializing it from the environment if needed."""
    if _engine is None:
        return init_database()
    return _engine


def reset_database_engine():
    """Dispose of the global database engine (mainly for testing)."""
    global _engine
    if _engine:
        _engine.dispose()
    _engine = None


@contextmanager
def session_scope() -> Iterator[Session]:
    """Provide a transactional scope: commit on success, roll back on any error."""
    get_database_engine()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """Create all database tables."""
    # Importing the models registers them on Base.metadata
    from . import models  # noqa: F401
    Base.metadata.create_all(bind=get_database_engine())
