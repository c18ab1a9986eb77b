"""
Database connection utilities.
"""

from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from warden.common import settings

# Cached engine and session factory for connection pooling
_engine = None
_session_factory = None


def get_engine():
    """Get or create SQLAlchemy engine with connection pooling.

    The engine is cached so that every session shares the same pool.
    """
    global _engine
    if _engine is None:
        connect_args = {}
        if settings.DB_URL.startswith("sqlite"):
            # Sessions are opened from the event loop and from worker threads
            connect_args["check_same_thread"] = False
            settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
        _engine = create_engine(
            settings.DB_URL,
            pool_pre_ping=True,
            pool_recycle=3600,
            connect_args=connect_args,
        )
    return _engine


def get_session_factory():
    """Get or create a cached session factory for SQLAlchemy sessions."""
    global _session_factory
    if _session_factory is None:
        engine = get_engine()
        _session_factory = sessionmaker(bind=engine, expire_on_commit=False)
    return _session_factory


@contextmanager
def make_session():
    """
    Context manager for database sessions.

    Each call opens its own session, so coroutines on the event loop never
    share one.

    Yields:
        SQLAlchemy session that is committed on success and always closed
    """
    session = get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
