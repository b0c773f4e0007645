"""
Engine and session management.

Each request (and each worker run) gets its own Session with autoflush
disabled; nothing is written until the owning transaction commits.
"""

import logging
import os
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from couplelink.platform.errors import ServiceUnavailableError

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def get_database_url() -> str:
    """
    Read DATABASE_URL, normalising the legacy postgres:// scheme.

    Raises:
        ServiceUnavailableError: DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise ServiceUnavailableError("Database not configured")

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def create_db_engine(database_url: Optional[str] = None) -> Engine:
    database_url = database_url or get_database_url()
    if database_url.startswith("sqlite"):
        # Threads share one file; wait on the writer lock rather than fail fast
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(database_url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_session_factory() -> sessionmaker:
    """Process-wide session factory, created on first use."""
    global _engine, _session_factory
    if _session_factory is None:
        _engine = create_db_engine()
        _session_factory = make_session_factory(_engine)
        logger.info("Database session factory initialised")
    return _session_factory


def get_db_session_sync() -> Iterator[Session]:
    session = get_session_factory()()
    try:
        yield session
    finally:
        session.close()


def get_db_session() -> Iterator[Session]:
    """FastAPI dependency yielding a request-scoped session."""
    yield from get_db_session_sync()
