"""Database configuration and session management.

Features:
- SQLite pragmas for concurrent access (WAL)
- Connection pooling for server databases
- Session factories for request handlers and service code
"""

import logging
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from m365_assessment.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()

Base = declarative_base()


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Set SQLite pragmas for performance."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine with SQLite or server-database settings."""
    engine_args: dict[str, Any] = {"echo": echo}

    if database_url.startswith("sqlite"):
        engine_args["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            engine_args["poolclass"] = StaticPool
        else:
            # Ensure data directory exists
            Path(database_url.replace("sqlite:///", "")).parent.mkdir(parents=True, exist_ok=True)
    else:
        engine_args.update({
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,  # Verify connections before using
            "pool_recycle": 3600,
        })

    engine = create_engine(database_url, **engine_args)
    if database_url.startswith("sqlite"):
        event.listen(engine, "connect", _set_sqlite_pragma)
    return engine


engine = create_db_engine(settings.database_url, echo=settings.debug)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency for database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Generator[Session, None, None]:
    """Transactional scope: commit on success, roll back on error."""
    db = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Initialize database tables."""
    # Import models to register them with Base
    from m365_assessment import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.debug("Database tables created")
