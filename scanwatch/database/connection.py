"""
Database connection management for Scanwatch.

Engines and session factories are created from an explicit
``ScanwatchConfig`` and handed to the components that need them; nothing
here is cached at module level, so tests and the daemon can each own
their own store.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from scanwatch.config import ScanwatchConfig
from scanwatch.database.models import Base
from scanwatch.errors import PersistenceError

logger = logging.getLogger(__name__)


def get_db_path(config: ScanwatchConfig) -> Optional[Path]:
    """
    Get the database file path for SQLite URLs.

    Args:
        config: Scanwatch configuration

    Returns:
        Path to the SQLite database file, or None for other backends
        and in-memory databases
    """
    db_url = config.database_url
    if db_url.startswith("sqlite:///") and db_url != "sqlite:///:memory:":
        return Path(db_url[10:])
    return None


def init_engine(config: ScanwatchConfig, echo: bool = False) -> Engine:
    """
    Create the SQLAlchemy engine for the configured store.

    Args:
        config: Scanwatch configuration
        echo: Log emitted SQL

    Returns:
        Configured SQLAlchemy engine
    """
    db_url = config.database_url
    is_sqlite = db_url.startswith("sqlite")

    db_path = get_db_path(config)
    if db_path is not None:
        db_path.parent.mkdir(parents=True, exist_ok=True)

    connect_args = {}
    if is_sqlite:
        connect_args = {
            "check_same_thread": False,  # Allow cross-thread access
            "timeout": 30,  # Lock wait in seconds
        }

    engine = create_engine(
        db_url,
        connect_args=connect_args,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=echo,
    )

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable SQLite foreign key support."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.debug(f"Database engine initialized: {db_url}")
    return engine


def get_session_maker(engine: Engine) -> sessionmaker:
    """
    Build a session factory bound to an engine.

    Args:
        engine: Engine returned by init_engine

    Returns:
        Configured session maker
    """
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=engine,
    )


@contextmanager
def session_scope(session_maker: sessionmaker) -> Generator[Session, None, None]:
    """
    Transactional session context manager.

    Commits on success and rolls back on any error. SQLAlchemy errors
    are logged and re-raised as PersistenceError.

    Usage:
        with session_scope(session_maker) as session:
            target = session.get(Target, 1)
    """
    session = session_maker()

    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Database operation failed: {e}")
        raise PersistenceError(
            "Database operation failed",
            details={"error": str(e)},
        ) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(engine: Engine) -> None:
    """
    Create all database tables.

    Args:
        engine: Engine returned by init_engine
    """
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def drop_tables(engine: Engine) -> None:
    """
    Drop all database tables.

    WARNING: This will delete all data!

    Args:
        engine: Engine returned by init_engine
    """
    Base.metadata.drop_all(bind=engine)
    logger.warning("Database tables dropped")
