"""
Database configuration and session management.
Supports SQLite (development, tests) and PostgreSQL.

Version: 1.0.0
"""
from sqlalchemy import create_engine, text, inspect, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool, QueuePool
from sqlalchemy.exc import SQLAlchemyError
import logging
import os
import threading
from typing import Optional, Tuple
from pathlib import Path

from .config import settings

logger = logging.getLogger(__name__)

# Create declarative base
Base = declarative_base()

REQUIRED_TABLES = ("chat_sessions", "chat_messages", "automation_chat_histories")

# Global engine and session factory
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None
_init_lock = threading.Lock()


def _enable_sqlite_wal_mode(dbapi_connection, connection_record):
    """Enable WAL mode for SQLite for better concurrency."""
    try:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()
    except Exception as e:
        logger.warning(f"Failed to enable SQLite optimizations: {e}")


def create_session_factory(
    database_url: str,
    echo: bool = False
) -> Tuple[Engine, sessionmaker]:
    """
    Create an engine and session factory for a database URL.

    Args:
        database_url: SQLAlchemy URL
        echo: Log emitted SQL

    Returns:
        Tuple of (engine, sessionmaker)
    """
    if database_url.startswith("sqlite"):
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")

        if not in_memory:
            db_path = database_url.replace("sqlite:///", "")
            db_dir = os.path.dirname(db_path)
            if db_dir:
                Path(db_dir).mkdir(parents=True, exist_ok=True)

        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo
        )

        if not in_memory:
            event.listen(engine, "connect", _enable_sqlite_wal_mode)
    else:
        engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_pool_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            echo=echo
        )

    factory = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)
    return engine, factory


def create_tables(engine: Engine) -> None:
    """Create all chat tables on an engine."""
    # Register models with Base
    from .models import session, message, history  # noqa: F401

    Base.metadata.create_all(bind=engine, checkfirst=True)


def init_db() -> sessionmaker:
    """
    Initialize the global engine and create tables.
    Thread-safe; repeated calls return the same factory.
    """
    global _engine, _SessionLocal

    with _init_lock:
        if _SessionLocal is not None:
            return _SessionLocal

        logger.info("Initializing database...")
        _engine, _SessionLocal = create_session_factory(
            settings.database_url,
            echo=settings.database_echo
        )
        create_tables(_engine)

        logger.info(f"✓ Database initialized ({_engine.dialect.name})")
        return _SessionLocal


def check_db_connection() -> bool:
    """Run a trivial query against the global engine."""
    if _engine is None:
        return False

    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.error(f"Database connection check failed: {e}")
        return False


def check_tables_exist() -> bool:
    """Check that every chat table exists."""
    if _engine is None:
        return False

    table_names = inspect(_engine).get_table_names()
    missing = [table for table in REQUIRED_TABLES if table not in table_names]
    if missing:
        logger.warning(f"Missing tables: {missing}")
        return False
    return True


def cleanup_db() -> None:
    """Dispose the global engine."""
    global _engine, _SessionLocal

    with _init_lock:
        if _engine is not None:
            _engine.dispose()
            logger.info("Database engine disposed")
        _engine = None
        _SessionLocal = None
