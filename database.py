import logging
import os
from pathlib import Path

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

# Database setup
_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "20"))
_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "40"))
_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "10"))
_POOL_RECYCLE = int(os.getenv("DB_POOL_RECYCLE", "1800"))


def build_engine(database_url: str) -> Engine:
    """
    Create the record-store engine.

    SQLite files get WAL and a busy timeout so the thread pool used by the
    async record store can read while another thread writes. In-memory SQLite
    shares one connection across threads.
    """
    if database_url.startswith("sqlite"):
        in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
        if not in_memory:
            db_path = database_url.split("sqlite:///", 1)[-1]
            Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        kwargs = {"connect_args": {"check_same_thread": False}}
        if in_memory:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)

        # Enable WAL and reasonable SQLite pragmas to improve concurrent access
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            try:
                if not in_memory:
                    cursor.execute("PRAGMA journal_mode=WAL;")
                    cursor.execute("PRAGMA synchronous=NORMAL;")
                cursor.execute("PRAGMA busy_timeout=5000;")
            finally:
                cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_size=_POOL_SIZE,
        max_overflow=_MAX_OVERFLOW,
        pool_timeout=_POOL_TIMEOUT,
        pool_recycle=_POOL_RECYCLE,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Create all database tables"""
    from models import Base  # Import here to avoid circular dependency
    try:
        Base.metadata.create_all(bind=engine)
    except OperationalError as exc:
        # Ignore concurrent creation attempts when tables already exist (SQLite multi-worker startup)
        if "already exists" in str(exc).lower():
            logger.info(f"Ignoring table creation race condition: {exc}")
        else:
            raise
