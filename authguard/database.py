"""Database configuration and session management for authguard."""

import sqlite3
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings
from .models import Base


def make_engine(database_url: str) -> Engine:
    """Create an engine with SQLite-specific settings where needed."""
    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            # Single shared connection so every session sees the same in-memory db
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},  # Required for SQLite
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
        )
    return create_engine(database_url, pool_pre_ping=True)


# Enable WAL mode for better concurrent read performance
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_conn, connection_record):
    if isinstance(dbapi_conn, sqlite3.Connection):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA temp_store=MEMORY")
        cursor.close()


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(Settings.from_env().database_url)

# Session factory
SessionLocal = make_session_factory(engine)


def init_db(bind: Engine = None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


@contextmanager
def session_scope(session_factory: sessionmaker):
    """Session that commits on success and rolls back on any error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
