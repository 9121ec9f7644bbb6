from __future__ import annotations

from contextlib import contextmanager
import sqlite3
from typing import Iterator, Optional

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from .config import settings
from .models import Base

SQLITE_BUSY_TIMEOUT_MS = 5000


@event.listens_for(Engine, "connect")
def _configure_sqlite(dbapi_connection, _connection_record) -> None:
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
    cursor.close()


class Database:
    """Engine plus session factory; rebuilt in place when the URL changes."""

    def __init__(self, database_url: str) -> None:
        self.url = database_url
        self.engine = self._build_engine(database_url)
        self.sessions = sessionmaker(
            bind=self.engine,
            autoflush=False,
            expire_on_commit=False,
            class_=Session,
        )

    @staticmethod
    def _build_engine(database_url: str) -> Engine:
        if database_url.startswith("sqlite"):
            return create_engine(
                database_url,
                pool_pre_ping=True,
                connect_args={"check_same_thread": False},
            )
        return create_engine(
            database_url,
            pool_pre_ping=True,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_timeout=settings.db_pool_timeout,
            pool_recycle=settings.db_pool_recycle,
        )

    def rebind(self, database_url: str) -> None:
        self.engine.dispose()
        self.url = database_url
        self.engine = self._build_engine(database_url)
        self.sessions.configure(bind=self.engine)


_database = Database(settings.database_url)


def reset_database_engine(database_url: Optional[str] = None) -> None:
    if database_url:
        object.__setattr__(settings, "database_url", database_url)
    _database.rebind(settings.database_url)


@contextmanager
def get_db() -> Iterator[Session]:
    """One unit of work: committed on success, rolled back on any error."""
    session = _database.sessions()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def check_db_connection() -> None:
    with _database.engine.connect() as connection:
        connection.execute(text("SELECT 1"))


def init_db() -> None:
    Base.metadata.create_all(bind=_database.engine)


def count_live_sessions() -> int:
    with get_db() as session:
        return int(session.execute(text("SELECT COUNT(*) FROM sessions")).scalar_one())
