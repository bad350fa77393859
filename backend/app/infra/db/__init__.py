"""Database connection helpers."""

from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine

from ...config import load_settings
from .types import UTCDateTime

__all__ = ["UTCDateTime", "build_engine", "get_engine"]


def build_engine(database_url: str) -> Engine:
    """Create an engine; SQLite connections get foreign keys and cross-thread use."""

    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            echo=False,
            future=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        _enable_sqlite_foreign_keys(engine)
        return engine
    return create_engine(database_url, echo=False, future=True, pool_pre_ping=True)


@lru_cache()
def get_engine() -> Engine:
    """Return the process-wide engine built from the active settings."""

    settings = load_settings()
    return build_engine(settings.database_url)


def _enable_sqlite_foreign_keys(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):  # pragma: no cover
        # Let SQLAlchemy emit BEGIN itself so every transaction can take the
        # write lock up front.
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):  # pragma: no cover
        conn.exec_driver_sql("BEGIN IMMEDIATE")
