"""Helpers for configuring SQLAlchemy engine and session factories."""

from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from . import Base


_DEFAULT_FACTORY: sessionmaker[Session] | None = None


def get_engine(database_url: str | None = None, **kwargs: object) -> Engine:
    """Create a SQLAlchemy engine.

    Args:
        database_url: Optional database URL. When ``None`` the ``DATABASE_URL``
            environment variable is used.
        **kwargs: Additional keyword arguments forwarded to
            :func:`sqlalchemy.create_engine`.

    Returns:
        Configured SQLAlchemy :class:`~sqlalchemy.engine.Engine` instance.
    """

    url = database_url or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not configured.")

    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        # pysqlite defers BEGIN on its own; take over so SAVEPOINTs used by the
        # session find-or-create retry behave like they do on PostgreSQL.

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
            dbapi_connection.isolation_level = None
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

        @event.listens_for(engine, "begin")
        def _begin_sqlite(conn):  # pragma: no cover - dialect hook
            conn.exec_driver_sql("BEGIN")

    return engine


def get_sessionmaker(database_url: str | None = None, **kwargs: object) -> sessionmaker[Session]:
    """Return a session factory bound to the configured engine."""

    engine = get_engine(database_url=database_url, **kwargs)
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def default_sessionmaker() -> sessionmaker[Session]:
    """Return the process-wide session factory built from ``DATABASE_URL``."""

    global _DEFAULT_FACTORY
    if _DEFAULT_FACTORY is None:
        _DEFAULT_FACTORY = get_sessionmaker()
    return _DEFAULT_FACTORY


def reset_default_sessionmaker() -> None:
    """Drop the cached factory; tests call this after changing ``DATABASE_URL``."""

    global _DEFAULT_FACTORY
    if _DEFAULT_FACTORY is not None:
        _DEFAULT_FACTORY.kw["bind"].dispose()
    _DEFAULT_FACTORY = None


@contextmanager
def session_scope(
    factory: sessionmaker[Session] | None = None,
) -> Iterator[Session]:
    """Provide a transactional scope around a series of operations."""

    session = (factory or default_sessionmaker())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


__all__ = [
    "Base",
    "default_sessionmaker",
    "get_engine",
    "get_sessionmaker",
    "reset_default_sessionmaker",
    "session_scope",
]
