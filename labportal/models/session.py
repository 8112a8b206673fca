"""Helpers for configuring SQLAlchemy engine and session factories."""

from __future__ import annotations

import os
from collections.abc import Sequence

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from . import Base


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

    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", None) or {})  # type: ignore[call-overload]
        # Concurrent writers wait for the file lock instead of failing fast.
        connect_args.setdefault("timeout", 5)
        connect_args.setdefault("check_same_thread", False)
        kwargs["connect_args"] = connect_args

    engine = create_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":

        @event.listens_for(engine, "connect")
        def _configure_sqlite(dbapi_connection, _connection_record):  # pragma: no cover - dialect hook
            dbapi_connection.execute("PRAGMA foreign_keys=ON")

    return engine


def get_sessionmaker(database_url: str | None = None, **kwargs: object) -> sessionmaker[Session]:
    """Return a session factory bound to the configured engine."""

    engine = get_engine(database_url=database_url, **kwargs)
    return sessionmaker(bind=engine, expire_on_commit=False, future=True)


def is_unique_violation(
    exc: IntegrityError, index_name: str, table: str, columns: Sequence[str]
) -> bool:
    """Tell whether ``exc`` was raised by the unique index ``index_name``.

    PostgreSQL reports the index name through psycopg diagnostics; SQLite only
    names the offending columns, e.g. ``UNIQUE constraint failed: t.a, t.b``.
    """

    diag = getattr(exc.orig, "diag", None)
    constraint_name = getattr(diag, "constraint_name", None)
    if constraint_name:
        return constraint_name == index_name
    message = str(exc.orig)
    if "UNIQUE constraint failed:" not in message:
        return False
    failed = message.split("UNIQUE constraint failed:", 1)[1]
    if failed.strip() == f"index '{index_name}'":
        return True
    reported = {part.strip() for part in failed.split(",")}
    return reported == {f"{table}.{column}" for column in columns}


__all__ = ["Base", "get_engine", "get_sessionmaker", "is_unique_violation"]
