"""
Engine construction and session helpers.

Builds SQLAlchemy engines from environment configuration with SQLite
in-memory handling for tests, detects the driver family used for error
mapping, and provides the short-lived session scope used when callers do
not pass their own session.
"""
from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session
from sqlalchemy.pool import StaticPool

from .errors import DRIVER_MSSQL, DRIVER_MYSQL, DRIVER_POSTGRES, DRIVER_SQLITE

_DIALECT_DRIVERS = {
    "postgresql": DRIVER_POSTGRES,
    "sqlite": DRIVER_SQLITE,
    "mssql": DRIVER_MSSQL,
    "mysql": DRIVER_MYSQL,
    "mariadb": DRIVER_MYSQL,
}

_URL_COMPONENTS = ("POSTGRES_USER", "POSTGRES_PASSWORD", "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB")


def get_database_url() -> str:
    """Return ``DATABASE_URL``, or assemble a PostgreSQL URL from ``POSTGRES_*``.

    Every component variable is required when ``DATABASE_URL`` is unset; the
    error lists all that are missing.
    """
    url = os.getenv("DATABASE_URL")
    if url:
        return url
    parts = {name: os.getenv(name) for name in _URL_COMPONENTS}
    missing = [name for name, value in parts.items() if not value]
    if missing:
        raise ValueError(f"Missing required database environment variables: {', '.join(missing)}")
    return (
        f"postgresql://{parts['POSTGRES_USER']}:{parts['POSTGRES_PASSWORD']}"
        f"@{parts['POSTGRES_HOST']}:{parts['POSTGRES_PORT']}/{parts['POSTGRES_DB']}"
    )


def build_engine(url: Optional[str] = None, **kwargs: Any) -> Engine:
    """Create an engine; SQLite URLs get thread-shareable connections.

    In-memory SQLite uses a ``StaticPool`` so every session sees the same
    database.
    """
    url = url or get_database_url()
    if url.startswith("sqlite"):
        connect_args = dict(kwargs.pop("connect_args", {}) or {})
        connect_args.setdefault("check_same_thread", False)
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs.setdefault("poolclass", StaticPool)
        return create_engine(url, connect_args=connect_args, **kwargs)
    kwargs.setdefault("pool_pre_ping", True)
    return create_engine(url, **kwargs)


def detect_driver(engine: Engine) -> str:
    name = engine.dialect.name
    return _DIALECT_DRIVERS.get(name, name)


@contextmanager
def session_scope(engine: Engine, session: Optional[Session] = None) -> Iterator[Session]:
    """Yield ``session`` untouched, or a fresh session wrapped in one transaction.

    The fresh session commits on success and rolls back on error; an explicit
    session is never committed or rolled back here.
    """
    if session is not None:
        yield session
        return
    with Session(engine, expire_on_commit=False, autoflush=False) as fresh:
        with fresh.begin():
            yield fresh
