"""Database engine and session management."""

from __future__ import annotations

import warnings
from collections.abc import Generator
from typing import Any

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import URL, Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import Settings

_SYNC_DRIVER = "postgresql+psycopg"
_POSTGRES_DRIVERS = {"postgresql", _SYNC_DRIVER, "postgresql+psycopg_async"}
_SQLITE_DRIVERS = {"sqlite", "sqlite+pysqlite"}
# SQLite is only accepted outside production so tests can run without a server.
_SQLITE_ENVS = {"test", "development"}

# Base class for all ORM models
Base = declarative_base()


def _parse_database_url(url: str, *, app_env: str) -> URL:
    candidate = make_url(url)
    if candidate.drivername in _POSTGRES_DRIVERS:
        return candidate.set(drivername=_SYNC_DRIVER)
    if candidate.drivername in _SQLITE_DRIVERS and app_env in _SQLITE_ENVS:
        return candidate
    raise RuntimeError(
        "authcore requires a PostgreSQL connection string using the "
        "'postgresql' or 'postgresql+psycopg' driver."
    )


def _uses_placeholder(url: URL) -> bool:
    """Return True when the connection URL uses the legacy postgres:postgres pair."""

    return bool(url.username == "postgres" and url.password == "postgres")  # noqa: S105


def make_engine(settings: Settings) -> Engine:
    """Create the engine for ``settings`` with bounded waits on every call."""

    url = _parse_database_url(settings.database_url, app_env=settings.app_env)

    if url.get_backend_name() == "sqlite":
        kwargs: dict[str, Any] = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": settings.db_pool_timeout,
            },
        }
        if url.database in (None, "", ":memory:"):
            # A single shared connection keeps the in-memory schema alive.
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    if settings.is_production and _uses_placeholder(url):
        raise RuntimeError(
            "Refusing to start in production with the legacy postgres:postgres "
            "placeholder in DATABASE_URL."
        )
    if _uses_placeholder(url):
        warnings.warn(
            "DATABASE_URL appears to use the 'postgres:postgres' placeholder. "
            "This is acceptable for local development and tests but must not be used in production.",
            RuntimeWarning,
            stacklevel=2,
        )

    return create_engine(
        url,
        pool_size=10,
        max_overflow=20,
        pool_timeout=settings.db_pool_timeout,
        pool_recycle=1800,
        pool_pre_ping=True,
        connect_args={
            "connect_timeout": max(1, int(settings.db_pool_timeout)),
            "options": f"-c statement_timeout={settings.db_statement_timeout_ms}",
        },
    )


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )


def get_db(request: Request) -> Generator[Session, None, None]:
    """Provide a database session for a single request.

    Closing the session rolls back anything left uncommitted, so an aborted
    request never leaves a partially applied unit behind.
    """

    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
