"""Database connectivity helpers.

Environment Variables:
    OCKHAM_DATABASE_URL: SQLAlchemy connection string of the durable store.
        Postgres in production; SQLite URLs are accepted for local runs.

Fails closed: code paths that need the database raise DatabaseConfigError
when the URL is missing instead of silently falling back.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from ockham.config import DATABASE_URL_ENV

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid."""

    pass


def is_database_configured() -> bool:
    """Check if a database URL is configured via environment."""
    return bool(os.environ.get(DATABASE_URL_ENV))


def _normalize_url(url: str) -> str:
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url() -> str:
    """Get the database URL from environment.

    Raises:
        DatabaseConfigError: If OCKHAM_DATABASE_URL is not set.
    """
    url = os.environ.get(DATABASE_URL_ENV)
    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {DATABASE_URL_ENV} environment variable."
        )
    return _normalize_url(url)


def create_db_engine(url: str) -> Engine:
    """Create an engine with pool settings suited to the backend.

    In-memory SQLite shares one connection across threads so that every
    transaction sees the same database.
    """
    url = _normalize_url(url)
    if url.startswith("sqlite"):
        if ":memory:" in url or url in ("sqlite://", "sqlite+pysqlite://"):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
                echo=False,
            )
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        echo=False,
    )


def get_engine(url: str | None = None) -> Engine:
    """Get or create the process-wide engine.

    Raises:
        DatabaseConfigError: If no URL is given and none is configured.
    """
    global _engine

    if _engine is None:
        _engine = create_db_engine(url or get_database_url())
        logger.info("Created database engine")

    return _engine


@contextmanager
def begin_conn(engine: Engine | None = None) -> Generator[Connection, None, None]:
    """Open a connection in a transaction; commit on success, roll back on error."""
    engine = engine or get_engine()
    with engine.connect() as conn, conn.begin():
        yield conn


def reset_engine() -> None:
    """Dispose of the process-wide engine (for testing)."""
    global _engine

    if _engine is not None:
        _engine.dispose()
        _engine = None
