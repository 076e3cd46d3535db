"""PostgreSQL database connectivity and connection helpers for kpiscore.

Provides engine creation and connection management. When no database URL is
configured the service runs against the in-memory repositories.

Environment Variables:
    KPISCORE_DATABASE_URL: Application/runtime role connection string
    KPISCORE_DATABASE_ADMIN_URL: Admin connection string (migrations/tests only)
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any

from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError

from kpiscore.observability.tracing import instrument_sqlalchemy

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine
    from sqlalchemy.engine import CursorResult
    from sqlalchemy.sql.elements import TextClause

logger = logging.getLogger(__name__)

KPISCORE_DATABASE_URL_ENV = "KPISCORE_DATABASE_URL"
KPISCORE_DATABASE_ADMIN_URL_ENV = "KPISCORE_DATABASE_ADMIN_URL"

_app_engine: Engine | None = None
_admin_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid.

    This is a fail-closed error - operations requiring the database
    should not proceed without valid configuration.
    """

    pass


class StorageUnavailableError(Exception):
    """Raised when the store cannot be reached mid-request.

    Fatal for the current request; callers may retry.
    """

    def __init__(self, operation: str, cause: Exception) -> None:
        self.operation = operation
        super().__init__(f"Storage unavailable during {operation}: {type(cause).__name__}")


def is_postgres_configured() -> bool:
    """Check if PostgreSQL is configured via environment.

    Returns:
        True if KPISCORE_DATABASE_URL is set, False otherwise.
    """
    return bool(os.environ.get(KPISCORE_DATABASE_URL_ENV))


def _ensure_psycopg_driver(url: str) -> str:
    """Normalize legacy postgres:// URLs to the psycopg2 dialect."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url(admin: bool = False) -> str:
    """Get the database URL from environment.

    Args:
        admin: If True, return admin URL; otherwise return app URL.

    Returns:
        Database connection string.

    Raises:
        DatabaseConfigError: If the required environment variable is not set.
    """
    env_var = KPISCORE_DATABASE_ADMIN_URL_ENV if admin else KPISCORE_DATABASE_URL_ENV
    url = os.environ.get(env_var)

    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {env_var} environment variable."
        )

    return _ensure_psycopg_driver(url)


def get_app_engine() -> Engine:
    """Get or create the application database engine.

    Raises:
        DatabaseConfigError: If KPISCORE_DATABASE_URL is not set.
    """
    global _app_engine

    if _app_engine is None:
        url = get_database_url(admin=False)
        _app_engine = create_engine(
            url,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
        instrument_sqlalchemy(_app_engine)
        logger.info("Created application database engine")

    return _app_engine


def get_admin_engine() -> Engine:
    """Get or create the admin database engine (migrations, tests).

    Raises:
        DatabaseConfigError: If KPISCORE_DATABASE_ADMIN_URL is not set.
    """
    global _admin_engine

    if _admin_engine is None:
        url = get_database_url(admin=True)
        _admin_engine = create_engine(
            url,
            pool_size=2,
            max_overflow=5,
            pool_pre_ping=True,
            echo=False,
        )
        logger.info("Created admin database engine")

    return _admin_engine


def execute(
    conn: Connection,
    statement: TextClause,
    params: dict[str, Any] | None = None,
    *,
    operation: str,
) -> CursorResult[Any]:
    """Execute a statement, mapping connectivity failures to StorageUnavailableError.

    Args:
        conn: Connection in an open transaction.
        statement: SQL text clause.
        params: Bound parameters.
        operation: Short name of the repository operation (for logs and errors).

    Raises:
        StorageUnavailableError: If the database connection is lost or refused.
    """
    try:
        return conn.execute(statement, params or {})
    except OperationalError as e:
        logger.error("Storage operation %s failed: %s", operation, type(e).__name__)
        raise StorageUnavailableError(operation, e) from e


def reset_engines() -> None:
    """Reset global engine instances.

    Used for testing to ensure fresh engine creation.
    """
    global _app_engine, _admin_engine
    if _app_engine is not None:
        _app_engine.dispose()
        _app_engine = None
    if _admin_engine is not None:
        _admin_engine.dispose()
        _admin_engine = None
