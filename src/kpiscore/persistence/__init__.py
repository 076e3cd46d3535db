"""kpiscore persistence.

Postgres engines and the storage error types. Repositories live in
``kpiscore.persistence.repositories``; migrations in ``kpiscore.persistence.migrate``.
"""

from kpiscore.persistence.db import (
    DatabaseConfigError,
    StorageUnavailableError,
    execute,
    is_postgres_configured,
    reset_engines,
)

__all__ = [
    "DatabaseConfigError",
    "StorageUnavailableError",
    "execute",
    "is_postgres_configured",
    "reset_engines",
]
