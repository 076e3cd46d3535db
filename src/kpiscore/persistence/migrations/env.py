"""Alembic environment for kpiscore migrations.

Invoked by alembic only. Programmatic entry points live in
kpiscore.persistence.migrate. Uses KPISCORE_DATABASE_ADMIN_URL unless the
caller hands over a connection through ``config.attributes["connection"]``.
"""

from __future__ import annotations

import logging

from alembic import context

from kpiscore.persistence.db import get_admin_engine, get_database_url

logger = logging.getLogger(__name__)

target_metadata = None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode.

    This configures the context with just a URL and not an Engine.
    Calls to context.execute() emit SQL to stdout.
    """
    url = get_database_url(admin=True)
    context.configure(
        url=url,
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations against a live connection.

    Reuses the caller's connection when one is provided, otherwise opens one
    from the admin engine.
    """
    connection = context.config.attributes.get("connection")
    if connection is not None:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
        return

    engine = get_admin_engine()
    with engine.connect() as conn:
        context.configure(connection=conn, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
