"""Alembic environment for the platform fee ledger schema.

``ledger db`` hands the target URL over in ``config.attributes["database_url"]``;
a bare ``alembic`` run falls back to ``API_DATABASE_URL``, the URL the API
itself connects with.  The URL is switched to the synchronous psycopg
driver by :func:`ledger_core.state.database.migration_url`, which also
refuses SQLite.

Online runs use one transaction per revision and the same lock timeout as
the API's engine, so a migration waiting on ledger row locks fails fast
instead of stalling settlements behind it.
"""

from __future__ import annotations

import logging
import os

from alembic import context
from ledger_core.state.database import migration_url
from ledger_core.state.tables import Base
from sqlalchemy import create_engine, pool

logger = logging.getLogger(__name__)

config = context.config
target_metadata = Base.metadata

_LOCK_TIMEOUT = "10s"


def _database_url() -> str:
    url = config.attributes.get("database_url") or os.environ.get("API_DATABASE_URL")
    if not url:
        raise RuntimeError("No database URL: pass --database-url or set API_DATABASE_URL")
    return migration_url(url)


def run_migrations_offline() -> None:
    """Emit the migration SQL without connecting."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        transaction_per_migration=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_database_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            connection.exec_driver_sql(f"SET lock_timeout = '{_LOCK_TIMEOUT}'")
            connection.commit()
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                transaction_per_migration=True,
            )
            with context.begin_transaction():
                context.run_migrations()
            logger.info("Ledger schema migrated to %s", context.get_head_revision())
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
