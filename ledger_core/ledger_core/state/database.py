"""Async SQLAlchemy engine and session factory for the ledger store.

The backend is chosen from the database URL scheme:

* ``postgresql+asyncpg://`` gives a connection-pooled PostgreSQL engine with
  statement and lock timeouts, so a stuck ledger transition cannot hold
  row locks indefinitely.
* ``sqlite+aiosqlite://`` gives a single-file (or in-memory) SQLite engine
  used for local development and tests.
"""

from __future__ import annotations

import logging
import re
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ledger_core.config import Settings

logger = logging.getLogger(__name__)

# Tenant identifiers are uuid-ish: alphanumeric, hyphens, underscores, 1-128 chars.
_TENANT_ID_RE = re.compile(r"^[a-zA-Z0-9_-]{1,128}$")

_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine for *database_url*.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).
    """
    if database_url.startswith("sqlite"):
        from ledger_core.state.sqlite_adapter import get_local_engine

        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path or ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",
                "lock_timeout": "10000",
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def migration_url(database_url: str) -> str:
    """Return the synchronous psycopg URL Alembic should migrate through.

    The application runs on asyncpg; Alembic needs a synchronous driver, so
    the scheme is switched to ``postgresql+psycopg`` and asyncpg's ``ssl=``
    query parameter becomes libpq's ``sslmode=``.

    Raises
    ------
    ValueError
        *database_url* is not PostgreSQL.  SQLite stores are created from
        the ORM metadata on startup and carry no migration history.
    """
    scheme, sep, rest = database_url.partition("://")
    if not sep or not scheme.startswith("postgresql"):
        raise ValueError(f"Migrations run against PostgreSQL only, got '{scheme or database_url}'")
    url = f"postgresql+psycopg://{rest}"
    return re.sub(r"([?&])ssl=", r"\1sslmode=", url)


def engine_from_settings(settings: Settings) -> AsyncEngine:
    """Build the engine described by a :class:`~ledger_core.config.Settings`."""
    return get_engine(
        settings.database_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )


async def set_tenant_context(session: AsyncSession, tenant_id: str) -> None:
    """Bind ``app.tenant_id`` for row-level security on PostgreSQL.

    The setting is transaction-scoped (``set_config(..., true)``).  On
    SQLite this only validates the identifier since there is no RLS.

    Raises
    ------
    ValueError
        If *tenant_id* contains characters outside the allowlist.
    """
    if not _TENANT_ID_RE.match(tenant_id):
        raise ValueError(f"Invalid tenant_id: must match {_TENANT_ID_RE.pattern!r}, got {tenant_id!r}")

    bind = session.get_bind()
    dialect_name = str(getattr(getattr(bind, "dialect", None), "name", ""))
    if "sqlite" in dialect_name:
        return

    await session.execute(
        text("SELECT set_config('app.tenant_id', :tid, true)"),
        {"tid": tenant_id},
    )


def _factory_for(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on success and rolls back on error.

    Every ledger operation runs inside one of these: a batch transition
    that raises midway leaves no partial writes behind.
    """
    session = _factory_for(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


@asynccontextmanager
async def get_tenant_session(engine: AsyncEngine, tenant_id: str) -> AsyncGenerator[AsyncSession, None]:
    """Like :func:`get_session` but with the tenant context bound first."""
    async with get_session(engine) as session:
        await set_tenant_context(session, tenant_id)
        yield session
