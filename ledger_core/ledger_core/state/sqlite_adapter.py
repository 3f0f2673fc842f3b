"""SQLite backend for local development and tests.

Uses ``aiosqlite`` and the same ORM tables as PostgreSQL.  Differences:

* No connection pooling (SQLite is single-writer).
* No row-level security and no advisory locks; the repositories skip
  ``FOR UPDATE`` and ``pg_advisory_xact_lock`` on this dialect and rely on
  conditional updates alone.
* JSONB columns fall back to SQLite's JSON (stored as TEXT).
"""

from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)


def get_local_engine(db_path: Path | str = ".ledger/ledger.db") -> AsyncEngine:
    """Create an async engine backed by SQLite.

    Parameters
    ----------
    db_path:
        Path to the database file; parent directories are created.  Use
        ``:memory:`` for an ephemeral database.
    """
    if db_path == ":memory:":
        url = "sqlite+aiosqlite:///:memory:"
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, echo=False, connect_args={"check_same_thread": False})

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragmas(dbapi_conn: object, _: object) -> None:
        cursor = dbapi_conn.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.close()

    logger.info("Created SQLite engine: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create all ledger tables (idempotent)."""
    from ledger_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("SQLite tables created/verified")
