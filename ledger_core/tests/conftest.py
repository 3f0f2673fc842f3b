"""Shared fixtures for ledger_core tests.

Repository tests run against an in-memory SQLite database via aiosqlite.
JSONB is Postgres-specific and SQLite hands back naive datetimes, so the
ORM metadata is patched once at import time:

* ``JSONB`` -> ``JSON``.
* ``DateTime(timezone=True)`` -> a :class:`~sqlalchemy.types.TypeDecorator`
  that re-attaches UTC to values read back, keeping hash computation and
  window comparisons identical across backends.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from ledger_core.context import LedgerContext
from ledger_core.models.fees import BillingCycle, FeeConfiguration, FeeType, Payer, TransactionClass
from ledger_core.state.tables import Base
from sqlalchemy import JSON, DateTime
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.types import TypeDecorator


def _patch_columns_for_sqlite() -> None:
    class _UTCAwareDateTime(TypeDecorator):
        """Ensures datetimes read from SQLite are UTC-aware."""

        impl = DateTime
        cache_ok = True

        def process_result_value(self, value, dialect):  # type: ignore[override]
            if value is not None and value.tzinfo is None:
                return value.replace(tzinfo=UTC)
            return value

    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()
            elif isinstance(column.type, DateTime) and getattr(column.type, "timezone", False):
                column.type = _UTCAwareDateTime()


_patch_columns_for_sqlite()

FIXED_NOW = datetime(2026, 3, 15, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def async_session(async_engine):
    """Provide an async session backed by an in-memory SQLite database."""
    factory = async_sessionmaker(async_engine, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def ctx() -> LedgerContext:
    return LedgerContext(tenant_id="tenant-a", actor="owner@example.com", clock=lambda: FIXED_NOW)


@pytest.fixture
def qr_percentage_config() -> FeeConfiguration:
    """5% guest-paid fee on QR payments, billed in real time."""
    return FeeConfiguration(
        tenant_id="tenant-a",
        fee_type=FeeType.PERCENTAGE,
        qr_fee=Decimal("5"),
        booking_fee=Decimal("2.5"),
        payer=Payer.GUEST,
        billing_cycle=BillingCycle.REALTIME,
        applies_to={TransactionClass.QR_PAYMENTS, TransactionClass.BOOKINGS},
    )
