"""Repository classes providing access to the platform fee ledger store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on the ``get_session`` context manager).

Batch status changes are single conditional ``UPDATE`` statements whose
``WHERE`` clause repeats the accepted source statuses.  A rowcount that does
not match the number of requested ids means a concurrent writer got there
first; callers treat that as a conflict and roll the transaction back.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_core.state.tables import (
    AlertRuleTable,
    AlertTable,
    AuditLogTable,
    FeeConfigurationTable,
    FeeDisputeTable,
    FeeInvoiceTable,
    FinanceProviderTable,
    InternalPaymentTable,
    InvoiceSequenceTable,
    LedgerEntryTable,
    LedgerLockTable,
    OutboxTable,
    PaymentProviderTable,
    PlatformPaymentTable,
    PlatformTenantTable,
    ReconciliationRecordTable,
)

logger = logging.getLogger(__name__)


def _dialect_name(session: AsyncSession) -> str:
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", ""))


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names forming the unique constraint for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.
    """
    stmt: Any
    if "postgresql" in _dialect_name(session):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# TenantRepository
# ---------------------------------------------------------------------------


class TenantRepository:
    """Read access to ``platform_tenants`` (trial window and contact)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> PlatformTenantTable | None:
        return await self._session.get(PlatformTenantTable, tenant_id)

    async def upsert(
        self,
        tenant_id: str,
        *,
        name: str,
        contact_email: str | None = None,
        trial_end_date: datetime | None = None,
        created_at: datetime | None = None,
    ) -> PlatformTenantTable:
        row = await self.get(tenant_id)
        if row is None:
            row = PlatformTenantTable(
                tenant_id=tenant_id,
                name=name,
                contact_email=contact_email,
                trial_end_date=trial_end_date,
                created_at=created_at or datetime.now(UTC),
            )
            self._session.add(row)
        else:
            row.name = name
            row.contact_email = contact_email
            row.trial_end_date = trial_end_date
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# FeeConfigRepository
# ---------------------------------------------------------------------------


class FeeConfigRepository:
    """Per-tenant fee configurations.  Activation is last-write-wins."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get_active(self) -> FeeConfigurationTable | None:
        stmt = (
            select(FeeConfigurationTable)
            .where(
                FeeConfigurationTable.tenant_id == self._tenant_id,
                FeeConfigurationTable.active.is_(True),
            )
            .order_by(FeeConfigurationTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_history(self, limit: int = 50) -> list[FeeConfigurationTable]:
        stmt = (
            select(FeeConfigurationTable)
            .where(FeeConfigurationTable.tenant_id == self._tenant_id)
            .order_by(FeeConfigurationTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def activate(self, values: dict[str, Any], *, created_by: str | None = None) -> FeeConfigurationTable:
        """Deactivate the current configuration and insert *values* as active."""
        await self._session.execute(
            update(FeeConfigurationTable)
            .where(
                FeeConfigurationTable.tenant_id == self._tenant_id,
                FeeConfigurationTable.active.is_(True),
            )
            .values(active=False, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        # The partial unique index on (tenant_id) WHERE active needs the
        # deactivation flushed before the new row goes in.
        await self._session.flush()

        row = FeeConfigurationTable(
            tenant_id=self._tenant_id,
            created_by=created_by,
            active=True,
            **values,
        )
        self._session.add(row)
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------

_MAX_LEDGER_PAGE_SIZE = 500


class LedgerRepository:
    """Append and conditional-update access to ``platform_fee_ledger``.

    Rows are never deleted.  Every status change goes through
    :meth:`transition`, which guards on the current status in SQL.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get_by_reference(self, reference_type: str, reference_id: str) -> LedgerEntryTable | None:
        stmt = select(LedgerEntryTable).where(
            LedgerEntryTable.tenant_id == self._tenant_id,
            LedgerEntryTable.reference_type == reference_type,
            LedgerEntryTable.reference_id == reference_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, values: dict[str, Any]) -> tuple[LedgerEntryTable, bool]:
        """Insert an entry unless its ``(reference_type, reference_id)`` exists.

        Returns ``(row, created)``; on a duplicate the existing row is
        returned with ``created=False``.
        """
        now = datetime.now(UTC)
        row_values = {
            "id": uuid.uuid4().hex,
            "tenant_id": self._tenant_id,
            "created_at": now,
            "updated_at": now,
            **values,
        }
        result = await _dialect_insert_nothing(
            self._session,
            LedgerEntryTable,
            values=row_values,
            index_elements=["tenant_id", "reference_type", "reference_id"],
        )
        created = (result.rowcount or 0) > 0
        row = await self.get_by_reference(values["reference_type"], values["reference_id"])
        if row is None:
            raise RuntimeError("ledger insert neither created nor found an entry")
        return row, created

    async def get_many(self, ledger_ids: Iterable[str]) -> list[LedgerEntryTable]:
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            return []
        stmt = (
            select(LedgerEntryTable)
            .where(LedgerEntryTable.tenant_id == self._tenant_id, LedgerEntryTable.id.in_(ids))
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def lock_statuses(self, ledger_ids: Iterable[str]) -> dict[str, str]:
        """Return ``{id: status}`` for the tenant's entries, row-locked on PostgreSQL."""
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            return {}
        stmt = select(LedgerEntryTable.id, LedgerEntryTable.status).where(
            LedgerEntryTable.tenant_id == self._tenant_id,
            LedgerEntryTable.id.in_(ids),
        )
        if "postgresql" in _dialect_name(self._session):
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt)
        return {row.id: row.status for row in result.all()}

    async def transition(
        self,
        ledger_ids: Sequence[str],
        *,
        from_statuses: Iterable[str],
        values: dict[str, Any],
    ) -> int:
        """Apply *values* to every listed entry still in *from_statuses*.

        One ``UPDATE`` statement for the whole batch.  Returns the number
        of rows changed.
        """
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            return 0
        stmt = (
            update(LedgerEntryTable)
            .where(
                LedgerEntryTable.tenant_id == self._tenant_id,
                LedgerEntryTable.id.in_(ids),
                LedgerEntryTable.status.in_(list(from_statuses)),
            )
            .values(updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def list_entries(
        self,
        *,
        statuses: Iterable[str] | None = None,
        reference_types: Iterable[str] | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LedgerEntryTable]:
        """List entries newest first, optionally filtered.

        ``since``/``until`` bound ``created_at`` as a half-open range.
        """
        stmt = select(LedgerEntryTable).where(LedgerEntryTable.tenant_id == self._tenant_id)
        if statuses is not None:
            stmt = stmt.where(LedgerEntryTable.status.in_(list(statuses)))
        if reference_types is not None:
            stmt = stmt.where(LedgerEntryTable.reference_type.in_(list(reference_types)))
        if since is not None:
            stmt = stmt.where(LedgerEntryTable.created_at >= since)
        if until is not None:
            stmt = stmt.where(LedgerEntryTable.created_at < until)
        stmt = stmt.order_by(LedgerEntryTable.created_at.desc(), LedgerEntryTable.id)
        if limit is not None:
            stmt = stmt.limit(min(limit, _MAX_LEDGER_PAGE_SIZE)).offset(offset)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def list_revenue_window(
        self,
        start: datetime,
        end: datetime,
        *,
        statuses: Iterable[str],
        all_tenants: bool = False,
    ) -> list[LedgerEntryTable]:
        """Entries created in ``[start, end)`` with the given statuses."""
        stmt = select(LedgerEntryTable).where(
            LedgerEntryTable.created_at >= start,
            LedgerEntryTable.created_at < end,
            LedgerEntryTable.status.in_(list(statuses)),
        )
        if not all_tenants:
            stmt = stmt.where(LedgerEntryTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def pending_tenants(self, period_end: datetime, billing_cycle: str) -> list[str]:
        """Tenants with ``pending`` entries of *billing_cycle* created before *period_end*."""
        stmt = (
            select(LedgerEntryTable.tenant_id)
            .where(
                LedgerEntryTable.status == "pending",
                LedgerEntryTable.billing_cycle == billing_cycle,
                LedgerEntryTable.created_at < period_end,
            )
            .distinct()
            .order_by(LedgerEntryTable.tenant_id)
        )
        result = await self._session.execute(stmt)
        return [row[0] for row in result.all()]

    async def list_pending_for_billing(self, period_end: datetime, billing_cycle: str) -> list[LedgerEntryTable]:
        stmt = select(LedgerEntryTable).where(
            LedgerEntryTable.tenant_id == self._tenant_id,
            LedgerEntryTable.status == "pending",
            LedgerEntryTable.billing_cycle == billing_cycle,
            LedgerEntryTable.created_at < period_end,
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def existing_references(self, reference_type: str, reference_ids: Iterable[str]) -> set[str]:
        ids = list(reference_ids)
        if not ids:
            return set()
        stmt = select(LedgerEntryTable.reference_id).where(
            LedgerEntryTable.tenant_id == self._tenant_id,
            LedgerEntryTable.reference_type == reference_type,
            LedgerEntryTable.reference_id.in_(ids),
        )
        result = await self._session.execute(stmt)
        return {row[0] for row in result.all()}


# ---------------------------------------------------------------------------
# PlatformPaymentRepository
# ---------------------------------------------------------------------------


class PlatformPaymentRepository:
    """Platform fee payment attempts.

    Not tenant-scoped on lookup by reference: webhooks arrive without a
    tenant and resolve it from the payment row.
    """

    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, values: dict[str, Any]) -> PlatformPaymentTable:
        row = PlatformPaymentTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_by_reference(self, payment_reference: str) -> PlatformPaymentTable | None:
        stmt = (
            select(PlatformPaymentTable)
            .where(PlatformPaymentTable.payment_reference == payment_reference)
            .execution_options(populate_existing=True)
        )
        if self._tenant_id is not None:
            stmt = stmt.where(PlatformPaymentTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def transition(
        self,
        payment_reference: str,
        *,
        from_statuses: Iterable[str],
        values: dict[str, Any],
    ) -> bool:
        """Conditionally update a payment keyed on its current status.

        Returns ``True`` if this call won the update.  Two concurrent
        deliveries for the same reference cannot both see ``True``.
        """
        stmt = (
            update(PlatformPaymentTable)
            .where(
                PlatformPaymentTable.payment_reference == payment_reference,
                PlatformPaymentTable.status.in_(list(from_statuses)),
            )
            .values(updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def list_payments(self, *, limit: int = 50, offset: int = 0) -> list[PlatformPaymentTable]:
        stmt = select(PlatformPaymentTable)
        if self._tenant_id is not None:
            stmt = stmt.where(PlatformPaymentTable.tenant_id == self._tenant_id)
        stmt = stmt.order_by(PlatformPaymentTable.created_at.desc()).limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# PaymentProviderRepository
# ---------------------------------------------------------------------------


class PaymentProviderRepository:
    """Platform-level provider credentials (encrypted at rest)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_active(self, provider_type: str) -> PaymentProviderTable | None:
        stmt = select(PaymentProviderTable).where(
            PaymentProviderTable.provider_type == provider_type,
            PaymentProviderTable.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def first_active(self) -> PaymentProviderTable | None:
        stmt = (
            select(PaymentProviderTable)
            .where(PaymentProviderTable.is_active.is_(True))
            .order_by(PaymentProviderTable.created_at)
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[PaymentProviderTable]:
        result = await self._session.execute(select(PaymentProviderTable).order_by(PaymentProviderTable.provider_type))
        return list(result.scalars().all())

    async def upsert(
        self,
        provider_type: str,
        *,
        display_name: str,
        api_key_encrypted: str | None,
        webhook_secret_encrypted: str | None,
        is_active: bool = True,
    ) -> PaymentProviderTable:
        stmt = select(PaymentProviderTable).where(PaymentProviderTable.provider_type == provider_type)
        row = (await self._session.execute(stmt)).scalar_one_or_none()
        if row is None:
            row = PaymentProviderTable(provider_type=provider_type, display_name=display_name)
            self._session.add(row)
        row.display_name = display_name
        row.is_active = is_active
        if api_key_encrypted is not None:
            row.api_key_encrypted = api_key_encrypted
        if webhook_secret_encrypted is not None:
            row.webhook_secret_encrypted = webhook_secret_encrypted
        await self._session.flush()
        return row


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class FinanceProviderRepository:
    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, provider_id: str) -> FinanceProviderTable | None:
        stmt = select(FinanceProviderTable).where(
            FinanceProviderTable.tenant_id == self._tenant_id,
            FinanceProviderTable.id == provider_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, values: dict[str, Any]) -> FinanceProviderTable:
        row = FinanceProviderTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def mark_synced(self, provider_id: str, at: datetime) -> None:
        await self._session.execute(
            update(FinanceProviderTable)
            .where(FinanceProviderTable.tenant_id == self._tenant_id, FinanceProviderTable.id == provider_id)
            .values(last_synced_at=at)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()


class InternalPaymentRepository:
    """Read access to guest payments recorded by the property."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, payment_id: str) -> InternalPaymentTable | None:
        stmt = select(InternalPaymentTable).where(
            InternalPaymentTable.tenant_id == self._tenant_id,
            InternalPaymentTable.id == payment_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(self, values: dict[str, Any]) -> InternalPaymentTable:
        row = InternalPaymentTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_unlinked(self) -> list[InternalPaymentTable]:
        """Payments not referenced by any reconciliation record, oldest first."""
        linked = select(ReconciliationRecordTable.matched_payment_id).where(
            ReconciliationRecordTable.tenant_id == self._tenant_id,
            ReconciliationRecordTable.matched_payment_id.is_not(None),
        )
        stmt = (
            select(InternalPaymentTable)
            .where(
                InternalPaymentTable.tenant_id == self._tenant_id,
                InternalPaymentTable.id.not_in(linked),
            )
            .order_by(InternalPaymentTable.created_at, InternalPaymentTable.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_by_reference(self, reference: str) -> list[InternalPaymentTable]:
        stmt = select(InternalPaymentTable).where(
            InternalPaymentTable.tenant_id == self._tenant_id,
            or_(
                InternalPaymentTable.transaction_ref == reference,
                InternalPaymentTable.provider_reference == reference,
            ),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class ReconciliationRepository:
    """Externally reported transactions and their links to internal payments."""

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def get(self, record_id: str) -> ReconciliationRecordTable | None:
        stmt = (
            select(ReconciliationRecordTable)
            .where(
                ReconciliationRecordTable.tenant_id == self._tenant_id,
                ReconciliationRecordTable.id == record_id,
            )
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference: str) -> ReconciliationRecordTable | None:
        stmt = select(ReconciliationRecordTable).where(
            ReconciliationRecordTable.tenant_id == self._tenant_id,
            ReconciliationRecordTable.reference == reference,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def insert_if_absent(self, values: dict[str, Any]) -> bool:
        """Insert a record unless its reference already exists.  Returns ``True`` if inserted."""
        row_values = {
            "id": uuid.uuid4().hex,
            "tenant_id": self._tenant_id,
            "created_at": datetime.now(UTC),
            **values,
        }
        result = await _dialect_insert_nothing(
            self._session,
            ReconciliationRecordTable,
            values=row_values,
            index_elements=["tenant_id", "reference"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def refresh_unmatched(self, reference: str, values: dict[str, Any]) -> bool:
        """Update an existing record's reported fields while it is still unmatched."""
        stmt = (
            update(ReconciliationRecordTable)
            .where(
                ReconciliationRecordTable.tenant_id == self._tenant_id,
                ReconciliationRecordTable.reference == reference,
                ReconciliationRecordTable.status == "unmatched",
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def list_records(
        self,
        *,
        status: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[ReconciliationRecordTable]:
        """Records oldest first, optionally filtered by status."""
        stmt = select(ReconciliationRecordTable).where(ReconciliationRecordTable.tenant_id == self._tenant_id)
        if status is not None:
            stmt = stmt.where(ReconciliationRecordTable.status == status)
        stmt = stmt.order_by(ReconciliationRecordTable.created_at, ReconciliationRecordTable.id)
        if limit is not None:
            stmt = stmt.limit(limit).offset(offset)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def linked_payment_ids(self) -> set[str]:
        stmt = select(ReconciliationRecordTable.matched_payment_id).where(
            ReconciliationRecordTable.tenant_id == self._tenant_id,
            ReconciliationRecordTable.matched_payment_id.is_not(None),
        )
        result = await self._session.execute(stmt)
        return {row[0] for row in result.all()}

    async def link(
        self,
        record_id: str,
        payment_id: str | None,
        *,
        status: str,
        matched_by: str,
        at: datetime,
        require_unmatched: bool = False,
    ) -> bool:
        """Link *record_id* to *payment_id* and set its status.

        With ``require_unmatched`` the update only applies while the record
        is still ``unmatched`` (used by the auto-matcher).
        """
        stmt = update(ReconciliationRecordTable).where(
            ReconciliationRecordTable.tenant_id == self._tenant_id,
            ReconciliationRecordTable.id == record_id,
        )
        if require_unmatched:
            stmt = stmt.where(ReconciliationRecordTable.status == "unmatched")
        stmt = stmt.values(
            matched_payment_id=payment_id,
            status=status,
            matched_by=matched_by,
            reconciled_at=at if payment_id is not None else None,
        ).execution_options(synchronize_session=False)
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# DisputeRepository
# ---------------------------------------------------------------------------


class DisputeRepository:
    def __init__(self, session: AsyncSession, tenant_id: str | None = None) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, values: dict[str, Any]) -> FeeDisputeTable:
        row = FeeDisputeTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, dispute_id: str) -> FeeDisputeTable | None:
        stmt = (
            select(FeeDisputeTable)
            .where(FeeDisputeTable.id == dispute_id)
            .execution_options(populate_existing=True)
        )
        if self._tenant_id is not None:
            stmt = stmt.where(FeeDisputeTable.tenant_id == self._tenant_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_disputes(self, *, status: str | None = None, limit: int = 50) -> list[FeeDisputeTable]:
        stmt = select(FeeDisputeTable)
        if self._tenant_id is not None:
            stmt = stmt.where(FeeDisputeTable.tenant_id == self._tenant_id)
        if status is not None:
            stmt = stmt.where(FeeDisputeTable.status == status)
        stmt = stmt.order_by(FeeDisputeTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def transition(self, dispute_id: str, *, from_statuses: Iterable[str], values: dict[str, Any]) -> bool:
        stmt = (
            update(FeeDisputeTable)
            .where(FeeDisputeTable.id == dispute_id, FeeDisputeTable.status.in_(list(from_statuses)))
            .values(updated_at=datetime.now(UTC), **values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def mark_processed(self, dispute_id: str, at: datetime) -> bool:
        """Stamp ``processed_at`` once; returns ``False`` if already processed."""
        stmt = (
            update(FeeDisputeTable)
            .where(FeeDisputeTable.id == dispute_id, FeeDisputeTable.processed_at.is_(None))
            .values(processed_at=at, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertRepository:
    """Revenue alert rules (mutable) and alerts (append-only)."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_rule(self, values: dict[str, Any]) -> AlertRuleTable:
        row = AlertRuleTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def get_rule(self, rule_id: str) -> AlertRuleTable | None:
        return await self._session.get(AlertRuleTable, rule_id)

    async def list_rules(self, *, active_only: bool = False) -> list[AlertRuleTable]:
        stmt = select(AlertRuleTable)
        if active_only:
            stmt = stmt.where(AlertRuleTable.active.is_(True))
        result = await self._session.execute(stmt.order_by(AlertRuleTable.created_at))
        return list(result.scalars().all())

    async def update_rule(self, rule_id: str, values: dict[str, Any]) -> AlertRuleTable | None:
        row = await self.get_rule(rule_id)
        if row is None:
            return None
        for key, value in values.items():
            setattr(row, key, value)
        await self._session.flush()
        return row

    async def touch_rule(self, rule_id: str, at: datetime) -> None:
        await self._session.execute(
            update(AlertRuleTable)
            .where(AlertRuleTable.id == rule_id)
            .values(last_checked_at=at)
            .execution_options(synchronize_session=False)
        )

    async def create_alert(self, values: dict[str, Any]) -> AlertTable:
        row = AlertTable(**values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_alerts(
        self,
        *,
        acknowledged: bool | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[AlertTable]:
        stmt = select(AlertTable)
        if acknowledged is not None:
            stmt = stmt.where(AlertTable.acknowledged.is_(acknowledged))
        if tenant_id is not None:
            stmt = stmt.where(AlertTable.tenant_id == tenant_id)
        stmt = stmt.order_by(AlertTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def acknowledge(self, alert_id: str, *, by: str, at: datetime) -> bool:
        stmt = (
            update(AlertTable)
            .where(AlertTable.id == alert_id, AlertTable.acknowledged.is_(False))
            .values(acknowledged=True, acknowledged_by=by, acknowledged_at=at)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# FeeInvoiceRepository
# ---------------------------------------------------------------------------


class FeeInvoiceRepository:
    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def next_number(self, prefix: str) -> int:
        """Claim the next platform-wide sequence number for *prefix*.

        A single ``INSERT .. ON CONFLICT DO UPDATE .. RETURNING`` so that
        concurrent runs serialise on the counter row instead of reusing
        a number.
        """
        if "postgresql" in _dialect_name(self._session):
            from sqlalchemy.dialects.postgresql import insert as _insert
        else:
            from sqlalchemy.dialects.sqlite import insert as _insert

        stmt = (
            _insert(InvoiceSequenceTable)
            .values(prefix=prefix, last_value=1)
            .on_conflict_do_update(
                index_elements=["prefix"],
                set_={"last_value": InvoiceSequenceTable.last_value + 1},
            )
            .returning(InvoiceSequenceTable.last_value)
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def create(self, values: dict[str, Any]) -> FeeInvoiceTable:
        row = FeeInvoiceTable(tenant_id=self._tenant_id, **values)
        self._session.add(row)
        await self._session.flush()
        return row

    async def update_totals(self, invoice_id: str, *, total_amount: Decimal, fee_count: int) -> None:
        await self._session.execute(
            update(FeeInvoiceTable)
            .where(FeeInvoiceTable.id == invoice_id)
            .values(total_amount=total_amount, fee_count=fee_count)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()


# ---------------------------------------------------------------------------
# OutboxRepository
# ---------------------------------------------------------------------------


class OutboxRepository:
    """Durable side-effect intents drained by the outbox worker."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(self, *, tenant_id: str, kind: str, payload: dict[str, Any]) -> OutboxTable:
        row = OutboxTable(tenant_id=tenant_id, kind=kind, payload=payload)
        self._session.add(row)
        await self._session.flush()
        return row

    async def due(self, now: datetime, limit: int = 50) -> list[OutboxTable]:
        stmt = (
            select(OutboxTable)
            .where(OutboxTable.status == "pending", OutboxTable.next_attempt_at <= now)
            .order_by(OutboxTable.next_attempt_at, OutboxTable.created_at)
            .limit(limit)
        )
        if "postgresql" in _dialect_name(self._session):
            stmt = stmt.with_for_update(skip_locked=True)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_status(self, status: str) -> list[OutboxTable]:
        result = await self._session.execute(
            select(OutboxTable).where(OutboxTable.status == status).order_by(OutboxTable.created_at)
        )
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# LedgerLockRepository
# ---------------------------------------------------------------------------


class LedgerLockRepository:
    """Named per-tenant locks with a TTL.

    ``acquire`` performs an atomic check-and-insert: if a non-expired lock
    already exists the acquisition fails; expired locks are reaped first.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    async def acquire(self, lock_name: str, holder: str, ttl_seconds: int) -> bool:
        now = datetime.now(UTC)
        await self._session.execute(
            delete(LedgerLockTable).where(
                LedgerLockTable.tenant_id == self._tenant_id,
                LedgerLockTable.lock_name == lock_name,
                LedgerLockTable.expires_at < now,
            )
        )
        result = await _dialect_insert_nothing(
            self._session,
            LedgerLockTable,
            values={
                "tenant_id": self._tenant_id,
                "lock_name": lock_name,
                "holder": holder,
                "acquired_at": now,
                "expires_at": now + timedelta(seconds=ttl_seconds),
            },
            index_elements=["tenant_id", "lock_name"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0

    async def release(self, lock_name: str, holder: str) -> None:
        await self._session.execute(
            delete(LedgerLockTable).where(
                LedgerLockTable.tenant_id == self._tenant_id,
                LedgerLockTable.lock_name == lock_name,
                LedgerLockTable.holder == holder,
            )
        )
        await self._session.flush()

    async def advisory_xact_lock(self, lock_name: str) -> None:
        """Take a transaction-scoped advisory lock on PostgreSQL (no-op elsewhere)."""
        if "postgresql" not in _dialect_name(self._session):
            return
        digest = hashlib.sha256(f"{self._tenant_id}:{lock_name}".encode()).digest()
        lock_id = int.from_bytes(digest[:8], "big", signed=True)
        await self._session.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": lock_id})


# ---------------------------------------------------------------------------
# AuditRepository
# ---------------------------------------------------------------------------


class AuditRepository:
    """Append-only audit log repository with hash-chaining for tamper evidence.

    Each audit entry is linked to its predecessor via ``previous_hash``, forming
    a per-tenant tamper-evident chain.  ``entry_hash`` is a SHA-256 digest of
    the entry's content fields concatenated with the previous hash, so any
    modification to an existing row breaks the chain for all later entries.
    """

    def __init__(self, session: AsyncSession, *, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id

    @staticmethod
    def _compute_hash(
        tenant_id: str,
        actor: str,
        action: str,
        entity_type: str | None,
        entity_id: str | None,
        metadata: dict | None,
        previous_hash: str | None,
        created_at: datetime,
    ) -> str:
        """SHA-256 over the ``|``-joined content fields (``None`` as empty string)."""
        parts = [
            tenant_id,
            actor,
            action,
            entity_type or "",
            entity_id or "",
            json.dumps(metadata, sort_keys=True, default=str) if metadata else "",
            previous_hash or "",
            created_at.isoformat(),
        ]
        return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()

    async def get_latest_hash(self) -> str | None:
        stmt = (
            select(AuditLogTable.entry_hash)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.desc(), AuditLogTable.id.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def log(
        self,
        *,
        actor: str,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict | None = None,
    ) -> str:
        """Write an audit entry chained to the tenant's latest one.  Returns the entry ID."""
        entry_id = uuid.uuid4().hex
        now = datetime.now(UTC)

        # Two concurrent inserts could read the same previous_hash and fork
        # the chain; serialise per tenant on PostgreSQL.
        if "postgresql" in _dialect_name(self._session):
            digest = hashlib.sha256(f"audit_chain_{self._tenant_id}".encode()).digest()
            lock_id = int.from_bytes(digest[:8], "big", signed=True)
            await self._session.execute(text("SELECT pg_advisory_xact_lock(:lock_id)"), {"lock_id": lock_id})

        previous_hash = await self.get_latest_hash()
        metadata = json.loads(json.dumps(metadata, default=str)) if metadata else None

        entry_hash = self._compute_hash(
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            previous_hash=previous_hash,
            created_at=now,
        )

        row = AuditLogTable(
            id=entry_id,
            tenant_id=self._tenant_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata_json=metadata,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            created_at=now,
        )
        self._session.add(row)
        await self._session.flush()

        logger.info(
            "Audit: tenant=%s actor=%s action=%s entity=%s/%s",
            self._tenant_id,
            actor,
            action,
            entity_type or "-",
            entity_id or "-",
        )
        return entry_id

    async def query(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuditLogTable]:
        """Query audit entries, most recent first.  Omitted filters are not applied."""
        stmt = select(AuditLogTable).where(AuditLogTable.tenant_id == self._tenant_id)

        if action is not None:
            stmt = stmt.where(AuditLogTable.action == action)
        if entity_type is not None:
            stmt = stmt.where(AuditLogTable.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(AuditLogTable.entity_id == entity_id)
        if since is not None:
            stmt = stmt.where(AuditLogTable.created_at >= since)

        stmt = (
            stmt.order_by(AuditLogTable.created_at.desc(), AuditLogTable.id.desc()).limit(limit).offset(offset)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        """Verify the hash chain integrity for this tenant.

        Returns
        -------
        tuple[bool, int]
            ``(is_valid, entries_checked)`` where ``is_valid`` is ``True``
            only if every entry's hash matches and the chain links are intact.
        """
        stmt = (
            select(AuditLogTable)
            .where(AuditLogTable.tenant_id == self._tenant_id)
            .order_by(AuditLogTable.created_at.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())

        checked = 0
        previous_hash: str | None = None

        for entry in entries:
            if entry.previous_hash != previous_hash:
                logger.warning(
                    "Audit chain break at entry %s: expected previous_hash=%s, got=%s",
                    entry.id,
                    previous_hash,
                    entry.previous_hash,
                )
                return (False, checked)

            expected_hash = self._compute_hash(
                tenant_id=entry.tenant_id,
                actor=entry.actor,
                action=entry.action,
                entity_type=entry.entity_type,
                entity_id=entry.entity_id,
                metadata=entry.metadata_json,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
            )
            if entry.entry_hash != expected_hash:
                logger.warning(
                    "Audit hash mismatch at entry %s: stored=%s, computed=%s",
                    entry.id,
                    entry.entry_hash,
                    expected_hash,
                )
                return (False, checked)

            previous_hash = entry.entry_hash
            checked += 1

        return (True, checked)
