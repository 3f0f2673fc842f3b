"""Periodic billing run for deferred (monthly) platform fees.

Each run invoices the ``pending`` monthly entries created before the period
end, one invoice per tenant, and moves those entries to ``billed`` in a
single conditional update.  Entries that left ``pending`` between the scan
and the update (waived, disputed and resolved) are simply not billed; the
invoice totals are recomputed from the rows that actually moved.

Invoice numbers come from a platform-wide counter per month prefix, so
they stay unique across tenants even though each invoice row is only
visible to its own tenant.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

from ledger_core.context import utcnow
from ledger_core.models.fees import BillingCycle
from ledger_core.models.ledger import LedgerStatus
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import FeeInvoiceRepository, LedgerRepository
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.middleware.prometheus import LEDGER_TRANSITIONS_TOTAL
from ledger_api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)

INVOICE_DUE_DAYS = 7


def current_period_end(now: datetime) -> datetime:
    """Start of *now*'s month (UTC): the exclusive end of the previous period."""
    return now.astimezone(UTC).replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def invoice_prefix(period_end: datetime) -> str:
    """``PFI-YYYYMM-`` for the month the period covers."""
    billed_month = period_end - timedelta(microseconds=1)
    return f"PFI-{billed_month:%Y%m}-"


class BillingService:
    """Runs across every tenant; requires an administrative session."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        actor: str = "billing-job",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._actor = actor
        self._clock = clock

    async def run_monthly(self, period_end: datetime | None = None) -> list[dict[str, Any]]:
        """Invoice every tenant's pending monthly fees created before *period_end*.

        Parameters
        ----------
        period_end:
            Exclusive upper bound on ``created_at``.  Defaults to the start
            of the current month.

        Returns
        -------
        list[dict]
            One summary per invoiced tenant: ``tenant_id``, ``invoice_id``,
            ``invoice_number``, ``fee_count``, ``total_amount``.
        """
        now = self._clock()
        period_end = period_end or current_period_end(now)
        cycle = BillingCycle.MONTHLY.value

        scanner = LedgerRepository(self._session, "*")
        tenants = await scanner.pending_tenants(period_end, cycle)
        summaries: list[dict[str, Any]] = []

        for tenant_id in tenants:
            await set_tenant_context(self._session, tenant_id)
            ledger = LedgerRepository(self._session, tenant_id)
            invoices = FeeInvoiceRepository(self._session, tenant_id)

            pending = await ledger.list_pending_for_billing(period_end, cycle)
            if not pending:
                continue

            prefix = invoice_prefix(period_end)
            sequence = await invoices.next_number(prefix)
            invoice = await invoices.create(
                {
                    "invoice_number": f"{prefix}{sequence:04d}",
                    "period_start": min(entry.created_at for entry in pending),
                    "period_end": period_end,
                    "total_amount": Decimal("0.00"),
                    "fee_count": 0,
                    "due_date": period_end + timedelta(days=INVOICE_DUE_DAYS),
                    "status": "issued",
                    "created_at": now,
                }
            )

            ids = [entry.id for entry in pending]
            moved = await ledger.transition(
                ids,
                from_statuses=[LedgerStatus.PENDING.value],
                values={
                    "status": LedgerStatus.BILLED.value,
                    "billed_at": now,
                    "invoice_id": invoice.id,
                },
            )
            billed = [entry for entry in await ledger.get_many(ids) if entry.invoice_id == invoice.id]
            total = sum((entry.fee_amount for entry in billed), Decimal("0.00"))
            await invoices.update_totals(invoice.id, total_amount=total, fee_count=len(billed))
            LEDGER_TRANSITIONS_TOTAL.labels(transition="bill").inc(moved)

            if moved < len(ids):
                logger.info(
                    "Billing run skipped %d entr(ies) for tenant=%s that changed state",
                    len(ids) - moved,
                    tenant_id,
                )

            await AuditService(self._session, tenant_id=tenant_id, actor=self._actor).log(
                AuditAction.PLATFORM_FEE_BILLED,
                entity_type="platform_fee_invoice",
                entity_id=invoice.id,
                invoice_number=invoice.invoice_number,
                ledger_ids=[entry.id for entry in billed],
                total_amount=total,
                period_end=period_end.isoformat(),
            )
            summaries.append(
                {
                    "tenant_id": tenant_id,
                    "invoice_id": invoice.id,
                    "invoice_number": invoice.invoice_number,
                    "fee_count": len(billed),
                    "total_amount": total,
                }
            )
            logger.info(
                "Invoiced tenant=%s invoice=%s fees=%d total=%s",
                tenant_id,
                invoice.invoice_number,
                len(billed),
                total,
            )

        logger.info("Monthly billing run complete: period_end=%s tenants=%d", period_end.isoformat(), len(summaries))
        return summaries
