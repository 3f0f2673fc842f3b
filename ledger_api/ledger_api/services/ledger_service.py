"""Ledger store operations: append entries and run batch state transitions.

Every batch transition follows the same shape:

1. lock the requested rows (``SELECT ... FOR UPDATE`` on PostgreSQL) and
   name every entry that is missing or in a status the transition does
   not accept; any offender rejects the whole batch;
2. issue one conditional ``UPDATE`` guarded on the accepted statuses;
3. treat a rowcount short of the batch size as a lost race.

Nothing is committed here.  The caller's session owns the transaction, so
a rejected batch leaves every entry untouched.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_core.context import LedgerContext
from ledger_core.errors import ConcurrencyConflictError, FeeValidationError, LedgerTransitionError
from ledger_core.fees import initial_status
from ledger_core.ledger import ALLOWED_SOURCES, TARGET_STATUS, LedgerTransition, find_ineligible, summarize
from ledger_core.models.fees import FeeComputation, ReferenceType
from ledger_core.models.ledger import LedgerStatus, LedgerSummary, TransitionResult
from ledger_core.state.repository import LedgerRepository
from ledger_core.state.tables import LedgerEntryTable
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.middleware.prometheus import LEDGER_TRANSITIONS_TOTAL
from ledger_api.services.audit_service import AuditAction, AuditService

logger = logging.getLogger(__name__)


def entry_to_dict(row: LedgerEntryTable) -> dict[str, Any]:
    """Serialise a ledger row for API responses."""
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "reference_type": row.reference_type,
        "reference_id": row.reference_id,
        "base_amount": row.base_amount,
        "fee_amount": row.fee_amount,
        "rate": row.rate,
        "fee_type": row.fee_type,
        "billing_cycle": row.billing_cycle,
        "payer": row.payer,
        "status": row.status,
        "billed_at": row.billed_at,
        "settled_at": row.settled_at,
        "failed_at": row.failed_at,
        "waived_at": row.waived_at,
        "payment_id": row.payment_id,
        "invoice_id": row.invoice_id,
        "waived_reason": row.waived_reason,
        "approval_notes": row.approval_notes,
        "waived_by": row.waived_by,
        "metadata": row.metadata_json,
        "created_at": row.created_at,
    }


class LedgerService:
    """Tenant-scoped ledger operations.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    ctx:
        Tenant, actor and clock for this unit of work.
    """

    def __init__(self, session: AsyncSession, ctx: LedgerContext) -> None:
        self._session = session
        self._ctx = ctx
        self._repo = LedgerRepository(session, ctx.tenant_id)
        self._audit = AuditService.for_context(session, ctx)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    async def create_entry(
        self,
        computation: FeeComputation,
        reference_type: ReferenceType,
        reference_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> tuple[LedgerEntryTable, bool]:
        """Insert the entry for an applied fee, or return the existing one.

        Realtime fees are due immediately and start ``billed``; deferred
        fees start ``pending`` until the billing run picks them up.
        """
        if not computation.applied:
            raise FeeValidationError(f"Fee was not applied ({computation.reason}); nothing to record")
        if not reference_id or not reference_id.strip():
            raise FeeValidationError("reference_id is required")

        status = initial_status(computation.billing_cycle)
        now = self._ctx.now()
        values: dict[str, Any] = {
            "reference_type": reference_type.value,
            "reference_id": reference_id,
            "base_amount": computation.base_amount,
            "fee_amount": computation.fee_amount,
            "rate": computation.rate,
            "fee_type": computation.fee_type.value,
            "billing_cycle": computation.billing_cycle.value,
            "payer": computation.payer.value,
            "status": status.value,
            "billed_at": now if status == LedgerStatus.BILLED else None,
            "metadata_json": metadata,
            "created_at": now,
            "updated_at": now,
        }
        row, created = await self._repo.insert(values)
        if created:
            logger.info(
                "Ledger entry created: tenant=%s ref=%s/%s fee=%s status=%s",
                self._ctx.tenant_id,
                reference_type.value,
                reference_id,
                computation.fee_amount,
                status.value,
            )
        else:
            logger.info(
                "Ledger entry already exists for %s/%s; returning existing entry %s",
                reference_type.value,
                reference_id,
                row.id,
            )
        return row, created

    # ------------------------------------------------------------------
    # Batch transitions
    # ------------------------------------------------------------------

    async def _transition(
        self,
        transition: LedgerTransition,
        ledger_ids: Iterable[str],
        values: dict[str, Any],
        *,
        payment_id: str | None = None,
    ) -> TransitionResult:
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            raise FeeValidationError("At least one ledger id is required")

        allowed = ALLOWED_SOURCES[transition]
        statuses = await self._repo.lock_statuses(ids)
        offending = find_ineligible(ids, statuses, allowed)
        if offending:
            logger.warning(
                "Rejected %s of %d entries for tenant=%s: ineligible=%s",
                transition.value,
                len(ids),
                self._ctx.tenant_id,
                offending,
            )
            raise LedgerTransitionError(f"Entries not eligible for {transition.value}", offending)

        target = TARGET_STATUS[transition]
        changed = await self._repo.transition(
            ids,
            from_statuses=[s.value for s in allowed],
            values={"status": target.value, **values},
        )
        if changed != len(ids):
            raise ConcurrencyConflictError(
                f"{transition.value} changed {changed} of {len(ids)} entries; a concurrent update intervened"
            )

        rows = await self._repo.get_many(ids)
        total = sum((row.fee_amount for row in rows), Decimal("0.00"))
        LEDGER_TRANSITIONS_TOTAL.labels(transition=transition.value).inc(len(ids))
        logger.info(
            "Ledger %s: tenant=%s entries=%d amount=%s",
            transition.value,
            self._ctx.tenant_id,
            len(ids),
            total,
        )
        return TransitionResult(ledger_ids=ids, to_status=target, total_amount=total, payment_id=payment_id)

    async def settle(self, ledger_ids: Sequence[str], payment_id: str) -> TransitionResult:
        now = self._ctx.now()
        return await self._transition(
            LedgerTransition.SETTLE,
            ledger_ids,
            {"settled_at": now, "payment_id": payment_id},
            payment_id=payment_id,
        )

    async def fail(self, ledger_ids: Sequence[str], payment_id: str) -> TransitionResult:
        now = self._ctx.now()
        return await self._transition(
            LedgerTransition.FAIL,
            ledger_ids,
            {"failed_at": now, "payment_id": payment_id},
            payment_id=payment_id,
        )

    async def bill(self, ledger_ids: Sequence[str], invoice_id: str | None = None) -> TransitionResult:
        return await self._transition(
            LedgerTransition.BILL,
            ledger_ids,
            {"billed_at": self._ctx.now(), "invoice_id": invoice_id},
        )

    async def reopen(self, ledger_ids: Sequence[str]) -> TransitionResult:
        """Move failed entries back to ``billed`` for a new payment attempt."""
        return await self._transition(
            LedgerTransition.REOPEN,
            ledger_ids,
            {"failed_at": None, "payment_id": None},
        )

    async def waive(
        self,
        ledger_ids: Sequence[str],
        reason: str,
        notes: str | None = None,
    ) -> TransitionResult:
        """Forgive open entries.  A human-readable *reason* is mandatory."""
        if not reason or not reason.strip():
            raise FeeValidationError("A waiver reason is required")

        result = await self._transition(
            LedgerTransition.WAIVE,
            ledger_ids,
            {
                "waived_at": self._ctx.now(),
                "waived_reason": reason.strip(),
                "approval_notes": notes,
                "waived_by": self._ctx.actor,
            },
        )
        await self._audit.log(
            AuditAction.PLATFORM_FEE_WAIVED,
            entity_type="platform_fee_ledger",
            entity_id=result.ledger_ids[0] if len(result.ledger_ids) == 1 else None,
            ledger_ids=result.ledger_ids,
            amount=result.total_amount,
            reason=reason.strip(),
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def summary(self, *, since: datetime | None = None, until: datetime | None = None) -> LedgerSummary:
        entries = await self._repo.list_entries(since=since, until=until)
        return summarize(entries)

    async def list_entries(
        self,
        *,
        status: LedgerStatus | None = None,
        reference_type: ReferenceType | None = None,
        since: datetime | None = None,
        until: datetime | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[LedgerEntryTable]:
        return await self._repo.list_entries(
            statuses=[status.value] if status else None,
            reference_types=[reference_type.value] if reference_type else None,
            since=since,
            until=until,
            limit=limit,
            offset=offset,
        )

    async def get_many(self, ledger_ids: Iterable[str]) -> list[LedgerEntryTable]:
        return await self._repo.get_many(ledger_ids)
