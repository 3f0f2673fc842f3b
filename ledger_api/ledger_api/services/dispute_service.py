"""Fee disputes: tenant-raised challenges and their administrative resolution.

A dispute names one or more open ledger entries and asks for a waiver, a
reduction or a review.  Resolution is an administrative action; approval
applies the requested ledger mutation exactly once (guarded by
``processed_at``) and every step lands in the audit trail.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal
from typing import Any

from ledger_core.context import LedgerContext
from ledger_core.errors import (
    ConcurrencyConflictError,
    FeeValidationError,
    LedgerTransitionError,
    NotFoundError,
)
from ledger_core.fees import to_money
from ledger_core.ledger import find_ineligible
from ledger_core.models.disputes import DisputeAction, DisputeStatus, can_transition
from ledger_core.models.fees import BillingCycle, FeeType, Payer, ReferenceType
from ledger_core.models.ledger import OPEN_STATUSES, LedgerStatus
from ledger_core.state.repository import DisputeRepository, LedgerRepository
from ledger_core.state.tables import FeeDisputeTable
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

_DEFAULT_RESOLUTION_NOTE = "Fee dispute resolved in favor of tenant"


def dispute_to_dict(row: FeeDisputeTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "tenant_id": row.tenant_id,
        "ledger_ids": row.ledger_ids,
        "dispute_reason": row.dispute_reason,
        "requested_action": row.requested_action,
        "requested_amount": row.requested_amount,
        "disputed_amount": row.disputed_amount,
        "status": row.status,
        "admin_notes": row.admin_notes,
        "created_by": row.created_by,
        "resolved_by": row.resolved_by,
        "resolved_at": row.resolved_at,
        "processed_at": row.processed_at,
        "created_at": row.created_at,
    }


class DisputeService:
    """Dispute creation (tenant scope) and resolution (platform scope).

    Parameters
    ----------
    session:
        Active session.  Tenant-scoped for :meth:`create_dispute` and
        :meth:`list_disputes`; an administrative session for
        :meth:`update_status`.
    ctx:
        Tenant, actor and clock.  For resolution the tenant is taken from
        the dispute itself.
    scoped:
        When ``False`` disputes of every tenant are visible (platform admin).
    """

    def __init__(self, session: AsyncSession, ctx: LedgerContext, *, scoped: bool = True) -> None:
        self._session = session
        self._ctx = ctx
        self._disputes = DisputeRepository(session, ctx.tenant_id if scoped else None)

    # ------------------------------------------------------------------
    # Tenant side
    # ------------------------------------------------------------------

    async def create_dispute(
        self,
        ledger_ids: Sequence[str],
        reason: str,
        requested_action: DisputeAction,
        requested_amount: Decimal | None = None,
    ) -> FeeDisputeTable:
        """Open a dispute against open ledger entries.

        Raises
        ------
        FeeValidationError
            Missing reason, no entries, or an out-of-range reduction amount.
        LedgerTransitionError
            A named entry is missing or already settled, failed or waived.
        """
        if not reason or not reason.strip():
            raise FeeValidationError("A dispute reason is required")
        ids = list(dict.fromkeys(ledger_ids))
        if not ids:
            raise FeeValidationError("At least one ledger id is required")

        ledger_repo = LedgerRepository(self._session, self._ctx.tenant_id)
        statuses = await ledger_repo.lock_statuses(ids)
        offending = find_ineligible(ids, statuses, OPEN_STATUSES)
        if offending:
            raise LedgerTransitionError("Only pending or billed fees can be disputed", offending)

        entries = await ledger_repo.get_many(ids)
        disputed = sum((entry.fee_amount for entry in entries), Decimal("0.00"))

        amount: Decimal | None = None
        if requested_action == DisputeAction.REDUCE:
            if requested_amount is None:
                raise FeeValidationError("requested_amount is required for a reduction")
            amount = to_money(requested_amount)
            if amount <= 0 or amount > disputed:
                raise FeeValidationError(f"requested_amount must be greater than 0 and at most {disputed}")

        row = await self._disputes.create(
            {
                "ledger_ids": ids,
                "dispute_reason": reason.strip(),
                "requested_action": requested_action.value,
                "requested_amount": amount,
                "disputed_amount": disputed,
                "status": DisputeStatus.PENDING.value,
                "created_by": self._ctx.actor,
                "created_at": self._ctx.now(),
            }
        )
        await AuditService.for_context(self._session, self._ctx).log(
            AuditAction.PLATFORM_FEE_DISPUTE_CREATED,
            entity_type="platform_fee_dispute",
            entity_id=row.id,
            ledger_ids=ids,
            requested_action=requested_action.value,
            requested_amount=amount,
            disputed_amount=disputed,
        )
        logger.info(
            "Dispute %s opened by %s: tenant=%s action=%s entries=%d",
            row.id,
            self._ctx.actor,
            self._ctx.tenant_id,
            requested_action.value,
            len(ids),
        )
        return row

    async def list_disputes(self, *, status: DisputeStatus | None = None, limit: int = 50) -> list[FeeDisputeTable]:
        return await self._disputes.list_disputes(status=status.value if status else None, limit=limit)

    # ------------------------------------------------------------------
    # Platform side
    # ------------------------------------------------------------------

    async def update_status(
        self,
        dispute_id: str,
        status: DisputeStatus,
        admin_notes: str | None = None,
    ) -> FeeDisputeTable:
        """Move a dispute to *status*; approval applies the requested action.

        Raises
        ------
        NotFoundError
            No such dispute.
        LedgerTransitionError
            The dispute cannot move from its current status to *status*.
        ConcurrencyConflictError
            Another administrator resolved it first.
        """
        row = await self._disputes.get(dispute_id)
        if row is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")

        current = DisputeStatus(row.status)
        if not can_transition(current, status):
            raise LedgerTransitionError(
                f"Dispute cannot move from {current.value} to {status.value}",
                [dispute_id],
            )

        now = self._ctx.now()
        values: dict[str, Any] = {"status": status.value}
        if admin_notes is not None:
            values["admin_notes"] = admin_notes
        if status in (DisputeStatus.APPROVED, DisputeStatus.REJECTED):
            values["resolved_by"] = self._ctx.actor
            values["resolved_at"] = now

        won = await self._disputes.transition(dispute_id, from_statuses=[current.value], values=values)
        if not won:
            raise ConcurrencyConflictError(f"Dispute {dispute_id} was updated concurrently")

        ctx = self._ctx.for_tenant(row.tenant_id)
        await AuditService.for_context(self._session, ctx).log(
            AuditAction.PLATFORM_FEE_DISPUTE_UPDATED,
            entity_type="platform_fee_dispute",
            entity_id=dispute_id,
            from_status=current.value,
            to_status=status.value,
            admin_notes=admin_notes,
        )
        logger.info("Dispute %s moved %s -> %s by %s", dispute_id, current.value, status.value, self._ctx.actor)

        if status == DisputeStatus.APPROVED:
            await self._process(dispute_id, ctx)

        updated = await self._disputes.get(dispute_id)
        if updated is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        return updated

    async def _process(self, dispute_id: str, ctx: LedgerContext) -> None:
        """Apply an approved dispute to the ledger, at most once."""
        if not await self._disputes.mark_processed(dispute_id, ctx.now()):
            logger.info("Dispute %s already processed; skipping", dispute_id)
            return

        row = await self._disputes.get(dispute_id)
        if row is None:
            raise NotFoundError(f"Dispute {dispute_id} not found")
        action = DisputeAction(row.requested_action)
        ledger = LedgerService(self._session, ctx)
        mutation: dict[str, Any] = {"requested_action": action.value}

        if action == DisputeAction.WAIVE:
            reason = f"Dispute #{dispute_id} approved: {row.admin_notes or _DEFAULT_RESOLUTION_NOTE}"
            result = await ledger.waive(row.ledger_ids, reason, notes=row.admin_notes)
            mutation.update(waived_ids=result.ledger_ids, waived_amount=result.total_amount)
        elif action == DisputeAction.REDUCE:
            amount = row.requested_amount or Decimal("0.00")
            now = ctx.now()
            credit, _ = await LedgerRepository(self._session, ctx.tenant_id).insert(
                {
                    "reference_type": ReferenceType.DISPUTE_REFUND.value,
                    "reference_id": dispute_id,
                    "base_amount": Decimal("0.00"),
                    "fee_amount": -amount,
                    "rate": Decimal("0"),
                    "fee_type": FeeType.FLAT.value,
                    "billing_cycle": BillingCycle.REALTIME.value,
                    "payer": Payer.PROPERTY.value,
                    "status": LedgerStatus.BILLED.value,
                    "billed_at": now,
                    "created_at": now,
                    "metadata_json": {
                        "dispute_id": dispute_id,
                        "disputed_ledger_ids": list(row.ledger_ids),
                        "requested_amount": str(amount),
                    },
                }
            )
            mutation.update(credit_entry_id=credit.id, credit_amount=-amount)

        await AuditService.for_context(self._session, ctx).log(
            AuditAction.PLATFORM_FEE_DISPUTE_PROCESSED,
            entity_type="platform_fee_dispute",
            entity_id=dispute_id,
            **mutation,
        )
        logger.info("Dispute %s processed: %s", dispute_id, mutation)
