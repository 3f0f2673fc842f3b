"""Fee configuration management, fee recording and historical backfill."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from ledger_core.context import LedgerContext
from ledger_core.errors import FeeValidationError
from ledger_core.fees import compute_fee, is_in_trial, reverse_fee
from ledger_core.models.fees import (
    BackfillError,
    BackfillResult,
    FeeConfiguration,
    FeeRecordResult,
    HistoricalTransaction,
    TenantProfile,
    TransactionClass,
    reference_type_for,
)
from ledger_core.models.ledger import LedgerStatus
from ledger_core.state.repository import FeeConfigRepository, LedgerRepository, TenantRepository
from ledger_core.state.tables import FeeConfigurationTable
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

_PAID_STATUSES = frozenset({"paid", "successful", "success", "completed"})


def config_from_row(row: FeeConfigurationTable) -> FeeConfiguration:
    return FeeConfiguration(
        id=row.id,
        tenant_id=row.tenant_id,
        fee_type=row.fee_type,
        booking_fee=row.booking_fee,
        qr_fee=row.qr_fee,
        payer=row.payer,
        billing_cycle=row.billing_cycle,
        applies_to=set(row.applies_to or []),
        trial_exemption_enabled=row.trial_exemption_enabled,
        trial_days=row.trial_days,
        active=row.active,
    )


class FeeService:
    """Tenant-scoped fee operations.

    Parameters
    ----------
    session:
        Active database session; the caller commits.
    ctx:
        Tenant, actor and clock for this unit of work.
    default_trial_days:
        Trial length applied when an update omits ``trial_days``.
    """

    def __init__(self, session: AsyncSession, ctx: LedgerContext, *, default_trial_days: int = 14) -> None:
        self._session = session
        self._ctx = ctx
        self._default_trial_days = default_trial_days
        self._configs = FeeConfigRepository(session, ctx.tenant_id)
        self._tenants = TenantRepository(session)
        self._ledger_repo = LedgerRepository(session, ctx.tenant_id)
        self._ledger = LedgerService(session, ctx)
        self._audit = AuditService.for_context(session, ctx)

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    async def get_config(self) -> FeeConfiguration | None:
        row = await self._configs.get_active()
        return config_from_row(row) if row is not None else None

    async def list_history(self, limit: int = 50) -> list[FeeConfiguration]:
        return [config_from_row(row) for row in await self._configs.list_history(limit=limit)]

    async def update_config(self, fields: dict[str, Any]) -> FeeConfiguration:
        """Validate *fields* and activate them as the tenant's configuration.

        The previously active configuration is deactivated in the same
        transaction (last write wins).
        """
        fields = {k: v for k, v in fields.items() if k not in {"id", "tenant_id", "active"}}
        fields.setdefault("trial_days", self._default_trial_days)
        try:
            config = FeeConfiguration(tenant_id=self._ctx.tenant_id, **fields)
        except ValidationError as exc:
            raise FeeValidationError(f"Invalid fee configuration: {exc.errors()[0]['msg']}") from exc

        row = await self._configs.activate(
            {
                "fee_type": config.fee_type.value,
                "booking_fee": config.booking_fee,
                "qr_fee": config.qr_fee,
                "payer": config.payer.value,
                "billing_cycle": config.billing_cycle.value,
                "applies_to": sorted(c.value for c in config.applies_to),
                "trial_exemption_enabled": config.trial_exemption_enabled,
                "trial_days": config.trial_days,
            },
            created_by=self._ctx.actor,
        )
        await self._audit.log(
            AuditAction.FEE_CONFIG_UPDATED,
            entity_type="platform_fee_configuration",
            entity_id=row.id,
            fee_type=config.fee_type.value,
            booking_fee=config.booking_fee,
            qr_fee=config.qr_fee,
            payer=config.payer.value,
            billing_cycle=config.billing_cycle.value,
        )
        logger.info("Fee configuration %s activated for tenant=%s", row.id, self._ctx.tenant_id)
        return config_from_row(row)

    async def tenant_profile(self) -> TenantProfile | None:
        row = await self._tenants.get(self._ctx.tenant_id)
        if row is None:
            return None
        return TenantProfile(tenant_id=row.tenant_id, created_at=row.created_at, trial_end_date=row.trial_end_date)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_fee(
        self,
        transaction_class: TransactionClass,
        reference_id: str,
        base_amount: Any,
        metadata: dict[str, Any] | None = None,
    ) -> FeeRecordResult:
        """Compute the fee for a billable transaction and append it to the ledger.

        The computed total is returned synchronously so the caller can
        charge the guest the right amount.  Recording the same reference
        twice returns the first entry.
        """
        config = await self.get_config()
        tenant = await self.tenant_profile()
        computation = compute_fee(config, transaction_class, base_amount, tenant=tenant, now=self._ctx.now())
        if not computation.applied:
            logger.debug(
                "No fee for tenant=%s ref=%s: %s",
                self._ctx.tenant_id,
                reference_id,
                computation.reason.value if computation.reason else None,
            )
            return FeeRecordResult(computation=computation)

        reference_type = reference_type_for(transaction_class)
        row, created = await self._ledger.create_entry(computation, reference_type, reference_id, metadata)
        if created:
            await self._audit.log(
                AuditAction.PLATFORM_FEE_RECORDED,
                entity_type="platform_fee_ledger",
                entity_id=row.id,
                reference_type=reference_type.value,
                reference_id=reference_id,
                fee_amount=computation.fee_amount,
                total_amount=computation.total_amount,
            )
        return FeeRecordResult(computation=computation, ledger_id=row.id, created=created, status=row.status)

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill(self, transactions: Sequence[HistoricalTransaction]) -> BackfillResult:
        """Create settled entries for paid transactions that predate fee recording.

        The fee already collected is recovered with the reverse calculation.
        Transactions that are unpaid, already on the ledger, outside the
        configuration's scope or inside the trial window are skipped;
        amounts too small for the configured fee are reported as errors.
        """
        result = BackfillResult()
        config = await self.get_config()
        if config is None:
            result.skipped = len(transactions)
            logger.info("Backfill skipped for tenant=%s: no active fee configuration", self._ctx.tenant_id)
            return result

        tenant = await self.tenant_profile()
        existing: dict[TransactionClass, set[str]] = {}
        for cls in {t.transaction_class for t in transactions}:
            existing[cls] = await self._ledger_repo.existing_references(
                reference_type_for(cls).value,
                [t.reference_id for t in transactions if t.transaction_class == cls],
            )

        for tx in transactions:
            if tx.payment_status.lower() not in _PAID_STATUSES:
                result.skipped += 1
                continue
            if tx.reference_id in existing[tx.transaction_class]:
                result.skipped += 1
                continue
            if tx.transaction_class not in config.applies_to:
                result.skipped += 1
                continue
            if is_in_trial(config, tenant, tx.paid_at):
                result.skipped += 1
                continue

            try:
                computation = reverse_fee(config, tx.transaction_class, tx.amount_paid)
            except FeeValidationError as exc:
                result.errors.append(BackfillError(reference_id=tx.reference_id, reason=str(exc)))
                continue

            row, created = await self._ledger_repo.insert(
                {
                    "reference_type": reference_type_for(tx.transaction_class).value,
                    "reference_id": tx.reference_id,
                    "base_amount": computation.base_amount,
                    "fee_amount": computation.fee_amount,
                    "rate": computation.rate,
                    "fee_type": config.fee_type.value,
                    "billing_cycle": config.billing_cycle.value,
                    "payer": config.payer.value,
                    "status": LedgerStatus.SETTLED.value,
                    "billed_at": tx.paid_at,
                    "settled_at": tx.paid_at,
                    "created_at": tx.paid_at,
                    "metadata_json": {"backfilled": True, "amount_paid": str(tx.amount_paid)},
                }
            )
            if not created:
                result.skipped += 1
                continue
            existing[tx.transaction_class].add(tx.reference_id)
            result.backfilled += 1
            result.ledger_ids.append(row.id)

        if result.backfilled:
            await self._audit.log(
                AuditAction.PLATFORM_FEE_BACKFILLED,
                entity_type="platform_fee_ledger",
                backfilled=result.backfilled,
                skipped=result.skipped,
                errors=len(result.errors),
            )
        logger.info(
            "Backfill for tenant=%s: backfilled=%d skipped=%d errors=%d",
            self._ctx.tenant_id,
            result.backfilled,
            result.skipped,
            len(result.errors),
        )
        return result
