"""Reconciliation of provider-reported transactions against internal payments.

External records arrive three ways (CSV upload, provider API sync, batch
submission) and are stored per tenant keyed by reference.  Linking a
record to an internal payment happens manually, through the amount-based
auto-matcher, or by reference during a batch.  The unique constraint on
``(tenant_id, matched_payment_id)`` backs the rule that a payment is
linked to at most one record.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_core.context import LedgerContext
from ledger_core.errors import ConcurrencyConflictError, LedgerTransitionError, NotFoundError
from ledger_core.models.payments import ProviderType
from ledger_core.models.reconciliation import (
    AutoMatchResult,
    BatchReconcileResult,
    CsvImportResult,
    ExternalTransaction,
    InternalPayment,
    MatchLink,
    MatchSuggestion,
    ProviderSyncResult,
    ReconciliationStatus,
    ReconciliationSummary,
    RecordSource,
)
from ledger_core.reconciliation import (
    amounts_match,
    classify_match,
    parse_reconciliation_csv,
    plan_auto_match,
    rank_candidates,
    summarize_records,
)
from ledger_core.reconciliation.matcher import DEFAULT_EPSILON
from ledger_core.reconciliation.scoring import DEFAULT_THRESHOLD
from ledger_core.state.repository import (
    FinanceProviderRepository,
    InternalPaymentRepository,
    LedgerLockRepository,
    ReconciliationRepository,
)
from ledger_core.state.tables import InternalPaymentTable, ReconciliationRecordTable
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.middleware.prometheus import RECONCILIATION_LINKS_TOTAL
from ledger_api.security import CredentialVault
from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.provider_client import ProviderGateway

logger = logging.getLogger(__name__)

AUTO_MATCH_LOCK = "auto_match"
MATCHED_BY_AUTO = "auto"
MATCHED_BY_BATCH = "batch"


def _as_internal(row: InternalPaymentTable) -> InternalPayment:
    return InternalPayment(
        id=row.id,
        amount=row.amount,
        transaction_ref=row.transaction_ref,
        provider_reference=row.provider_reference,
        provider=row.provider,
        created_at=row.created_at,
    )


def record_to_dict(row: ReconciliationRecordTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "reference": row.reference,
        "amount": row.amount,
        "source": row.source,
        "status": row.status,
        "matched_payment_id": row.matched_payment_id,
        "matched_by": row.matched_by,
        "reconciled_at": row.reconciled_at,
        "provider_id": row.provider_id,
        "transaction_date": row.transaction_date,
        "created_at": row.created_at,
    }


class ReconciliationService:
    """Tenant-scoped reconciliation operations.

    Parameters
    ----------
    session:
        Active tenant-scoped session; the caller commits.
    ctx:
        Tenant, actor and clock.
    epsilon:
        Amount tolerance: two amounts match when they differ by less.
    lock_ttl_seconds:
        Lifetime of the auto-match lock row if its holder dies.
    score_threshold:
        Minimum score for a fuzzy match suggestion.
    gateway, vault:
        Needed only for :meth:`provider_sync`.
    """

    def __init__(
        self,
        session: AsyncSession,
        ctx: LedgerContext,
        *,
        epsilon: Decimal = DEFAULT_EPSILON,
        lock_ttl_seconds: int = 300,
        score_threshold: int = DEFAULT_THRESHOLD,
        gateway: ProviderGateway | None = None,
        vault: CredentialVault | None = None,
    ) -> None:
        self._session = session
        self._ctx = ctx
        self._epsilon = epsilon
        self._lock_ttl = lock_ttl_seconds
        self._threshold = score_threshold
        self._gateway = gateway
        self._vault = vault
        self._records = ReconciliationRepository(session, ctx.tenant_id)
        self._payments = InternalPaymentRepository(session, ctx.tenant_id)
        self._locks = LedgerLockRepository(session, ctx.tenant_id)
        self._providers = FinanceProviderRepository(session, ctx.tenant_id)
        self._audit = AuditService.for_context(session, ctx)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def _store(
        self,
        tx: ExternalTransaction,
        source: str,
        provider_id: str | None = None,
        **extra: Any,
    ) -> bool:
        return await self._records.insert_if_absent(
            {
                "reference": tx.reference,
                "amount": tx.amount,
                "source": source,
                "status": extra.pop("status", ReconciliationStatus.UNMATCHED.value),
                "provider_id": provider_id,
                "transaction_date": tx.transaction_date,
                "raw_data": tx.raw_data or None,
                "created_at": self._ctx.now(),
                **extra,
            }
        )

    async def import_csv(self, text: str, *, provider: str | None = None) -> tuple[CsvImportResult, int]:
        """Parse *text* and store every valid row as an ``unmatched`` record.

        Returns the parse result (rows and per-row errors) and the number
        of records actually inserted; references already on file are left
        alone.
        """
        parsed = parse_reconciliation_csv(text, provider=provider)
        inserted = 0
        for tx in parsed.rows:
            if await self._store(tx, RecordSource.CSV.value):
                inserted += 1

        await self._audit.log(
            AuditAction.RECONCILIATION_IMPORTED,
            entity_type="finance_reconciliation_records",
            rows=len(parsed.rows),
            inserted=inserted,
            errors=len(parsed.errors),
        )
        logger.info(
            "CSV import for tenant=%s: rows=%d inserted=%d errors=%d",
            self._ctx.tenant_id,
            len(parsed.rows),
            inserted,
            len(parsed.errors),
        )
        return parsed, inserted

    async def provider_sync(self, provider_id: str, start: datetime, end: datetime) -> ProviderSyncResult:
        """Pull transactions from a tenant's provider account and store them.

        Existing records are refreshed while still unmatched.  When the
        provider has ``auto_reconcile`` enabled the auto-matcher runs
        afterwards in the same transaction.
        """
        if self._gateway is None or self._vault is None:
            raise RuntimeError("provider_sync requires a gateway and a credential vault")

        provider = await self._providers.get(provider_id)
        if provider is None or not provider.is_active:
            raise NotFoundError(f"Finance provider {provider_id} not found")
        api_key = self._vault.decrypt_optional(provider.api_key_encrypted)
        if not api_key:
            raise NotFoundError(f"Finance provider {provider_id} has no API key configured")

        provider_type = ProviderType(provider.provider_type)
        transactions = await self._gateway.list_transactions(provider_type, api_key, start, end)

        result = ProviderSyncResult(provider_id=provider_id, fetched=len(transactions))
        for tx in transactions:
            if await self._store(tx, provider_type.value, provider_id):
                result.inserted += 1
            elif await self._records.refresh_unmatched(
                tx.reference,
                {"amount": tx.amount, "transaction_date": tx.transaction_date, "raw_data": tx.raw_data or None},
            ):
                result.updated += 1

        await self._providers.mark_synced(provider_id, self._ctx.now())
        if provider.auto_reconcile:
            result.auto_match = await self.auto_match()

        await self._audit.log(
            AuditAction.RECONCILIATION_SYNCED,
            entity_type="finance_provider",
            entity_id=provider_id,
            provider=provider_type.value,
            fetched=result.fetched,
            inserted=result.inserted,
            updated=result.updated,
            auto_matched=result.auto_match.matched if result.auto_match else None,
        )
        return result

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    async def manual_match(self, record_id: str, payment_id: str) -> MatchLink:
        """Link a record to a payment chosen by an operator.

        The link status reflects the amounts: ``matched`` within epsilon,
        ``partial`` when less was received than reported, ``overpaid``
        otherwise.

        Raises
        ------
        NotFoundError
            Unknown record or payment.
        LedgerTransitionError
            The payment is already linked to a different record.
        """
        record = await self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Reconciliation record {record_id} not found")
        payment = await self._payments.get(payment_id)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")

        if payment_id != record.matched_payment_id and payment_id in await self._records.linked_payment_ids():
            raise LedgerTransitionError("Payment is already linked to another record", [payment_id])

        status = classify_match(record.amount, payment.amount, self._epsilon)
        await self._records.link(
            record_id,
            payment_id,
            status=status.value,
            matched_by=self._ctx.actor,
            at=self._ctx.now(),
        )
        RECONCILIATION_LINKS_TOTAL.labels(matched_by="manual").inc()
        await self._audit.log(
            AuditAction.RECONCILIATION_MATCHED,
            entity_type="finance_reconciliation_record",
            entity_id=record_id,
            payment_id=payment_id,
            status=status.value,
            external_amount=record.amount,
            internal_amount=payment.amount,
        )
        return MatchLink(record_id=record_id, payment_id=payment_id, status=status)

    async def auto_match(self) -> AutoMatchResult:
        """Link unmatched records to unlinked payments of equal amount.

        Single-flight per tenant: a TTL lock row rejects a concurrent run
        and, on PostgreSQL, a transaction-scoped advisory lock serialises
        the planning and linking.

        Raises
        ------
        ConcurrencyConflictError
            Another auto-match run holds the lock.
        """
        holder = uuid.uuid4().hex
        if not await self._locks.acquire(AUTO_MATCH_LOCK, holder, self._lock_ttl):
            raise ConcurrencyConflictError("Auto-match is already running for this tenant")
        await self._locks.advisory_xact_lock(AUTO_MATCH_LOCK)

        records = await self._records.list_records(status=ReconciliationStatus.UNMATCHED.value)
        candidates = [_as_internal(row) for row in await self._payments.list_unlinked()]
        already_linked = await self._records.linked_payment_ids()
        plan = plan_auto_match(records, candidates, already_linked, self._epsilon)

        now = self._ctx.now()
        result = AutoMatchResult(examined=len(records))
        for record_id, payment_id in plan:
            linked = await self._records.link(
                record_id,
                payment_id,
                status=ReconciliationStatus.MATCHED.value,
                matched_by=MATCHED_BY_AUTO,
                at=now,
                require_unmatched=True,
            )
            if linked:
                result.matched += 1
                result.links.append(
                    MatchLink(record_id=record_id, payment_id=payment_id, status=ReconciliationStatus.MATCHED)
                )
        if result.matched:
            RECONCILIATION_LINKS_TOTAL.labels(matched_by=MATCHED_BY_AUTO).inc(result.matched)

        # A rollback discards the lock row together with the links.
        await self._locks.release(AUTO_MATCH_LOCK, holder)

        await self._audit.log(
            AuditAction.RECONCILIATION_AUTO_MATCHED,
            entity_type="finance_reconciliation_records",
            examined=result.examined,
            matched=result.matched,
        )
        logger.info(
            "Auto-match for tenant=%s: examined=%d matched=%d",
            self._ctx.tenant_id,
            result.examined,
            result.matched,
        )
        return result

    async def reconcile_batch(
        self,
        transactions: Sequence[ExternalTransaction],
        *,
        source: str = RecordSource.API.value,
        provider_id: str | None = None,
    ) -> BatchReconcileResult:
        """Store and match a batch of external transactions by reference.

        A payment whose ``transaction_ref`` or ``provider_reference``
        equals the record's reference is linked as ``matched`` when the
        amounts agree and ``partial`` when they do not.  References with
        no payment stay ``unmatched``; references already on file are
        skipped.
        """
        result = BatchReconcileResult()
        linked = await self._records.linked_payment_ids()
        now = self._ctx.now()

        for tx in transactions:
            if await self._records.get_by_reference(tx.reference) is not None:
                result.skipped += 1
                continue

            candidates = [p for p in await self._payments.find_by_reference(tx.reference) if p.id not in linked]
            exact = [p for p in candidates if amounts_match(tx.amount, p.amount, self._epsilon)]
            chosen = None
            if exact:
                chosen = min(exact, key=lambda p: (p.created_at, p.id))
                status = ReconciliationStatus.MATCHED
            elif candidates:
                chosen = min(candidates, key=lambda p: (abs(p.amount - tx.amount), p.created_at, p.id))
                status = ReconciliationStatus.PARTIAL
            else:
                status = ReconciliationStatus.UNMATCHED

            extra: dict[str, Any] = {"status": status.value}
            if chosen is not None:
                extra.update(matched_payment_id=chosen.id, matched_by=MATCHED_BY_BATCH, reconciled_at=now)

            if not await self._store(tx, source, provider_id, **extra):
                result.skipped += 1
                continue

            result.created += 1
            if chosen is not None:
                linked.add(chosen.id)
                RECONCILIATION_LINKS_TOTAL.labels(matched_by=MATCHED_BY_BATCH).inc()
            if status == ReconciliationStatus.MATCHED:
                result.matched += 1
            elif status == ReconciliationStatus.PARTIAL:
                result.partial += 1
            else:
                result.unmatched += 1

        await self._audit.log(
            AuditAction.RECONCILIATION_BATCH,
            entity_type="finance_reconciliation_records",
            source=source,
            created=result.created,
            matched=result.matched,
            partial=result.partial,
            unmatched=result.unmatched,
            skipped=result.skipped,
        )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def summary(self) -> ReconciliationSummary:
        return summarize_records(await self._records.list_records())

    async def list_records(
        self,
        *,
        status: ReconciliationStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[ReconciliationRecordTable]:
        return await self._records.list_records(status=status.value if status else None, limit=limit, offset=offset)

    async def suggest_matches(self, record_id: str, *, limit: int = 5) -> list[MatchSuggestion]:
        """Rank unlinked payments by fuzzy similarity to *record_id*."""
        record = await self._records.get(record_id)
        if record is None:
            raise NotFoundError(f"Reconciliation record {record_id} not found")

        external = ExternalTransaction(
            reference=record.reference,
            amount=record.amount,
            transaction_date=record.transaction_date,
            provider=None if record.source in {s.value for s in RecordSource} else record.source,
        )
        candidates = [_as_internal(row) for row in await self._payments.list_unlinked()]
        return rank_candidates(external, candidates, threshold=self._threshold, limit=limit)
