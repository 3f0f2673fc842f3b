"""Platform fee payment initiation and manual verification.

A payment covers a batch of open ledger entries.  Initiation records the
attempt, opens a hosted checkout at the chosen provider and hands the
payer's URL back to the caller; the ledger itself only changes when the
provider confirms the outcome (see :mod:`settlement_service`).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from decimal import Decimal

from ledger_core.context import LedgerContext
from ledger_core.errors import FeeValidationError, LedgerTransitionError, NotFoundError, ProviderError
from ledger_core.ledger import find_ineligible
from ledger_core.models.ledger import OPEN_STATUSES, LedgerStatus
from ledger_core.models.payments import (
    NON_TERMINAL_PAYMENT_STATUSES,
    PaymentInitiation,
    PaymentStatus,
    ProviderType,
    SettlementOutcome,
    SettlementResult,
)
from ledger_core.state.repository import LedgerRepository, PlatformPaymentRepository, TenantRepository
from ledger_core.state.tables import PlatformPaymentTable
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.ledger_service import LedgerService
from ledger_api.services.provider_client import ProviderGateway
from ledger_api.services.provider_service import ProviderCredentialService
from ledger_api.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = OPEN_STATUSES | {LedgerStatus.FAILED}


def payment_reference_for(ctx: LedgerContext) -> str:
    """``PF-{epoch_ms}-{tenant prefix}``; unique per tenant per millisecond."""
    epoch_ms = int(ctx.now().timestamp() * 1000)
    return f"PF-{epoch_ms}-{ctx.tenant_id[:8]}"


def payment_to_dict(row: PlatformPaymentTable) -> dict[str, object]:
    return {
        "id": row.id,
        "payment_reference": row.payment_reference,
        "payment_method_id": row.payment_method_id,
        "total_amount": row.total_amount,
        "provider": row.provider,
        "status": row.status,
        "ledger_ids": row.ledger_ids,
        "metadata": row.metadata_json,
        "settled_at": row.settled_at,
        "failed_at": row.failed_at,
        "created_at": row.created_at,
    }


class PaymentService:
    """Tenant-scoped payment operations.

    Parameters
    ----------
    session:
        Active tenant-scoped session; the caller commits.
    ctx:
        Tenant, actor and clock.
    gateway:
        Outbound provider client.
    credentials:
        Resolves the active provider and its decrypted API key.
    """

    def __init__(
        self,
        session: AsyncSession,
        ctx: LedgerContext,
        gateway: ProviderGateway,
        credentials: ProviderCredentialService,
    ) -> None:
        self._session = session
        self._ctx = ctx
        self._gateway = gateway
        self._credentials = credentials
        self._ledger_repo = LedgerRepository(session, ctx.tenant_id)
        self._ledger = LedgerService(session, ctx)
        self._payments = PlatformPaymentRepository(session, ctx.tenant_id)
        self._tenants = TenantRepository(session)
        self._audit = AuditService.for_context(session, ctx)

    async def initiate_payment(
        self,
        payment_method_id: str | None,
        ledger_ids: Sequence[str] | None = None,
        provider: ProviderType | None = None,
    ) -> PaymentInitiation:
        """Start a payment for the tenant's outstanding fees.

        Without *ledger_ids* every ``pending``/``billed`` entry is covered.
        With *ledger_ids* (retry mode) the listed entries may also be
        ``failed``; they are moved back to ``billed`` once the checkout is
        open.

        Raises
        ------
        FeeValidationError
            Nothing is outstanding, or the total is not positive.
        LedgerTransitionError
            A listed entry is missing or not payable.
        NotFoundError
            No active provider is configured.
        ProviderError
            The checkout could not be created.  The payment row is kept
            as ``failed`` and the ledger is unchanged.
        """
        is_retry = ledger_ids is not None
        if is_retry:
            ids = list(dict.fromkeys(ledger_ids or []))
            if not ids:
                raise FeeValidationError("ledger_ids must not be empty in retry mode")
            statuses = await self._ledger_repo.lock_statuses(ids)
            offending = find_ineligible(ids, statuses, frozenset(_RETRYABLE_STATUSES))
            if offending:
                raise LedgerTransitionError("Entries cannot be paid", offending)
            entries = await self._ledger_repo.get_many(ids)
        else:
            entries = await self._ledger_repo.list_entries(statuses=[s.value for s in OPEN_STATUSES])
            ids = [entry.id for entry in entries]
            statuses = {entry.id: entry.status for entry in entries}

        if not entries:
            raise FeeValidationError("No outstanding platform fees to pay")

        total = sum((entry.fee_amount for entry in entries), Decimal("0.00"))
        if total <= 0:
            raise FeeValidationError(f"Outstanding total must be positive (got {total})")

        resolved_provider, api_key = await self._credentials.resolve(provider)
        reference = payment_reference_for(self._ctx)
        now = self._ctx.now()

        payment = await self._payments.create(
            {
                "payment_method_id": payment_method_id,
                "payment_reference": reference,
                "total_amount": total,
                "provider": resolved_provider.value,
                "status": PaymentStatus.INITIATED.value,
                "ledger_ids": ids,
                "metadata_json": {
                    "fee_count": len(ids),
                    "is_retry": is_retry,
                    "initiated_at": now.isoformat(),
                },
                "created_at": now,
            }
        )

        tenant = await self._tenants.get(self._ctx.tenant_id)
        try:
            checkout = await self._gateway.create_checkout(
                resolved_provider,
                api_key,
                reference=reference,
                amount=total,
                email=tenant.contact_email if tenant else None,
                name=tenant.name if tenant else None,
            )
        except ProviderError as exc:
            await self._payments.transition(
                reference,
                from_statuses=[PaymentStatus.INITIATED.value],
                values={
                    "status": PaymentStatus.FAILED.value,
                    "failed_at": now,
                    "provider_response": {"error": str(exc), "status_code": exc.status_code},
                },
            )
            logger.warning("Checkout failed for payment %s: %s", reference, exc)
            raise

        failed_ids = [i for i in ids if statuses.get(i) == LedgerStatus.FAILED.value]
        if failed_ids:
            await self._ledger.reopen(failed_ids)

        await self._payments.transition(
            reference,
            from_statuses=[PaymentStatus.INITIATED.value],
            values={
                "status": PaymentStatus.PROCESSING.value,
                "metadata_json": {
                    **(payment.metadata_json or {}),
                    "payment_url": checkout.payment_url,
                    "provider_reference": checkout.provider_reference,
                },
            },
        )
        await self._audit.log(
            AuditAction.PLATFORM_FEE_PAYMENT_INITIATED,
            entity_type="platform_payment",
            entity_id=payment.id,
            payment_reference=reference,
            ledger_ids=ids,
            amount=total,
            provider=resolved_provider.value,
            is_retry=is_retry,
        )
        logger.info(
            "Payment %s initiated: tenant=%s provider=%s fees=%d total=%s retry=%s",
            reference,
            self._ctx.tenant_id,
            resolved_provider.value,
            len(ids),
            total,
            is_retry,
        )
        return PaymentInitiation(
            payment_id=payment.id,
            payment_reference=reference,
            provider=resolved_provider,
            total_amount=total,
            fee_count=len(ids),
            is_retry=is_retry,
            payment_url=checkout.payment_url,
            status=PaymentStatus.PROCESSING,
        )

    async def list_payments(self, *, limit: int = 50, offset: int = 0) -> list[PlatformPaymentTable]:
        return await self._payments.list_payments(limit=limit, offset=offset)

    async def verify_payment(
        self,
        reference: str,
        *,
        provider: ProviderType | None = None,
        session_id: str | None = None,
    ) -> SettlementResult:
        """Ask the provider for the payment's status and settle accordingly.

        Safe to call repeatedly: a payment that is already terminal is
        reported as already processed without contacting the provider.
        """
        payment = await self._payments.get_by_reference(reference)
        if payment is None:
            raise NotFoundError(f"No platform payment with reference {reference}")

        if PaymentStatus(payment.status) not in NON_TERMINAL_PAYMENT_STATUSES:
            return SettlementResult(
                payment_reference=reference,
                outcome=SettlementOutcome.ALREADY_PROCESSED,
                payment_id=payment.id,
                ledger_ids=list(payment.ledger_ids or []),
                amount=payment.total_amount,
            )

        settlement = SettlementService(self._session, actor=self._ctx.actor, clock=self._ctx.clock)

        resolved = provider or ProviderType(payment.provider)
        _, api_key = await self._credentials.resolve(resolved)
        event = await self._gateway.verify_transaction(resolved, api_key, reference, session_id=session_id)
        return await settlement.apply_event(event)
