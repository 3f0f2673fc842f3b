"""Payment settlement processor.

Consumes provider events (verified webhooks, confirmed redirect lookups,
manual verification) and moves the payment and its ledger entries to a
terminal state exactly once.

Idempotency rests on the conditional payment update: the row only moves
out of ``initiated``/``processing`` once, so a redelivered webhook finds
nothing to update and is acknowledged as already processed.  Ledger
changes, the audit entry and the outbox intents are written in the same
transaction as the payment update, and the HTTP side effects are only
attempted later by the outbox worker.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from ledger_core.context import LedgerContext, utcnow
from ledger_core.errors import FeeValidationError, NotFoundError, SignatureVerificationError
from ledger_core.models.payments import (
    NON_TERMINAL_PAYMENT_STATUSES,
    PaymentStatus,
    ProviderType,
    ReportedStatus,
    SettlementOutcome,
    SettlementResult,
)
from ledger_core.models.webhooks import UnrecognizedEvent, provider_of
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import OutboxRepository, PlatformPaymentRepository
from ledger_core.webhooks import parse_provider_event, verify_webhook
from ledger_core.webhooks.signatures import DEFAULT_STRIPE_TOLERANCE_SECONDS
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.middleware.prometheus import SETTLEMENTS_TOTAL, WEBHOOK_VERIFICATIONS_TOTAL
from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.ledger_service import LedgerService
from ledger_api.services.provider_service import ProviderCredentialService

logger = logging.getLogger(__name__)

OUTBOX_RECEIPT = "receipt"
OUTBOX_NOTIFICATION = "notification"

_RETRY_GUIDANCE = (
    "Your platform fee payment could not be completed. The fees are still outstanding; "
    "start a new payment for the same fees to retry."
)


class SettlementService:
    """Apply provider-reported outcomes to payments and the ledger.

    Parameters
    ----------
    session:
        A session **without** tenant context.  The tenant is resolved from
        the payment reference and bound before any ledger write.
    credentials:
        Source of decrypted webhook secrets.  Required only for
        :meth:`handle_webhook`.
    actor:
        Recorded on audit entries.
    clock:
        Source of "now"; tests pass a fixed clock.
    stripe_tolerance_seconds:
        Maximum age of a Stripe signature timestamp (``0`` disables the check).
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        credentials: ProviderCredentialService | None = None,
        actor: str = "webhook",
        clock: Callable[[], datetime] = utcnow,
        stripe_tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
    ) -> None:
        self._session = session
        self._credentials = credentials
        self._actor = actor
        self._clock = clock
        self._stripe_tolerance = stripe_tolerance_seconds
        self._payments = PlatformPaymentRepository(session)
        self._outbox = OutboxRepository(session)

    # ------------------------------------------------------------------
    # Webhook entry point
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        body: bytes,
        headers: Mapping[str, str],
        provider: ProviderType | None = None,
    ) -> SettlementResult:
        """Decode, verify and apply one inbound webhook delivery.

        Raises
        ------
        FeeValidationError
            The body is not JSON or matches no known provider shape.
        SignatureVerificationError
            A webhook secret is configured and the signature does not match.
        """
        try:
            payload = json.loads(body)
        except ValueError as exc:
            raise FeeValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise FeeValidationError("Webhook body must be a JSON object")

        event = parse_provider_event(payload, provider=provider)
        resolved = provider or provider_of(event)
        if resolved is None:
            raise FeeValidationError("Unrecognised webhook payload")

        secret = await self._credentials.webhook_secret(resolved) if self._credentials else None
        try:
            verification = verify_webhook(
                resolved,
                body,
                headers,
                secret,
                stripe_tolerance_seconds=self._stripe_tolerance,
            )
        except SignatureVerificationError as exc:
            WEBHOOK_VERIFICATIONS_TOTAL.labels(provider=resolved.value, result="rejected").inc()
            logger.warning("Rejected %s webhook: %s", resolved.value, exc.reason)
            raise

        WEBHOOK_VERIFICATIONS_TOTAL.labels(
            provider=resolved.value,
            result="degraded" if verification.degraded_trust else "verified",
        ).inc()

        if isinstance(event, UnrecognizedEvent):
            raise FeeValidationError("Webhook payload carries no payment reference")
        return await self.apply_event(event, degraded_trust=verification.degraded_trust)

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def apply_event(self, event: Any, *, degraded_trust: bool = False) -> SettlementResult:
        """Settle or fail the payment named by *event*.

        Returns
        -------
        SettlementResult
            ``ALREADY_PROCESSED`` when the payment was terminal before this
            call; ``IGNORED`` when the provider still reports it pending.

        Raises
        ------
        NotFoundError
            No payment carries the event's reference.
        LedgerTransitionError
            A covered ledger entry left the open states (for example it was
            waived) while the payment was in flight.
        """
        if isinstance(event, UnrecognizedEvent) or not event.reference:
            raise FeeValidationError("Provider event carries no payment reference")

        reference = event.reference
        payment = await self._payments.get_by_reference(reference)
        if payment is None:
            SETTLEMENTS_TOTAL.labels(outcome="not_found").inc()
            logger.warning("Settlement for unknown payment reference %s", reference)
            raise NotFoundError(f"No platform payment with reference {reference}")

        await set_tenant_context(self._session, payment.tenant_id)
        ledger_ids = list(payment.ledger_ids or [])

        if event.reported_status == ReportedStatus.PENDING:
            SETTLEMENTS_TOTAL.labels(outcome=SettlementOutcome.IGNORED.value).inc()
            logger.info("Payment %s still pending at provider (raw=%s)", reference, event.raw_status)
            return SettlementResult(
                payment_reference=reference,
                outcome=SettlementOutcome.IGNORED,
                payment_id=payment.id,
                degraded_trust=degraded_trust,
            )

        now = self._clock()
        succeeded = event.reported_status == ReportedStatus.SUCCESSFUL
        target = PaymentStatus.SUCCESSFUL if succeeded else PaymentStatus.FAILED
        values: dict[str, Any] = {
            "status": target.value,
            "provider_response": event.raw,
            ("settled_at" if succeeded else "failed_at"): now,
        }
        won = await self._payments.transition(
            reference,
            from_statuses=[s.value for s in NON_TERMINAL_PAYMENT_STATUSES],
            values=values,
        )
        if not won:
            SETTLEMENTS_TOTAL.labels(outcome=SettlementOutcome.ALREADY_PROCESSED.value).inc()
            logger.info("Payment %s already terminal; event acknowledged without changes", reference)
            return SettlementResult(
                payment_reference=reference,
                outcome=SettlementOutcome.ALREADY_PROCESSED,
                payment_id=payment.id,
                ledger_ids=ledger_ids,
                amount=payment.total_amount,
                degraded_trust=degraded_trust,
            )

        ctx = LedgerContext(tenant_id=payment.tenant_id, actor=self._actor, clock=self._clock)
        ledger = LedgerService(self._session, ctx)
        audit = AuditService.for_context(self._session, ctx)

        if event.amount is not None and event.amount != payment.total_amount:
            logger.warning(
                "Provider amount %s differs from payment total %s for %s",
                event.amount,
                payment.total_amount,
                reference,
            )

        if succeeded:
            await ledger.settle(ledger_ids, payment.id)
            await audit.log(
                AuditAction.PLATFORM_FEE_PAYMENT_SUCCESSFUL,
                entity_type="platform_payment",
                entity_id=payment.id,
                payment_reference=reference,
                ledger_ids=ledger_ids,
                amount=payment.total_amount,
                provider=payment.provider,
                degraded_trust=degraded_trust,
            )
            await self._enqueue_success(payment.tenant_id, payment.id, reference, payment.total_amount, ledger_ids, now)
            outcome = SettlementOutcome.SETTLED
        else:
            await ledger.fail(ledger_ids, payment.id)
            await audit.log(
                AuditAction.PLATFORM_FEE_PAYMENT_FAILED,
                entity_type="platform_payment",
                entity_id=payment.id,
                payment_reference=reference,
                ledger_ids=ledger_ids,
                amount=payment.total_amount,
                provider=payment.provider,
                provider_status=event.raw_status,
                degraded_trust=degraded_trust,
            )
            await self._enqueue_failure(payment.tenant_id, payment.id, reference, payment.total_amount, ledger_ids)
            outcome = SettlementOutcome.FAILED

        SETTLEMENTS_TOTAL.labels(outcome=outcome.value).inc()
        logger.info(
            "Payment %s %s: tenant=%s entries=%d amount=%s degraded_trust=%s",
            reference,
            outcome.value,
            payment.tenant_id,
            len(ledger_ids),
            payment.total_amount,
            degraded_trust,
        )
        return SettlementResult(
            payment_reference=reference,
            outcome=outcome,
            payment_id=payment.id,
            ledger_ids=ledger_ids,
            amount=payment.total_amount,
            degraded_trust=degraded_trust,
        )

    # ------------------------------------------------------------------
    # Outbox intents
    # ------------------------------------------------------------------

    async def _enqueue_success(
        self,
        tenant_id: str,
        payment_id: str,
        reference: str,
        amount: Any,
        ledger_ids: list[str],
        settled_at: datetime,
    ) -> None:
        await self._outbox.enqueue(
            tenant_id=tenant_id,
            kind=OUTBOX_RECEIPT,
            payload={
                "tenant_id": tenant_id,
                "payment_id": payment_id,
                "payment_reference": reference,
                "amount": str(amount),
                "fee_count": len(ledger_ids),
                "ledger_ids": ledger_ids,
                "settled_at": settled_at.isoformat(),
            },
        )
        await self._outbox.enqueue(
            tenant_id=tenant_id,
            kind=OUTBOX_NOTIFICATION,
            payload={
                "tenant_id": tenant_id,
                "type": "platform_fee_payment_successful",
                "title": "Platform fee payment received",
                "message": f"Payment {reference} of {amount} settled {len(ledger_ids)} platform fee(s).",
                "payment_reference": reference,
            },
        )

    async def _enqueue_failure(
        self,
        tenant_id: str,
        payment_id: str,
        reference: str,
        amount: Any,
        ledger_ids: list[str],
    ) -> None:
        await self._outbox.enqueue(
            tenant_id=tenant_id,
            kind=OUTBOX_NOTIFICATION,
            payload={
                "tenant_id": tenant_id,
                "type": "platform_fee_payment_failed",
                "title": "Platform fee payment failed",
                "message": _RETRY_GUIDANCE,
                "payment_id": payment_id,
                "payment_reference": reference,
                "amount": str(amount),
                "retry": {"endpoint": "/api/v1/payments/initiate", "ledger_ids": ledger_ids},
            },
        )
