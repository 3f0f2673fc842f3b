"""Payment provider webhooks and the checkout redirect callback.

These paths are public: webhooks authenticate with the provider's
signature scheme and the redirect callback never trusts its query string,
it asks the provider directly.  Any verified delivery is acknowledged with
200, whatever the payment outcome, so providers stop retrying.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from ledger_core.context import LedgerContext
from ledger_core.models.payments import ProviderType
from ledger_core.state.database import set_tenant_context
from ledger_core.state.repository import PlatformPaymentRepository
from ledger_core.webhooks import parse_redirect

from ledger_api.dependencies import GatewayDep, PublicSessionDep, SettingsDep, VaultDep
from ledger_api.services.payment_service import PaymentService
from ledger_api.services.provider_service import ProviderCredentialService
from ledger_api.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

_ACTOR = "webhook"


async def _handle(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    vault: VaultDep,
    provider: ProviderType | None,
) -> dict[str, Any]:
    body = await request.body()
    credentials = ProviderCredentialService(session, vault, actor=_ACTOR)
    service = SettlementService(
        session,
        credentials=credentials,
        actor=_ACTOR,
        stripe_tolerance_seconds=settings.stripe_signature_tolerance_seconds,
    )
    result = await service.handle_webhook(body, request.headers, provider=provider)
    return {"received": True, **result.model_dump(mode="json")}


@router.post("/payments")
async def receive_payment_webhook(
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    vault: VaultDep,
) -> dict[str, Any]:
    """Provider-agnostic webhook; the provider is inferred from the payload shape."""
    return await _handle(request, session, settings, vault, None)


@router.get("/payments/callback")
async def payment_redirect_callback(
    request: Request,
    session: PublicSessionDep,
    gateway: GatewayDep,
    vault: VaultDep,
) -> dict[str, Any]:
    """Browser redirect after checkout.

    The reported status is ignored; the payment is confirmed with an
    authenticated lookup at the provider and settled through the same
    idempotent path as webhooks.
    """
    callback = parse_redirect(dict(request.query_params))
    if not callback.reference:
        raise HTTPException(status_code=400, detail="Missing payment reference")

    payment = await PlatformPaymentRepository(session).get_by_reference(callback.reference)
    if payment is None:
        raise HTTPException(status_code=404, detail="Unknown payment reference")

    await set_tenant_context(session, payment.tenant_id)
    ctx = LedgerContext(tenant_id=payment.tenant_id, actor="redirect")
    credentials = ProviderCredentialService(session, vault, actor=ctx.actor)
    service = PaymentService(session, ctx, gateway, credentials)
    result = await service.verify_payment(
        callback.reference,
        provider=callback.provider,
        session_id=callback.session_id,
    )
    logger.info(
        "Redirect callback for %s (reported=%s) resolved to %s",
        callback.reference,
        callback.raw_status,
        result.outcome.value,
    )
    return result.model_dump(mode="json")


@router.post("/payments/{provider}")
async def receive_provider_webhook(
    provider: ProviderType,
    request: Request,
    session: PublicSessionDep,
    settings: SettingsDep,
    vault: VaultDep,
) -> dict[str, Any]:
    """Webhook for a named provider (``paystack``, ``flutterwave``, ``stripe``)."""
    return await _handle(request, session, settings, vault, provider)
