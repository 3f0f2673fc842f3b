"""Platform fee payments: initiation, manual verification and history."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from ledger_core.errors import ProviderError

from ledger_api.dependencies import ContextDep, GatewayDep, SessionDep, VaultDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import InitiatePaymentRequest, VerifyPaymentRequest, encode
from ledger_api.services.payment_service import PaymentService, payment_to_dict
from ledger_api.services.provider_service import ProviderCredentialService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/initiate")
async def initiate_payment(
    body: InitiatePaymentRequest,
    session: SessionDep,
    ctx: ContextDep,
    gateway: GatewayDep,
    vault: VaultDep,
    _role: Role = Depends(require_permission(Permission.INITIATE_PAYMENTS)),
) -> dict[str, Any]:
    """Open a hosted checkout for the tenant's outstanding platform fees.

    Pass ``ledger_ids`` to retry specific entries (including ``failed``
    ones).  The ledger itself is only updated once the provider confirms
    the outcome.
    """
    credentials = ProviderCredentialService(session, vault, actor=ctx.actor)
    service = PaymentService(session, ctx, gateway, credentials)
    try:
        initiation = await service.initiate_payment(body.payment_method_id, body.ledger_ids, body.provider)
    except ProviderError:
        # Keep the payment row marked failed; the session would otherwise
        # roll it back along with the error.
        await session.commit()
        raise
    return initiation.model_dump(mode="json")


@router.post("/verify")
async def verify_payment(
    body: VerifyPaymentRequest,
    session: SessionDep,
    ctx: ContextDep,
    gateway: GatewayDep,
    vault: VaultDep,
    _role: Role = Depends(require_permission(Permission.INITIATE_PAYMENTS)),
) -> dict[str, Any]:
    """Ask the provider for a payment's status and settle it if final.

    Idempotent: verifying an already settled or failed payment reports
    ``already_processed`` without contacting the provider.
    """
    credentials = ProviderCredentialService(session, vault, actor=ctx.actor)
    service = PaymentService(session, ctx, gateway, credentials)
    result = await service.verify_payment(body.payment_reference, provider=body.provider, session_id=body.session_id)
    return result.model_dump(mode="json")


@router.get("")
async def list_payments(
    session: SessionDep,
    ctx: ContextDep,
    gateway: GatewayDep,
    vault: VaultDep,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_PAYMENTS)),
) -> list[dict[str, Any]]:
    credentials = ProviderCredentialService(session, vault, actor=ctx.actor)
    payments = await PaymentService(session, ctx, gateway, credentials).list_payments(limit=limit, offset=offset)
    return encode([payment_to_dict(payment) for payment in payments])
