"""Fee configuration, fee recording and historical backfill endpoints."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from ledger_api.dependencies import ContextDep, SessionDep, SettingsDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import BackfillRequest, FeeConfigRequest, RecordFeeRequest, RecordFeeResponse
from ledger_api.services.fee_service import FeeService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fees", tags=["fees"])


@router.get("/config")
async def get_fee_config(
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    _role: Role = Depends(require_permission(Permission.READ_LEDGER)),
) -> dict[str, Any]:
    """Return the tenant's active fee configuration."""
    service = FeeService(session, ctx, default_trial_days=settings.default_trial_days)
    config = await service.get_config()
    if config is None:
        raise HTTPException(status_code=404, detail="No active fee configuration")
    return config.model_dump(mode="json")


@router.get("/config/history")
async def list_fee_config_history(
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    limit: int = Query(default=20, ge=1, le=200),
    _role: Role = Depends(require_permission(Permission.MANAGE_FEE_CONFIG)),
) -> list[dict[str, Any]]:
    service = FeeService(session, ctx, default_trial_days=settings.default_trial_days)
    return [config.model_dump(mode="json") for config in await service.list_history(limit=limit)]


@router.put("/config")
async def update_fee_config(
    body: FeeConfigRequest,
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_FEE_CONFIG)),
) -> dict[str, Any]:
    """Activate a new fee configuration; the previous one is deactivated."""
    service = FeeService(session, ctx, default_trial_days=settings.default_trial_days)
    config = await service.update_config(body.model_dump(exclude_none=True))
    return config.model_dump(mode="json")


@router.post("/record", response_model=RecordFeeResponse)
async def record_fee(
    body: RecordFeeRequest,
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    _role: Role = Depends(require_permission(Permission.RECORD_FEES)),
) -> RecordFeeResponse:
    """Compute the platform fee for a transaction and record it on the ledger.

    The computed total is returned synchronously so the caller can charge
    the guest.  Recording the same reference twice is a no-op that returns
    the original entry.
    """
    service = FeeService(session, ctx, default_trial_days=settings.default_trial_days)
    result = await service.record_fee(body.transaction_class, body.reference_id, body.amount, body.metadata)
    computation = result.computation
    return RecordFeeResponse(
        applied=computation.applied,
        base_amount=computation.base_amount,
        fee_amount=computation.fee_amount,
        total_amount=computation.total_amount,
        net_to_property=computation.net_to_property,
        rate=computation.rate,
        fee_type=computation.fee_type,
        payer=computation.payer,
        billing_cycle=computation.billing_cycle,
        reason=computation.reason.value if computation.reason else None,
        ledger_id=result.ledger_id,
        created=result.created,
        status=result.status,
    )


@router.post("/backfill")
async def backfill_fees(
    body: BackfillRequest,
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    _role: Role = Depends(require_permission(Permission.BACKFILL_FEES)),
) -> dict[str, Any]:
    """Create settled entries for paid historical transactions without one."""
    service = FeeService(session, ctx, default_trial_days=settings.default_trial_days)
    result = await service.backfill(body.transactions)
    logger.info(
        "Backfill for tenant=%s: backfilled=%d skipped=%d errors=%d",
        ctx.tenant_id,
        result.backfilled,
        result.skipped,
        len(result.errors),
    )
    return result.model_dump(mode="json")
