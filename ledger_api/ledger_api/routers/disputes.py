"""Fee disputes: raised by tenants, resolved by platform administrators."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from ledger_core.models.disputes import DisputeStatus

from ledger_api.dependencies import AdminSessionDep, ContextDep, SessionDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import CreateDisputeRequest, DisputeStatusRequest, encode
from ledger_api.services.dispute_service import DisputeService, dispute_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/disputes", tags=["disputes"])


@router.post("", status_code=201)
async def create_dispute(
    body: CreateDisputeRequest,
    session: SessionDep,
    ctx: ContextDep,
    _role: Role = Depends(require_permission(Permission.CREATE_DISPUTES)),
) -> dict[str, Any]:
    """Dispute one or more open ledger entries."""
    dispute = await DisputeService(session, ctx).create_dispute(
        body.ledger_ids,
        body.reason,
        body.requested_action,
        body.requested_amount,
    )
    return encode(dispute_to_dict(dispute))


@router.get("")
async def list_disputes(
    session: SessionDep,
    ctx: ContextDep,
    status: DisputeStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    _role: Role = Depends(require_permission(Permission.CREATE_DISPUTES)),
) -> list[dict[str, Any]]:
    disputes = await DisputeService(session, ctx).list_disputes(status=status, limit=limit)
    return encode([dispute_to_dict(d) for d in disputes])


@router.get("/all")
async def list_all_disputes(
    session: AdminSessionDep,
    ctx: ContextDep,
    status: DisputeStatus | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    _role: Role = Depends(require_permission(Permission.RESOLVE_DISPUTES)),
) -> list[dict[str, Any]]:
    """Disputes of every tenant (platform review queue)."""
    disputes = await DisputeService(session, ctx, scoped=False).list_disputes(status=status, limit=limit)
    return encode([dispute_to_dict(d) for d in disputes])


@router.put("/{dispute_id}/status")
async def update_dispute_status(
    dispute_id: str,
    body: DisputeStatusRequest,
    session: AdminSessionDep,
    ctx: ContextDep,
    _role: Role = Depends(require_permission(Permission.RESOLVE_DISPUTES)),
) -> dict[str, Any]:
    """Move a dispute through review; approval applies the requested change once."""
    dispute = await DisputeService(session, ctx, scoped=False).update_status(
        dispute_id,
        body.status,
        body.admin_notes,
    )
    return encode(dispute_to_dict(dispute))
