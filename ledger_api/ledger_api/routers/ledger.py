"""Platform fee ledger: listing, summary and administrative waivers."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from ledger_core.models.fees import ReferenceType
from ledger_core.models.ledger import LedgerStatus

from ledger_api.dependencies import ContextDep, SessionDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import TransitionResponse, WaiveRequest, encode
from ledger_api.services.ledger_service import LedgerService, entry_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ledger", tags=["ledger"])


@router.get("")
async def list_ledger_entries(
    session: SessionDep,
    ctx: ContextDep,
    status: LedgerStatus | None = Query(default=None),
    reference_type: ReferenceType | None = Query(default=None),
    since: datetime | None = Query(default=None, description="Created at or after."),
    until: datetime | None = Query(default=None, description="Created before."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_LEDGER)),
) -> list[dict[str, Any]]:
    """List the tenant's ledger entries, newest first."""
    entries = await LedgerService(session, ctx).list_entries(
        status=status,
        reference_type=reference_type,
        since=since,
        until=until,
        limit=limit,
        offset=offset,
    )
    return encode([entry_to_dict(entry) for entry in entries])


@router.get("/summary")
async def ledger_summary(
    session: SessionDep,
    ctx: ContextDep,
    since: datetime | None = Query(default=None),
    until: datetime | None = Query(default=None),
    _role: Role = Depends(require_permission(Permission.READ_LEDGER)),
) -> dict[str, Any]:
    """Totals by status: outstanding, settled, failed and waived amounts."""
    summary = await LedgerService(session, ctx).summary(since=since, until=until)
    return summary.model_dump(mode="json")


@router.post("/waive", response_model=TransitionResponse)
async def waive_fees(
    body: WaiveRequest,
    session: SessionDep,
    ctx: ContextDep,
    _role: Role = Depends(require_permission(Permission.WAIVE_FEES)),
) -> TransitionResponse:
    """Waive open entries.  All-or-nothing: one ineligible id rejects the batch."""
    result = await LedgerService(session, ctx).waive(body.ledger_ids, body.reason, notes=body.notes)
    return TransitionResponse(
        ledger_ids=result.ledger_ids,
        to_status=result.to_status.value,
        total_amount=result.total_amount,
    )
