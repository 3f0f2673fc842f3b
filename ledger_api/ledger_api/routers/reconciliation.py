"""API router for payment reconciliation.

Provides endpoints to import provider statements (CSV or JSON batch),
pull transactions from a finance provider, match records manually or
automatically, inspect records with fuzzy match suggestions, and report
the tenant's match rate.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from ledger_core.models.reconciliation import ReconciliationStatus

from ledger_api.dependencies import ContextDep, GatewayDep, SessionDep, SettingsDep, VaultDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import BatchReconcileRequest, ManualMatchRequest, ProviderSyncRequest, encode
from ledger_api.services.reconciliation_service import ReconciliationService, record_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

# Upper bound on an uploaded statement.
_MAX_CSV_BYTES = 5 * 1024 * 1024


def _service(
    session: SessionDep,
    ctx: ContextDep,
    settings: SettingsDep,
    gateway: GatewayDep,
    vault: VaultDep,
) -> ReconciliationService:
    return ReconciliationService(
        session,
        ctx,
        epsilon=settings.match_epsilon,
        lock_ttl_seconds=settings.auto_match_lock_ttl_seconds,
        score_threshold=settings.match_score_threshold,
        gateway=gateway,
        vault=vault,
    )


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


@router.post("/import")
async def import_statement(
    request: Request,
    service: ReconciliationService = Depends(_service),
    provider: str | None = Query(default=None, description="Provider label stored on every record."),
    _role: Role = Depends(require_permission(Permission.MANAGE_RECONCILIATION)),
) -> dict[str, Any]:
    """Import a ``reference,amount,date`` CSV statement sent as the request body.

    Malformed rows are reported with their row number and skipped; the
    valid rows are stored as ``unmatched`` records.
    """
    raw = await request.body()
    if len(raw) > _MAX_CSV_BYTES:
        raise HTTPException(status_code=413, detail="Statement too large")
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise HTTPException(status_code=400, detail="Statement must be UTF-8 text") from exc

    parsed, inserted = await service.import_csv(text, provider=provider)
    return encode(
        {
            "parsed": len(parsed.rows),
            "inserted": inserted,
            "errors": [error.model_dump() for error in parsed.errors],
        }
    )


@router.post("/sync")
async def sync_provider(
    body: ProviderSyncRequest,
    service: ReconciliationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.MANAGE_RECONCILIATION)),
) -> dict[str, Any]:
    """Pull a finance provider's transactions for ``[start, end]``."""
    if body.end < body.start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    result = await service.provider_sync(body.provider_id, body.start, body.end)
    return result.model_dump(mode="json")


@router.post("/batch")
async def reconcile_batch(
    body: BatchReconcileRequest,
    service: ReconciliationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.MANAGE_RECONCILIATION)),
) -> dict[str, Any]:
    """Store and match external transactions by reference in one call."""
    result = await service.reconcile_batch(body.transactions, source=body.source, provider_id=body.provider_id)
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


@router.post("/match")
async def manual_match(
    body: ManualMatchRequest,
    service: ReconciliationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.MANAGE_RECONCILIATION)),
) -> dict[str, Any]:
    link = await service.manual_match(body.record_id, body.payment_id)
    return link.model_dump(mode="json")


@router.post("/auto-match")
async def auto_match(
    service: ReconciliationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.MANAGE_RECONCILIATION)),
) -> dict[str, Any]:
    """Link unmatched records to payments with the same amount.

    Only one run per tenant at a time; a concurrent call gets 409.
    """
    result = await service.auto_match()
    return result.model_dump(mode="json")


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/summary")
async def reconciliation_summary(
    service: ReconciliationService = Depends(_service),
    _role: Role = Depends(require_permission(Permission.READ_RECONCILIATION)),
) -> dict[str, Any]:
    summary = await service.summary()
    return summary.model_dump(mode="json")


@router.get("/records")
async def list_records(
    service: ReconciliationService = Depends(_service),
    status: ReconciliationStatus | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_RECONCILIATION)),
) -> list[dict[str, Any]]:
    records = await service.list_records(status=status, limit=limit, offset=offset)
    return encode([record_to_dict(record) for record in records])


@router.get("/records/{record_id}/suggestions")
async def suggest_matches(
    record_id: str,
    service: ReconciliationService = Depends(_service),
    limit: int = Query(default=5, ge=1, le=20),
    _role: Role = Depends(require_permission(Permission.READ_RECONCILIATION)),
) -> list[dict[str, Any]]:
    """Candidate payments for a record, best first, scored on reference, amount, time and provider."""
    suggestions = await service.suggest_matches(record_id, limit=limit)
    return [suggestion.model_dump(mode="json") for suggestion in suggestions]
