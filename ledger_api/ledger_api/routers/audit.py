"""Audit log query and chain-verification endpoints.

Tenant endpoints require the ``READ_AUDIT`` permission, which is granted
to the OWNER role and above.  The platform chain (provider credentials,
alert rules) is only visible to platform administrators.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query

from ledger_api.dependencies import AdminSessionDep, SessionDep, TenantDep
from ledger_api.middleware.rbac import Permission, Role, require_permission, require_role
from ledger_api.schemas import encode
from ledger_api.services.audit_service import AuditService
from ledger_api.services.provider_service import PLATFORM_AUDIT_TENANT

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("")
async def query_audit_log(
    session: SessionDep,
    tenant_id: TenantDep,
    action: str | None = Query(default=None, description="Filter by action type."),
    entity_type: str | None = Query(default=None, description="Filter by entity type."),
    entity_id: str | None = Query(default=None, description="Filter by entity ID."),
    since: datetime | None = Query(default=None, description="Only entries after this timestamp."),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_permission(Permission.READ_AUDIT)),
) -> list[dict[str, Any]]:
    """Query the tenant's append-only audit log, most recent first."""
    entries = await AuditService(session, tenant_id=tenant_id).query(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        since=since,
        limit=limit,
        offset=offset,
    )
    return encode(entries)


@router.get("/verify")
async def verify_audit_chain(
    session: SessionDep,
    tenant_id: TenantDep,
    limit: int = Query(default=1000, ge=1, le=10000),
    _role: Role = Depends(require_permission(Permission.READ_AUDIT)),
) -> dict[str, Any]:
    """Recompute the tenant's hash chain and report whether it is intact."""
    is_valid, entries_checked = await AuditService(session, tenant_id=tenant_id).verify_chain(limit=limit)
    if not is_valid:
        logger.error("Audit chain verification FAILED for tenant=%s", tenant_id)
    return {"is_valid": is_valid, "entries_checked": entries_checked}


@router.get("/platform")
async def query_platform_audit_log(
    session: AdminSessionDep,
    action: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
) -> list[dict[str, Any]]:
    entries = await AuditService(session, tenant_id=PLATFORM_AUDIT_TENANT).query(
        action=action,
        limit=limit,
        offset=offset,
    )
    return encode(entries)
