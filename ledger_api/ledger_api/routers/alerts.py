"""Revenue alert rules, on-demand evaluation and alert acknowledgement."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query

from ledger_api.dependencies import AdminSessionDep, TenantDep, UserDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import AlertRuleRequest, AlertRuleUpdateRequest, encode
from ledger_api.services.alert_service import AlertService, alert_to_dict, rule_to_dict

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/alerts", tags=["alerts"])


@router.get("/rules")
async def list_rules(
    session: AdminSessionDep,
    user: UserDep,
    active_only: bool = Query(default=False),
    _role: Role = Depends(require_permission(Permission.MANAGE_ALERTS)),
) -> list[dict[str, Any]]:
    rules = await AlertService(session, actor=user).list_rules(active_only=active_only)
    return encode([rule_to_dict(rule) for rule in rules])


@router.post("/rules", status_code=201)
async def create_rule(
    body: AlertRuleRequest,
    session: AdminSessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ALERTS)),
) -> dict[str, Any]:
    rule = await AlertService(session, actor=user).create_rule(body.model_dump())
    return encode(rule_to_dict(rule))


@router.put("/rules/{rule_id}")
async def update_rule(
    rule_id: str,
    body: AlertRuleUpdateRequest,
    session: AdminSessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ALERTS)),
) -> dict[str, Any]:
    rule = await AlertService(session, actor=user).update_rule(rule_id, body.model_dump(exclude_unset=True))
    return encode(rule_to_dict(rule))


@router.post("/evaluate")
async def evaluate_rules(
    session: AdminSessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ALERTS)),
) -> dict[str, Any]:
    """Evaluate every active rule now and return the alerts raised."""
    raised = await AlertService(session, actor=user).evaluate_all()
    return encode({"raised": len(raised), "alerts": [alert_to_dict(alert) for alert in raised]})


@router.get("")
async def list_alerts(
    session: AdminSessionDep,
    user: UserDep,
    caller_tenant: TenantDep,
    acknowledged: bool | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    role: Role = Depends(require_permission(Permission.READ_ALERTS)),
) -> list[dict[str, Any]]:
    """Raised alerts, newest first.  Below platform admin only the caller's tenant is visible."""
    if role != Role.PLATFORM_ADMIN:
        tenant_id = caller_tenant
    alerts = await AlertService(session, actor=user).list_alerts(
        acknowledged=acknowledged,
        tenant_id=tenant_id,
        limit=limit,
    )
    return encode([alert_to_dict(alert) for alert in alerts])


@router.post("/{alert_id}/acknowledge")
async def acknowledge_alert(
    alert_id: str,
    session: AdminSessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.MANAGE_ALERTS)),
) -> dict[str, Any]:
    if not await AlertService(session, actor=user).acknowledge(alert_id):
        raise HTTPException(status_code=409, detail="Alert already acknowledged")
    return {"id": alert_id, "acknowledged": True}
