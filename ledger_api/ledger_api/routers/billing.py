"""Billing run endpoint for deferred (monthly) platform fees."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from ledger_api.dependencies import AdminSessionDep, UserDep
from ledger_api.middleware.rbac import Permission, Role, require_permission
from ledger_api.schemas import BillingRunRequest, encode
from ledger_api.services.billing_service import BillingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/run")
async def run_billing(
    body: BillingRunRequest,
    session: AdminSessionDep,
    user: UserDep,
    _role: Role = Depends(require_permission(Permission.RUN_BILLING)),
) -> dict[str, Any]:
    """Invoice every tenant's pending monthly fees up to ``period_end``.

    Safe to re-run: entries already billed are not picked up again.
    """
    invoices = await BillingService(session, actor=user).run_monthly(body.period_end)
    return encode({"invoiced_tenants": len(invoices), "invoices": invoices})
