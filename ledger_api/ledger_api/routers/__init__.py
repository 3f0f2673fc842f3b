"""API router modules for the platform fee ledger."""

from __future__ import annotations

from ledger_api.routers import (
    alerts,
    audit,
    billing,
    disputes,
    fees,
    health,
    ledger,
    metrics,
    payments,
    providers,
    reconciliation,
    webhooks,
)

__all__ = [
    "alerts",
    "audit",
    "billing",
    "disputes",
    "fees",
    "health",
    "ledger",
    "metrics",
    "payments",
    "providers",
    "reconciliation",
    "webhooks",
]
