"""Middleware components for the ledger API."""

from __future__ import annotations

from ledger_api.middleware.auth import AuthenticationMiddleware
from ledger_api.middleware.logging import RequestLoggingMiddleware
from ledger_api.middleware.prometheus import PrometheusMiddleware
from ledger_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    get_user_role,
    require_permission,
    require_role,
)
from ledger_api.middleware.trace_context import TraceContextMiddleware

__all__ = [
    "AuthenticationMiddleware",
    "Permission",
    "PrometheusMiddleware",
    "ROLE_PERMISSIONS",
    "RequestLoggingMiddleware",
    "Role",
    "TraceContextMiddleware",
    "get_user_role",
    "require_permission",
    "require_role",
]
