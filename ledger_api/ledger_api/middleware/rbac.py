"""Role-Based Access Control dependencies.

Defines a five-tier role hierarchy for tenant staff and platform
operators (VIEWER, STAFF, MANAGER, OWNER, PLATFORM_ADMIN) plus a
non-hierarchical SERVICE role for machine callers.  Each hierarchical
role inherits all permissions from the roles below it.

Usage in routers::

    from ledger_api.middleware.rbac import Permission, Role, require_permission

    @router.post("/waive")
    async def waive(
        ...,
        _role: Role = Depends(require_permission(Permission.WAIVE_FEES)),
    ) -> ...:
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from enum import Enum, IntEnum

from fastapi import Depends, HTTPException, Request

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Role hierarchy (higher int = more authority)
# ---------------------------------------------------------------------------


class Role(IntEnum):
    """User roles ordered by privilege level.

    The integer value encodes hierarchy: every role implicitly inherits
    the capabilities of roles with lower numeric values.
    """

    VIEWER = 0
    STAFF = 1
    MANAGER = 2
    OWNER = 3
    PLATFORM_ADMIN = 4
    SERVICE = 10  # Non-hierarchical: outside 0-4 so it inherits nothing


# Mapping from the string claim value to the enum member.
_ROLE_LOOKUP: dict[str, Role] = {r.name.lower(): r for r in Role}


def parse_role(raw: str) -> Role:
    """Convert a token ``role`` claim string into a :class:`Role`.

    Raises :class:`ValueError` if the string does not map to a known role.
    """
    try:
        return _ROLE_LOOKUP[raw.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown role '{raw}'. Valid roles: {sorted(_ROLE_LOOKUP)}")


# ---------------------------------------------------------------------------
# Permissions
# ---------------------------------------------------------------------------


class Permission(str, Enum):
    """Fine-grained permission tokens checked by endpoint guards."""

    # Ledger and fees
    READ_LEDGER = "read:ledger"
    RECORD_FEES = "record:fees"
    MANAGE_FEE_CONFIG = "manage:fee_config"
    WAIVE_FEES = "waive:fees"
    BACKFILL_FEES = "backfill:fees"
    RUN_BILLING = "run:billing"

    # Payments
    READ_PAYMENTS = "read:payments"
    INITIATE_PAYMENTS = "initiate:payments"
    MANAGE_PROVIDERS = "manage:providers"

    # Disputes
    CREATE_DISPUTES = "create:disputes"
    RESOLVE_DISPUTES = "resolve:disputes"

    # Reconciliation
    READ_RECONCILIATION = "read:reconciliation"
    MANAGE_RECONCILIATION = "manage:reconciliation"

    # Alerts and audit
    READ_ALERTS = "read:alerts"
    MANAGE_ALERTS = "manage:alerts"
    READ_AUDIT = "read:audit"


# ---------------------------------------------------------------------------
# Role -> Permission mapping (each role inherits from the tier below)
# ---------------------------------------------------------------------------

_VIEWER_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_LEDGER,
        Permission.READ_PAYMENTS,
        Permission.READ_RECONCILIATION,
    }
)

_STAFF_PERMS: frozenset[Permission] = _VIEWER_PERMS | frozenset({Permission.RECORD_FEES})

_MANAGER_PERMS: frozenset[Permission] = _STAFF_PERMS | frozenset(
    {
        Permission.INITIATE_PAYMENTS,
        Permission.CREATE_DISPUTES,
        Permission.MANAGE_RECONCILIATION,
        Permission.READ_ALERTS,
    }
)

_OWNER_PERMS: frozenset[Permission] = _MANAGER_PERMS | frozenset({Permission.READ_AUDIT})

_PLATFORM_ADMIN_PERMS: frozenset[Permission] = frozenset(Permission)

_SERVICE_PERMS: frozenset[Permission] = frozenset(
    {
        Permission.READ_LEDGER,
        Permission.RECORD_FEES,
        Permission.RUN_BILLING,
        Permission.READ_RECONCILIATION,
        Permission.MANAGE_RECONCILIATION,
        Permission.MANAGE_ALERTS,
    }
)

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.VIEWER: _VIEWER_PERMS,
    Role.STAFF: _STAFF_PERMS,
    Role.MANAGER: _MANAGER_PERMS,
    Role.OWNER: _OWNER_PERMS,
    Role.PLATFORM_ADMIN: _PLATFORM_ADMIN_PERMS,
    Role.SERVICE: _SERVICE_PERMS,
}


def role_has_permission(role: Role, permission: Permission) -> bool:
    """Return ``True`` if *role* grants *permission*."""
    return permission in ROLE_PERMISSIONS.get(role, frozenset())


# ---------------------------------------------------------------------------
# FastAPI dependency: extract role from request.state
# ---------------------------------------------------------------------------


def get_user_role(request: Request) -> Role:
    """Extract and validate the user role from ``request.state.role``.

    The :class:`AuthenticationMiddleware` sets ``request.state.role`` from
    the token's ``role`` claim.

    If the request passed authentication (``request.state.sub`` is set)
    but has no ``role`` attribute, the token is malformed and a 401 is
    raised.  Unauthenticated public paths get the least-privilege
    ``VIEWER`` role.

    Raises
    ------
    HTTPException(401)
        If the request is authenticated but the role claim is missing.
    HTTPException(403)
        If the role claim value is not a recognised role.
    """
    raw_role: str | None = getattr(request.state, "role", None)
    if raw_role is None:
        is_authenticated = getattr(request.state, "sub", None) is not None
        if is_authenticated:
            logger.warning(
                "Authenticated request (sub=%s) missing role claim; rejecting",
                getattr(request.state, "sub", "unknown"),
            )
            raise HTTPException(
                status_code=401,
                detail="Missing role claim in authenticated token",
            )
        return Role.VIEWER

    try:
        return parse_role(raw_role)
    except ValueError:
        logger.warning("Unrecognised role claim '%s'; denying access", raw_role)
        raise HTTPException(
            status_code=403,
            detail=f"Unrecognised role '{raw_role}'. Valid roles: {sorted(_ROLE_LOOKUP)}",
        )


# ---------------------------------------------------------------------------
# FastAPI dependencies: permission and role guards
# ---------------------------------------------------------------------------


def require_permission(permission: Permission) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a specific permission.

    Example::

        @router.get("/ledger")
        async def list_entries(
            _role: Role = Depends(require_permission(Permission.READ_LEDGER)),
        ):
            ...

    Returns the resolved :class:`Role` so downstream handlers can inspect
    it if needed.
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        if not role_has_permission(role, permission):
            logger.info(
                "Permission denied: role=%s requires %s",
                role.name,
                permission.value,
            )
            raise HTTPException(
                status_code=403,
                detail=(f"Permission denied: role '{role.name.lower()}' does not have '{permission.value}' permission"),
            )
        return role

    return _guard


def require_role(min_role: Role) -> Callable[..., Role]:
    """Return a FastAPI dependency that enforces a minimum role level.

    Example::

        @router.put("/fees/config")
        async def update_config(
            _role: Role = Depends(require_role(Role.PLATFORM_ADMIN)),
        ):
            ...
    """

    def _guard(role: Role = Depends(get_user_role)) -> Role:
        # SERVICE accounts must not pass role-based checks via numeric
        # comparison (SERVICE=10 > PLATFORM_ADMIN=4).  They are non-hierarchical
        # and should use permission-based auth instead.
        if role == Role.SERVICE:
            logger.info(
                "Service account attempted role-based access: requires %s",
                min_role.name,
            )
            raise HTTPException(
                status_code=403,
                detail=(
                    "Service accounts must use permission-based auth, not role-based. "
                    "Use require_permission() instead of require_role() for service-accessible endpoints."
                ),
            )
        if role < min_role:
            logger.info(
                "Role check failed: has=%s, required=%s",
                role.name,
                min_role.name,
            )
            raise HTTPException(
                status_code=403,
                detail=(f"Insufficient role: '{role.name.lower()}' requires at least '{min_role.name.lower()}'"),
            )
        return role

    return _guard
