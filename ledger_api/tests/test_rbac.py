"""Tests for the Role-Based Access Control system.

Covers:
- Role enum ordering and hierarchy
- Permission mapping per role, including the non-hierarchical service role
- require_permission and require_role enforcement through the HTTP stack
- Default role assignment when the token omits a role claim
- Invalid role rejection
"""

from __future__ import annotations

import pytest

from ledger_api.middleware.rbac import (
    ROLE_PERMISSIONS,
    Permission,
    Role,
    parse_role,
    role_has_permission,
)

# ---------------------------------------------------------------------------
# Unit tests: Role enum
# ---------------------------------------------------------------------------


class TestRoleEnum:
    """Verify Role ordering and hierarchy."""

    def test_hierarchy_order(self) -> None:
        assert Role.VIEWER < Role.STAFF < Role.MANAGER < Role.OWNER < Role.PLATFORM_ADMIN

    def test_viewer_is_lowest(self) -> None:
        assert Role.VIEWER == 0

    def test_service_sits_outside_hierarchy(self) -> None:
        assert Role.SERVICE > Role.PLATFORM_ADMIN
        assert not ROLE_PERMISSIONS[Role.PLATFORM_ADMIN] <= ROLE_PERMISSIONS[Role.SERVICE]


# ---------------------------------------------------------------------------
# Unit tests: parse_role
# ---------------------------------------------------------------------------


class TestParseRole:
    """Verify string-to-Role mapping."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("viewer", Role.VIEWER),
            ("VIEWER", Role.VIEWER),
            ("staff", Role.STAFF),
            ("manager", Role.MANAGER),
            ("Owner", Role.OWNER),
            ("platform_admin", Role.PLATFORM_ADMIN),
            ("  service  ", Role.SERVICE),
        ],
    )
    def test_valid_roles(self, raw: str, expected: Role) -> None:
        assert parse_role(raw) == expected

    def test_invalid_role_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("superadmin")

    def test_empty_string_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown role"):
            parse_role("")


# ---------------------------------------------------------------------------
# Unit tests: Permission mapping
# ---------------------------------------------------------------------------


class TestPermissionMapping:
    """Verify ROLE_PERMISSIONS is correctly configured."""

    def test_viewer_read_only(self) -> None:
        perms = ROLE_PERMISSIONS[Role.VIEWER]
        assert perms == {Permission.READ_LEDGER, Permission.READ_PAYMENTS, Permission.READ_RECONCILIATION}

    def test_staff_records_fees(self) -> None:
        perms = ROLE_PERMISSIONS[Role.STAFF]
        assert Permission.RECORD_FEES in perms
        assert Permission.INITIATE_PAYMENTS not in perms

    def test_manager_extends_staff(self) -> None:
        perms = ROLE_PERMISSIONS[Role.MANAGER]
        assert ROLE_PERMISSIONS[Role.STAFF] <= perms
        assert {
            Permission.INITIATE_PAYMENTS,
            Permission.CREATE_DISPUTES,
            Permission.MANAGE_RECONCILIATION,
            Permission.READ_ALERTS,
        } <= perms
        assert Permission.READ_AUDIT not in perms

    def test_owner_reads_audit_but_cannot_waive(self) -> None:
        perms = ROLE_PERMISSIONS[Role.OWNER]
        assert Permission.READ_AUDIT in perms
        assert Permission.WAIVE_FEES not in perms
        assert Permission.MANAGE_FEE_CONFIG not in perms

    def test_platform_admin_has_all(self) -> None:
        assert ROLE_PERMISSIONS[Role.PLATFORM_ADMIN] == set(Permission)

    def test_service_permissions(self) -> None:
        perms = ROLE_PERMISSIONS[Role.SERVICE]
        assert Permission.RECORD_FEES in perms
        assert Permission.RUN_BILLING in perms
        assert Permission.MANAGE_ALERTS in perms
        assert Permission.WAIVE_FEES not in perms
        assert Permission.INITIATE_PAYMENTS not in perms

    def test_role_has_permission_helper(self) -> None:
        assert role_has_permission(Role.VIEWER, Permission.READ_LEDGER) is True
        assert role_has_permission(Role.VIEWER, Permission.RECORD_FEES) is False
        assert role_has_permission(Role.PLATFORM_ADMIN, Permission.RESOLVE_DISPUTES) is True


class TestPermissionHierarchy:
    @pytest.mark.parametrize(
        "lower,higher",
        [
            (Role.VIEWER, Role.STAFF),
            (Role.STAFF, Role.MANAGER),
            (Role.MANAGER, Role.OWNER),
            (Role.OWNER, Role.PLATFORM_ADMIN),
        ],
    )
    def test_each_tier_inherits_the_one_below(self, lower: Role, higher: Role) -> None:
        assert ROLE_PERMISSIONS[lower] < ROLE_PERMISSIONS[higher]


# ---------------------------------------------------------------------------
# Integration tests: full HTTP stack (auth middleware + RBAC)
# ---------------------------------------------------------------------------


class TestEndpointGuards:
    @pytest.mark.asyncio
    async def test_viewer_can_read_ledger(self, client, headers_for) -> None:
        response = await client.get("/api/v1/ledger", headers=headers_for("viewer"))
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_viewer_cannot_record_fees(self, client, headers_for) -> None:
        response = await client.post(
            "/api/v1/fees/record",
            json={"transaction_class": "qr_payments", "reference_id": "QR-1", "amount": "10"},
            headers=headers_for("viewer"),
        )
        assert response.status_code == 403
        assert "record:fees" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_staff_can_record_fees(self, client, headers_for) -> None:
        response = await client.post(
            "/api/v1/fees/record",
            json={"transaction_class": "qr_payments", "reference_id": "QR-1", "amount": "10"},
            headers=headers_for("staff"),
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_manager_cannot_read_audit(self, client, headers_for) -> None:
        response = await client.get("/api/v1/audit", headers=headers_for("manager"))
        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_owner_can_read_audit(self, client) -> None:
        response = await client.get("/api/v1/audit")
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_service_cannot_pass_role_guard(self, client, headers_for) -> None:
        response = await client.get(
            "/api/v1/audit/platform",
            headers=headers_for("service", identity_kind="service", sub="billing-cron"),
        )
        assert response.status_code == 403
        assert "permission-based" in response.json()["detail"]

    @pytest.mark.asyncio
    async def test_platform_admin_passes_role_guard(self, client, admin_headers) -> None:
        response = await client.get("/api/v1/audit/platform", headers=admin_headers)
        assert response.status_code == 200


class TestDefaultAndInvalidRoles:
    @pytest.mark.asyncio
    async def test_missing_role_defaults_to_viewer(self, client, headers_for) -> None:
        headers = headers_for(None)
        assert (await client.get("/api/v1/ledger", headers=headers)).status_code == 200
        denied = await client.post(
            "/api/v1/fees/record",
            json={"transaction_class": "qr_payments", "reference_id": "QR-1", "amount": "10"},
            headers=headers,
        )
        assert denied.status_code == 403

    @pytest.mark.asyncio
    async def test_missing_role_on_service_identity_defaults_to_service(self, client, headers_for) -> None:
        headers = headers_for(None, identity_kind="service", sub="pos-sync")
        response = await client.post(
            "/api/v1/fees/record",
            json={"transaction_class": "qr_payments", "reference_id": "QR-1", "amount": "10"},
            headers=headers,
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_invalid_role_returns_403(self, client, headers_for) -> None:
        response = await client.get("/api/v1/ledger", headers=headers_for("superuser"))
        assert response.status_code == 403
        assert "Unrecognised role" in response.json()["detail"]
