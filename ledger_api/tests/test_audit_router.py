"""Audit log queries, chain verification and the platform chain."""

from __future__ import annotations

import pytest
from ledger_core.state.tables import AuditLogTable
from sqlalchemy import update


class TestTenantAudit:
    @pytest.mark.asyncio
    async def test_recorded_fees_are_audited(self, client, qr_fee_config, record_fee) -> None:
        fee = await record_fee("QR-1", "1000")

        entries = (await client.get("/api/v1/audit", params={"action": "PLATFORM_FEE_RECORDED"})).json()

        assert len(entries) == 1
        assert entries[0]["entity_id"] == fee["ledger_id"]
        assert entries[0]["actor"] == "owner@example.com"

    @pytest.mark.asyncio
    async def test_filters_and_paging(self, client, qr_fee_config, record_fee) -> None:
        for n in range(3):
            await record_fee(f"QR-{n}", "100")

        page = (await client.get("/api/v1/audit", params={"entity_type": "platform_fee_ledger", "limit": 2})).json()
        rest = (
            await client.get("/api/v1/audit", params={"entity_type": "platform_fee_ledger", "limit": 2, "offset": 2})
        ).json()

        assert len(page) == 2
        assert len(rest) == 1

    @pytest.mark.asyncio
    async def test_other_tenant_sees_nothing(self, client, headers_for, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        other = await client.get("/api/v1/audit", headers=headers_for("owner", tenant_id="tenant-b"))
        assert other.json() == []


class TestChainVerification:
    @pytest.mark.asyncio
    async def test_intact_chain(self, client, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        await record_fee("QR-2", "500")

        result = (await client.get("/api/v1/audit/verify")).json()
        assert result["is_valid"] is True
        assert result["entries_checked"] >= 2

    @pytest.mark.asyncio
    async def test_edited_entry_breaks_chain(self, client, session_factory, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        await record_fee("QR-2", "500")

        async with session_factory() as session:
            await session.execute(
                update(AuditLogTable)
                .where(AuditLogTable.tenant_id == "tenant-a", AuditLogTable.action == "PLATFORM_FEE_RECORDED")
                .values(metadata_json={"fee_amount": "0.00"})
            )
            await session.commit()

        result = (await client.get("/api/v1/audit/verify")).json()
        assert result["is_valid"] is False


class TestPlatformAudit:
    @pytest.mark.asyncio
    async def test_provider_changes_land_on_platform_chain(self, client, admin_headers) -> None:
        await client.put(
            "/api/v1/providers/paystack",
            json={"display_name": "Paystack", "api_key": "sk_test_abc"},
            headers=admin_headers,
        )

        platform = (await client.get("/api/v1/audit/platform", headers=admin_headers)).json()
        tenant = (await client.get("/api/v1/audit", headers=admin_headers)).json()

        assert [e["action"] for e in platform] == ["PROVIDER_CREDENTIALS_UPDATED"]
        assert platform[0]["metadata"]["api_key_rotated"] is True
        assert all(e["action"] != "PROVIDER_CREDENTIALS_UPDATED" for e in tenant)

    @pytest.mark.asyncio
    async def test_owner_cannot_read_platform_chain(self, client) -> None:
        response = await client.get("/api/v1/audit/platform")
        assert response.status_code == 403
