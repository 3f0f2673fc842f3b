"""Tests for ledger listing, summary and batch waivers."""

from __future__ import annotations

from decimal import Decimal

import pytest


async def _summary(client) -> dict:
    response = await client.get("/api/v1/ledger/summary")
    assert response.status_code == 200
    return response.json()


class TestWaive:
    @pytest.mark.asyncio
    async def test_batch_waive_reduces_outstanding(self, client, qr_fee_config, admin_headers, record_fee) -> None:
        """Waiving a 200 and a 300 fee takes exactly 500 off the outstanding total."""
        first = await record_fee("QR-200", "4000")
        second = await record_fee("QR-300", "6000")
        await record_fee("QR-50", "1000")
        assert Decimal(first["fee_amount"]) == Decimal("200.00")
        assert Decimal(second["fee_amount"]) == Decimal("300.00")

        before = await _summary(client)
        assert Decimal(before["outstanding_amount"]) == Decimal("550.00")

        response = await client.post(
            "/api/v1/ledger/waive",
            json={"ledger_ids": [first["ledger_id"], second["ledger_id"]], "reason": "Goodwill credit"},
            headers=admin_headers,
        )
        assert response.status_code == 200, response.text
        body = response.json()
        assert body["to_status"] == "waived"
        assert Decimal(body["total_amount"]) == Decimal("500.00")

        after = await _summary(client)
        assert Decimal(after["outstanding_amount"]) == Decimal("50.00")
        assert Decimal(after["waived_amount"]) == Decimal("500.00")

        waived = (await client.get("/api/v1/ledger", params={"status": "waived"})).json()
        assert {row["id"] for row in waived} == {first["ledger_id"], second["ledger_id"]}
        assert all(row["waived_reason"] == "Goodwill credit" for row in waived)
        assert all(row["waived_by"] == "admin@platform.example" for row in waived)

    @pytest.mark.asyncio
    async def test_batch_is_all_or_nothing(self, client, qr_fee_config, admin_headers, record_fee) -> None:
        entry = await record_fee("QR-keep", "1000")

        response = await client.post(
            "/api/v1/ledger/waive",
            json={"ledger_ids": [entry["ledger_id"], "missing-entry"], "reason": "Goodwill"},
            headers=admin_headers,
        )
        assert response.status_code == 409
        assert response.json()["invalid_ids"] == ["missing-entry"]

        rows = (await client.get("/api/v1/ledger")).json()
        assert rows[0]["status"] == "billed"

    @pytest.mark.asyncio
    async def test_already_waived_entry_is_named(self, client, qr_fee_config, admin_headers, record_fee) -> None:
        entry = await record_fee("QR-twice", "1000")
        payload = {"ledger_ids": [entry["ledger_id"]], "reason": "Goodwill"}

        assert (await client.post("/api/v1/ledger/waive", json=payload, headers=admin_headers)).status_code == 200
        again = await client.post("/api/v1/ledger/waive", json=payload, headers=admin_headers)
        assert again.status_code == 409
        assert again.json()["invalid_ids"] == [entry["ledger_id"]]

    @pytest.mark.asyncio
    async def test_blank_reason_rejected(self, client, qr_fee_config, admin_headers, record_fee) -> None:
        entry = await record_fee("QR-blank", "1000")
        response = await client.post(
            "/api/v1/ledger/waive",
            json={"ledger_ids": [entry["ledger_id"]], "reason": "   "},
            headers=admin_headers,
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_tenant_owner_cannot_waive(self, client, qr_fee_config, record_fee) -> None:
        entry = await record_fee("QR-own", "1000")
        response = await client.post(
            "/api/v1/ledger/waive",
            json={"ledger_ids": [entry["ledger_id"]], "reason": "Please"},
        )
        assert response.status_code == 403


class TestListing:
    @pytest.mark.asyncio
    async def test_filters_by_reference_type(self, client, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        await record_fee("BK-1", "1000", transaction_class="bookings")

        bookings = (await client.get("/api/v1/ledger", params={"reference_type": "booking"})).json()
        assert [row["reference_id"] for row in bookings] == ["BK-1"]

    @pytest.mark.asyncio
    async def test_tenants_do_not_see_each_other(self, client, qr_fee_config, record_fee, headers_for) -> None:
        await record_fee("QR-a", "1000")
        response = await client.get("/api/v1/ledger", headers=headers_for("owner", tenant_id="tenant-b"))
        assert response.status_code == 200
        assert response.json() == []

    @pytest.mark.asyncio
    async def test_summary_counts_by_status(self, client, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        await record_fee("QR-2", "2000")

        summary = await _summary(client)
        assert summary["entry_count"] == 2
        assert summary["counts"]["billed"] == 2
        assert Decimal(summary["total_fees"]) == Decimal("150.00")

    @pytest.mark.asyncio
    async def test_amounts_are_strings(self, client, qr_fee_config, record_fee) -> None:
        await record_fee("QR-1", "1000")
        row = (await client.get("/api/v1/ledger")).json()[0]
        assert row["fee_amount"] == "50.00"
