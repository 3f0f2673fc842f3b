"""Tests for the reconciliation endpoints."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from ledger_core.state.repository import FinanceProviderRepository, InternalPaymentRepository

_T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


@pytest.fixture()
def seed_payments(session_factory):
    """``await seed_payments([(amount, ref, minutes_after_t0), ...])`` returns payment ids."""

    async def _seed(specs, tenant_id: str = "tenant-a") -> list[str]:
        ids = []
        async with session_factory() as session:
            repo = InternalPaymentRepository(session, tenant_id)
            for amount, ref, minutes in specs:
                row = await repo.create(
                    {
                        "amount": Decimal(amount),
                        "transaction_ref": ref,
                        "provider": "paystack",
                        "created_at": _T0 + timedelta(minutes=minutes),
                    }
                )
                ids.append(row.id)
            await session.commit()
        return ids

    return _seed


async def _import(client, text: str, provider: str | None = None):
    params = {"provider": provider} if provider else {}
    return await client.post(
        "/api/v1/reconciliation/import",
        content=text.encode(),
        params=params,
        headers={"content-type": "text/csv"},
    )


# ---------------------------------------------------------------------------
# Import
# ---------------------------------------------------------------------------


class TestImport:
    @pytest.mark.asyncio
    async def test_malformed_row_is_reported_and_skipped(self, client) -> None:
        text = "reference,amount,date\nTX-1,100.00,2026-03-01\nTX-2,abc,2026-03-01\nTX-3,250.50,2026-03-02\n"

        response = await _import(client, text, provider="paystack")

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["parsed"] == 2
        assert body["inserted"] == 2
        assert len(body["errors"]) == 1
        assert body["errors"][0]["row_number"] == 3

        records = (await client.get("/api/v1/reconciliation/records")).json()
        assert sorted(r["reference"] for r in records) == ["TX-1", "TX-3"]
        assert all(r["status"] == "unmatched" for r in records)

    @pytest.mark.asyncio
    async def test_reimport_does_not_duplicate(self, client) -> None:
        text = "reference,amount\nTX-1,100\n"
        await _import(client, text)
        second = (await _import(client, text)).json()
        assert second["parsed"] == 1
        assert second["inserted"] == 0

    @pytest.mark.asyncio
    async def test_viewer_cannot_import(self, client, headers_for) -> None:
        response = await client.post(
            "/api/v1/reconciliation/import",
            content=b"reference,amount\nTX-1,1\n",
            headers=headers_for("viewer"),
        )
        assert response.status_code == 403


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------


class TestAutoMatch:
    @pytest.mark.asyncio
    async def test_earliest_equal_payment_wins(self, client, seed_payments) -> None:
        later, earlier = await seed_payments([("100.00", "P-late", 30), ("100.00", "P-early", 5)])
        await _import(client, "reference,amount\nTX-1,100.00\n")

        response = await client.post("/api/v1/reconciliation/auto-match")

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["examined"] == 1
        assert body["matched"] == 1
        assert body["links"][0]["payment_id"] == earlier
        assert body["links"][0]["payment_id"] != later

    @pytest.mark.asyncio
    async def test_dated_record_takes_closest_payment(self, client, seed_payments) -> None:
        early, near = await seed_payments([("100.00", "P-early", 0), ("100.00", "P-near", 60 * 24 * 10 + 5)])
        await _import(client, "reference,amount,date\nTX-1,100.00,2026-03-11T12:00:00Z\n")

        body = (await client.post("/api/v1/reconciliation/auto-match")).json()

        assert [link["payment_id"] for link in body["links"]] == [near]
        assert near != early

    @pytest.mark.asyncio
    async def test_each_payment_linked_at_most_once(self, client, seed_payments) -> None:
        (only,) = await seed_payments([("100.00", "P-1", 0)])
        await _import(client, "reference,amount\nTX-1,100.00\nTX-2,100.00\n")

        body = (await client.post("/api/v1/reconciliation/auto-match")).json()
        assert body["matched"] == 1

        records = (await client.get("/api/v1/reconciliation/records")).json()
        linked = [r for r in records if r["matched_payment_id"] == only]
        assert len(linked) == 1
        assert linked[0]["matched_by"] == "auto"

    @pytest.mark.asyncio
    async def test_amounts_outside_epsilon_do_not_match(self, client, seed_payments) -> None:
        await seed_payments([("100.02", "P-1", 0)])
        await _import(client, "reference,amount\nTX-1,100.00\n")

        body = (await client.post("/api/v1/reconciliation/auto-match")).json()
        assert body["matched"] == 0

    @pytest.mark.asyncio
    async def test_other_tenants_payments_are_invisible(self, client, seed_payments) -> None:
        await seed_payments([("100.00", "P-b", 0)], tenant_id="tenant-b")
        await _import(client, "reference,amount\nTX-1,100.00\n")

        body = (await client.post("/api/v1/reconciliation/auto-match")).json()
        assert body["matched"] == 0


class TestManualMatch:
    @pytest.mark.asyncio
    async def test_short_payment_is_partial(self, client, seed_payments) -> None:
        (payment_id,) = await seed_payments([("80.00", "P-1", 0)])
        await _import(client, "reference,amount\nTX-1,100.00\n")
        record = (await client.get("/api/v1/reconciliation/records")).json()[0]

        response = await client.post(
            "/api/v1/reconciliation/match", json={"record_id": record["id"], "payment_id": payment_id}
        )
        assert response.status_code == 200, response.text
        assert response.json()["status"] == "partial"

    @pytest.mark.asyncio
    async def test_payment_cannot_back_two_records(self, client, seed_payments) -> None:
        (payment_id,) = await seed_payments([("100.00", "P-1", 0)])
        await _import(client, "reference,amount\nTX-1,100.00\nTX-2,100.00\n")
        first, second = (await client.get("/api/v1/reconciliation/records")).json()

        ok = await client.post(
            "/api/v1/reconciliation/match", json={"record_id": first["id"], "payment_id": payment_id}
        )
        clash = await client.post(
            "/api/v1/reconciliation/match", json={"record_id": second["id"], "payment_id": payment_id}
        )
        assert ok.json()["status"] == "matched"
        assert clash.status_code == 409
        assert clash.json()["invalid_ids"] == [payment_id]

    @pytest.mark.asyncio
    async def test_unknown_record_is_404(self, client, seed_payments) -> None:
        (payment_id,) = await seed_payments([("100.00", "P-1", 0)])
        response = await client.post(
            "/api/v1/reconciliation/match", json={"record_id": "missing", "payment_id": payment_id}
        )
        assert response.status_code == 404


# ---------------------------------------------------------------------------
# Batch, sync and reads
# ---------------------------------------------------------------------------


class TestBatch:
    @pytest.mark.asyncio
    async def test_batch_matches_by_reference(self, client, seed_payments) -> None:
        await seed_payments([("100.00", "REF-1", 0), ("40.00", "REF-2", 1)])

        response = await client.post(
            "/api/v1/reconciliation/batch",
            json={
                "transactions": [
                    {"reference": "REF-1", "amount": "100.00"},
                    {"reference": "REF-2", "amount": "50.00"},
                    {"reference": "REF-3", "amount": "10.00"},
                ]
            },
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["created"] == 3
        assert body["matched"] == 1
        assert body["partial"] == 1
        assert body["unmatched"] == 1

        again = (
            await client.post(
                "/api/v1/reconciliation/batch", json={"transactions": [{"reference": "REF-1", "amount": "100.00"}]}
            )
        ).json()
        assert again["skipped"] == 1


class TestProviderSync:
    @pytest.mark.asyncio
    async def test_sync_pulls_and_auto_matches(self, client, session_factory, vault, provider_stub, seed_payments):
        (payment_id,) = await seed_payments([("75.00", "P-1", 0)])
        async with session_factory() as session:
            provider = await FinanceProviderRepository(session, "tenant-a").create(
                {
                    "name": "Front desk Paystack",
                    "provider_type": "paystack",
                    "api_key_encrypted": vault.encrypt("sk_tenant_key"),
                    "auto_reconcile": True,
                }
            )
            await session.commit()
        provider_stub.on(
            "GET",
            "/transaction",
            json={
                "status": True,
                "data": [
                    {"reference": "PS-1", "amount": 7500, "status": "success", "paid_at": "2026-03-01T12:00:00Z"},
                    {"reference": None, "amount": 100},
                ],
            },
        )

        response = await client.post(
            "/api/v1/reconciliation/sync",
            json={"provider_id": provider.id, "start": "2026-03-01T00:00:00Z", "end": "2026-03-02T00:00:00Z"},
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["fetched"] == 1
        assert body["inserted"] == 1
        assert body["auto_match"]["matched"] == 1
        assert body["auto_match"]["links"][0]["payment_id"] == payment_id

        (request,) = provider_stub.calls("GET", "/transaction")
        assert request.headers["Authorization"] == "Bearer sk_tenant_key"

    @pytest.mark.asyncio
    async def test_end_before_start_is_400(self, client) -> None:
        response = await client.post(
            "/api/v1/reconciliation/sync",
            json={"provider_id": "x", "start": "2026-03-02T00:00:00Z", "end": "2026-03-01T00:00:00Z"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_provider_is_404(self, client) -> None:
        response = await client.post(
            "/api/v1/reconciliation/sync",
            json={"provider_id": "nope", "start": "2026-03-01T00:00:00Z", "end": "2026-03-02T00:00:00Z"},
        )
        assert response.status_code == 404


class TestReads:
    @pytest.mark.asyncio
    async def test_empty_summary_has_zero_rate(self, client) -> None:
        summary = (await client.get("/api/v1/reconciliation/summary")).json()
        assert summary["total"] == 0
        assert summary["match_rate"] == 0

    @pytest.mark.asyncio
    async def test_summary_after_auto_match(self, client, seed_payments) -> None:
        await seed_payments([("100.00", "P-1", 0)])
        await _import(client, "reference,amount\nTX-1,100.00\nTX-2,60.00\n")
        await client.post("/api/v1/reconciliation/auto-match")

        summary = (await client.get("/api/v1/reconciliation/summary")).json()
        assert summary["total"] == 2
        assert summary["matched"] == 1
        assert summary["unmatched"] == 1
        assert summary["match_rate"] == pytest.approx(50.0)
        assert Decimal(summary["matched_amount"]) == Decimal("100.00")
        assert Decimal(summary["unmatched_amount"]) == Decimal("60.00")

    @pytest.mark.asyncio
    async def test_suggestions_rank_reference_match_first(self, client, seed_payments) -> None:
        exact, _other = await seed_payments([("100.00", "TX-1", 0), ("100.00", "ZZZ-999", 0)])
        await _import(client, "reference,amount,date\nTX-1,100.00,2026-03-01T12:00:00Z\n")
        record = (await client.get("/api/v1/reconciliation/records")).json()[0]

        response = await client.get(f"/api/v1/reconciliation/records/{record['id']}/suggestions")

        assert response.status_code == 200
        suggestions = response.json()
        assert suggestions[0]["payment_id"] == exact
        assert suggestions[0]["score"]["reference_score"] > 0

    @pytest.mark.asyncio
    async def test_records_filter_by_status(self, client) -> None:
        await _import(client, "reference,amount\nTX-1,10\n")
        matched = (await client.get("/api/v1/reconciliation/records", params={"status": "matched"})).json()
        assert matched == []
