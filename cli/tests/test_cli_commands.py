"""Ledger, payment, billing, reconciliation and alert commands against a fake API."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from cli.app import app
from typer.testing import CliRunner

runner = CliRunner()


@pytest.fixture(autouse=True)
def _token(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_API_TOKEN", "lfdev.e30=.sig")
    monkeypatch.setenv("LEDGER_API_URL", "https://ledger.test")


class TestRequests:
    def test_bearer_token_and_base_url(self, api) -> None:
        api.on("GET", "/api/v1/ledger/summary", json={"outstanding_amount": "15.00", "counts": {"pending": 3}})

        result = runner.invoke(app, ["summary"])

        assert result.exit_code == 0
        assert api.last.headers["Authorization"] == "Bearer lfdev.e30=.sig"
        assert api.last.url.host == "ledger.test"
        assert "15.00" in result.output

    def test_api_error_detail_exits_3(self, api) -> None:
        api.on("POST", "/api/v1/ledger/waive", status_code=403, json={"detail": "Permission denied"})

        result = runner.invoke(app, ["waive", "L-1", "--reason", "Goodwill"])

        assert result.exit_code == 3
        assert "Permission denied" in result.output

    def test_json_mode_writes_raw_response(self, api) -> None:
        rows = [{"id": "L-1", "status": "pending", "fee_amount": "1.50"}]
        api.on("GET", "/api/v1/ledger", json=rows)

        result = runner.invoke(app, ["--json", "entries", "--status", "pending"])

        assert result.exit_code == 0
        assert json.loads(result.stdout) == rows
        assert api.last.url.params["status"] == "pending"


class TestLedgerCommands:
    def test_record_sends_amount_as_string(self, api) -> None:
        api.on(
            "POST",
            "/api/v1/fees/record",
            json={"applied": True, "created": True, "fee_amount": "15.00", "ledger_id": "L-1", "status": "pending"},
        )

        result = runner.invoke(app, ["record", "QR-1", "1000.00"])

        assert result.exit_code == 0
        assert api.last_json() == {"transaction_class": "qr_payments", "reference_id": "QR-1", "amount": "1000.00"}
        assert "Recorded" in result.output

    def test_waive_reports_total(self, api) -> None:
        api.on("POST", "/api/v1/ledger/waive", json={"ledger_ids": ["L-1", "L-2"], "total_amount": "3.00"})

        result = runner.invoke(app, ["waive", "L-1", "L-2", "--reason", "Goodwill"])

        assert result.exit_code == 0
        assert api.last_json()["ledger_ids"] == ["L-1", "L-2"]
        assert "3.00" in result.output


class TestPayments:
    def test_pay_all_outstanding(self, api) -> None:
        api.on(
            "POST",
            "/api/v1/payments/initiate",
            json={"payment_reference": "PF-1-abc", "payment_url": "https://pay.test/x", "fee_count": 2},
        )

        result = runner.invoke(app, ["pay"])

        assert result.exit_code == 0
        assert "ledger_ids" not in api.last_json()
        assert "PF-1-abc" in result.output

    def test_pay_retry_specific_entries(self, api) -> None:
        api.on("POST", "/api/v1/payments/initiate", json={"payment_reference": "PF-2"})

        runner.invoke(app, ["pay", "L-9", "--provider", "stripe"])

        assert api.last_json() == {"provider": "stripe", "ledger_ids": ["L-9"]}

    def test_verify(self, api) -> None:
        api.on("POST", "/api/v1/payments/verify", json={"payment_reference": "PF-1", "outcome": "settled"})

        result = runner.invoke(app, ["verify", "PF-1"])

        assert result.exit_code == 0
        assert "settled" in result.output


class TestDisputesAndBilling:
    def test_dispute_open(self, api) -> None:
        api.on("POST", "/api/v1/disputes", json={"id": "D-1", "status": "open"})

        result = runner.invoke(app, ["dispute", "open", "L-1", "--reason", "Duplicate", "--action", "waive"])

        assert result.exit_code == 0
        assert api.last_json()["requested_action"] == "waive"
        assert "D-1" in result.output

    def test_billing_run(self, api) -> None:
        api.on(
            "POST",
            "/api/v1/billing/run",
            json={
                "invoiced_tenants": 1,
                "invoices": [
                    {
                        "tenant_id": "tenant-a",
                        "invoice_number": "PFI-202603-0001",
                        "fee_count": 4,
                        "total_amount": "6.00",
                    }
                ],
            },
        )

        result = runner.invoke(app, ["billing", "run", "--period-end", "2026-04-01T00:00:00Z"])

        assert result.exit_code == 0
        assert api.last_json() == {"period_end": "2026-04-01T00:00:00Z"}
        assert "PFI-202603-0001" in result.output


class TestReconciliation:
    def test_import_posts_raw_csv(self, api, tmp_path: Path) -> None:
        statement = tmp_path / "statement.csv"
        statement.write_text("reference,amount,date\nPF-1,15.00,2026-03-02\n", encoding="utf-8")
        api.on(
            "POST",
            "/api/v1/reconciliation/import",
            json={"parsed": 1, "inserted": 1, "errors": [{"row_number": 3, "reason": "bad amount"}]},
        )

        result = runner.invoke(app, ["reconcile", "import", str(statement), "--provider", "paystack"])

        assert result.exit_code == 0
        assert api.last.content == statement.read_bytes()
        assert api.last.headers["Content-Type"] == "text/csv"
        assert api.last.url.params["provider"] == "paystack"
        assert "bad amount" in result.output

    def test_auto_match_and_summary(self, api) -> None:
        api.on("POST", "/api/v1/reconciliation/auto-match", json={"examined": 2, "matched": 1, "links": []})
        api.on("GET", "/api/v1/reconciliation/summary", json={"total": 2, "matched": 1, "match_rate": 50.0})

        assert "matched 1" in runner.invoke(app, ["reconcile", "auto-match"]).output
        assert "50.0%" in runner.invoke(app, ["reconcile", "summary"]).output


class TestAlerts:
    def test_list_unacknowledged(self, api) -> None:
        api.on("GET", "/api/v1/alerts", json=[])

        result = runner.invoke(app, ["alerts", "list", "--unacknowledged"])

        assert result.exit_code == 0
        assert api.last.url.params["acknowledged"] == "false"
        assert "No revenue alerts" in result.output

    def test_evaluate(self, api) -> None:
        api.on("POST", "/api/v1/alerts/evaluate", json={"raised": 0, "alerts": []})

        result = runner.invoke(app, ["--json", "alerts", "evaluate"])

        assert json.loads(result.stdout)["raised"] == 0


def test_connection_error_exits_3(monkeypatch) -> None:
    monkeypatch.setenv("LEDGER_API_URL", "http://127.0.0.1:9")

    result = runner.invoke(app, ["summary"])

    assert result.exit_code == 3
    assert "Cannot connect" in result.output
