"""Outbound provider contracts: checkout, status lookup and listing."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest
from ledger_core.errors import ProviderError
from ledger_core.models.payments import ProviderType, ReportedStatus

from ledger_api.services.provider_client import ProviderGateway

START = datetime(2026, 3, 1, tzinfo=UTC)
END = datetime(2026, 3, 31, tzinfo=UTC)


@pytest.fixture()
def gateway(http_client) -> ProviderGateway:
    return ProviderGateway(
        http_client,
        base_urls={
            ProviderType.PAYSTACK: "https://api.paystack.test",
            ProviderType.STRIPE: "https://api.stripe.test",
            ProviderType.FLUTTERWAVE: "https://api.flutterwave.test",
        },
        currency="NGN",
        callback_url="https://ledger.test/api/v1/webhooks/payments/callback",
    )


class TestCheckout:
    @pytest.mark.asyncio
    async def test_stripe_checkout_is_form_encoded(self, gateway, provider_stub) -> None:
        provider_stub.on(
            "POST", "/v1/checkout/sessions", json={"id": "cs_1", "url": "https://checkout.stripe.test/cs_1"}
        )

        checkout = await gateway.create_checkout(
            ProviderType.STRIPE, "sk_stripe", reference="PF-1", amount=Decimal("12.34"), email="o@x.test", name=None
        )

        assert checkout.payment_url == "https://checkout.stripe.test/cs_1"
        assert checkout.provider_reference == "cs_1"
        (request,) = provider_stub.calls("POST", "/v1/checkout/sessions")
        form = parse_qs(request.content.decode())
        assert form["client_reference_id"] == ["PF-1"]
        assert form["line_items[0][price_data][unit_amount]"] == ["1234"]
        assert form["line_items[0][price_data][currency]"] == ["ngn"]
        assert request.headers["Authorization"] == "Bearer sk_stripe"

    @pytest.mark.asyncio
    async def test_flutterwave_checkout_sends_major_units(self, gateway, provider_stub) -> None:
        provider_stub.on("POST", "/v3/payments", json={"status": "success", "data": {"link": "https://fw.test/pay"}})

        checkout = await gateway.create_checkout(
            ProviderType.FLUTTERWAVE, "sk_fw", reference="PF-2", amount=Decimal("50.00"), email="o@x.test", name="Inn"
        )

        assert checkout.payment_url == "https://fw.test/pay"
        (request,) = provider_stub.calls("POST", "/v3/payments")
        assert b'"tx_ref":"PF-2"' in request.content.replace(b" ", b"")
        assert b'"amount":"50.00"' in request.content.replace(b" ", b"")

    @pytest.mark.asyncio
    async def test_missing_payment_url_is_provider_error(self, gateway, provider_stub) -> None:
        provider_stub.on("POST", "/transaction/initialize", json={"status": True, "data": {}})

        with pytest.raises(ProviderError, match="no payment URL"):
            await gateway.create_checkout(
                ProviderType.PAYSTACK, "sk", reference="PF-3", amount=Decimal("1"), email=None, name=None
            )

    @pytest.mark.asyncio
    async def test_http_error_status_is_provider_error(self, gateway, provider_stub) -> None:
        provider_stub.on("POST", "/transaction/initialize", status_code=401, json={"message": "bad key"})

        with pytest.raises(ProviderError) as excinfo:
            await gateway.create_checkout(
                ProviderType.PAYSTACK, "sk", reference="PF-4", amount=Decimal("1"), email=None, name=None
            )
        assert excinfo.value.provider == "paystack"


class TestVerify:
    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self, gateway, provider_stub, monkeypatch) -> None:
        monkeypatch.setattr("ledger_core.retry.asyncio.sleep", _no_sleep)
        attempts = {"n": 0}

        def _flaky(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] == 1:
                raise httpx.ConnectError("reset", request=request)
            return httpx.Response(200, json={"data": {"status": "success", "reference": "PF-5", "amount": 5000}})

        provider_stub.on("GET", "/transaction/verify/", handler=_flaky)

        event = await gateway.verify_transaction(ProviderType.PAYSTACK, "sk", "PF-5")

        assert attempts["n"] == 2
        assert event.reported_status == ReportedStatus.SUCCESSFUL
        assert event.amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_persistent_transport_error_is_provider_error(self, gateway, provider_stub, monkeypatch) -> None:
        monkeypatch.setattr("ledger_core.retry.asyncio.sleep", _no_sleep)

        def _down(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("down", request=request)

        provider_stub.on("GET", "/transaction/verify/", handler=_down)

        with pytest.raises(ProviderError, match="after retries"):
            await gateway.verify_transaction(ProviderType.PAYSTACK, "sk", "PF-6")

    @pytest.mark.asyncio
    async def test_stripe_session_must_belong_to_payment(self, gateway, provider_stub) -> None:
        provider_stub.on(
            "GET", "/v1/checkout/sessions/cs_9", json={"id": "cs_9", "client_reference_id": "PF-other"}
        )

        with pytest.raises(ProviderError, match="does not belong"):
            await gateway.verify_transaction(ProviderType.STRIPE, "sk", "PF-7", session_id="cs_9")

    @pytest.mark.asyncio
    async def test_stripe_requires_session_id(self, gateway) -> None:
        with pytest.raises(ProviderError, match="session_id"):
            await gateway.verify_transaction(ProviderType.STRIPE, "sk", "PF-8")


class TestListTransactions:
    @pytest.mark.asyncio
    async def test_paystack_listing(self, gateway, provider_stub) -> None:
        provider_stub.on(
            "GET",
            "/transaction",
            json={
                "data": [
                    {"reference": "PF-1", "amount": 15050, "status": "success", "paid_at": "2026-03-02T10:00:00Z"},
                    {"reference": None, "amount": 100},
                ]
            },
        )

        (txn,) = await gateway.list_transactions(ProviderType.PAYSTACK, "sk", START, END)

        assert txn.reference == "PF-1"
        assert txn.amount == Decimal("150.50")
        assert txn.transaction_date == datetime(2026, 3, 2, 10, 0, tzinfo=UTC)

    @pytest.mark.asyncio
    async def test_flutterwave_listing_uses_tx_ref(self, gateway, provider_stub) -> None:
        provider_stub.on(
            "GET",
            "/v3/transactions",
            json={"data": [{"tx_ref": "PF-2", "amount": 75.5, "status": "successful", "created_at": None}]},
        )

        (txn,) = await gateway.list_transactions(ProviderType.FLUTTERWAVE, "sk", START, END)

        assert txn.reference == "PF-2"
        assert txn.amount == Decimal("75.50")
        assert txn.transaction_date is None
        (request,) = provider_stub.calls("GET", "/v3/transactions")
        assert request.url.params["from"] == "2026-03-01"

    @pytest.mark.asyncio
    async def test_stripe_listing_prefers_metadata_reference(self, gateway, provider_stub) -> None:
        provider_stub.on(
            "GET",
            "/v1/charges",
            json={
                "data": [
                    {"id": "ch_1", "amount": 2000, "metadata": {"reference": "PF-3"}, "created": 1772445600},
                    {"id": "ch_2", "amount": 900, "metadata": {}},
                ]
            },
        )

        txns = await gateway.list_transactions(ProviderType.STRIPE, "sk", START, END)

        assert [t.reference for t in txns] == ["PF-3", "ch_2"]
        assert txns[0].amount == Decimal("20.00")


async def _no_sleep(_delay: float) -> None:
    return None
