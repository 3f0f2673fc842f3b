"""Platform provider credentials: write-only secrets and rotation."""

from __future__ import annotations

import pytest
from ledger_core.state.repository import PaymentProviderRepository


class TestProviderCredentials:
    @pytest.mark.asyncio
    async def test_secrets_are_never_returned(self, client, admin_headers) -> None:
        response = await client.put(
            "/api/v1/providers/paystack",
            json={"display_name": "Paystack", "api_key": "sk_live_abc", "webhook_secret": "whsec_abc"},
            headers=admin_headers,
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["has_api_key"] is True
        assert body["has_webhook_secret"] is True
        assert "sk_live_abc" not in response.text
        assert "whsec_abc" not in response.text

        listed = await client.get("/api/v1/providers", headers=admin_headers)
        assert [p["provider_type"] for p in listed.json()] == ["paystack"]
        assert "sk_live_abc" not in listed.text

    @pytest.mark.asyncio
    async def test_secrets_are_encrypted_at_rest(self, client, admin_headers, session_factory, vault) -> None:
        await client.put(
            "/api/v1/providers/stripe",
            json={"display_name": "Stripe", "api_key": "sk_live_stripe"},
            headers=admin_headers,
        )

        async with session_factory() as session:
            row = await PaymentProviderRepository(session).get_active("stripe")

        assert row.api_key_encrypted != "sk_live_stripe"
        assert vault.decrypt(row.api_key_encrypted) == "sk_live_stripe"

    @pytest.mark.asyncio
    async def test_omitted_secret_is_kept(self, client, admin_headers, session_factory, vault) -> None:
        await client.put(
            "/api/v1/providers/paystack",
            json={"display_name": "Paystack", "api_key": "sk_one", "webhook_secret": "whsec_one"},
            headers=admin_headers,
        )
        await client.put(
            "/api/v1/providers/paystack",
            json={"display_name": "Paystack NG", "api_key": "sk_two"},
            headers=admin_headers,
        )

        async with session_factory() as session:
            row = await PaymentProviderRepository(session).get_active("paystack")

        assert row.display_name == "Paystack NG"
        assert vault.decrypt(row.api_key_encrypted) == "sk_two"
        assert vault.decrypt(row.webhook_secret_encrypted) == "whsec_one"

    @pytest.mark.asyncio
    async def test_unknown_provider_type_rejected(self, client, admin_headers) -> None:
        response = await client.put("/api/v1/providers/paypal", json={"display_name": "PayPal"}, headers=admin_headers)
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_tenant_owner_cannot_manage_providers(self, client) -> None:
        assert (await client.get("/api/v1/providers")).status_code == 403
