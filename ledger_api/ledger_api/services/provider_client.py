"""Outbound calls to payment providers over their REST contracts.

One :class:`ProviderGateway` wraps the shared ``httpx.AsyncClient`` and
speaks the three wire contracts the ledger needs:

* checkout creation (payment initiation),
* server-to-server status lookup (redirect callbacks, manual verify),
* transaction listing (reconciliation sync).

Responses from status lookups are fed through the same payload parsers as
inbound webhooks so the settlement path sees one event shape regardless
of how the status was learned.  Every failure surfaces as
:class:`~ledger_core.errors.ProviderError`.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from ledger_core.errors import ProviderError
from ledger_core.models.payments import CheckoutSession, ProviderType
from ledger_core.models.reconciliation import ExternalTransaction
from ledger_core.retry import RetryConfig, async_retry_with_backoff
from ledger_core.webhooks.payloads import parse_flutterwave, parse_paystack, parse_stripe

from ledger_api.middleware.prometheus import PROVIDER_CALL_DURATION
from ledger_api.middleware.trace_context import outbound_headers

if TYPE_CHECKING:
    from ledger_core.models.webhooks import FlutterwaveChargeEvent, PaystackChargeEvent, StripeCheckoutEvent

    from ledger_api.config import APISettings

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/api/v1/webhooks/payments/callback"

_LOOKUP_RETRY = RetryConfig(max_retries=2, base_delay=0.5, max_delay=2.0)


def _to_minor(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1")))


def _from_minor(value: Any) -> Decimal:
    return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))


def _parse_timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, int | float):
        return datetime.fromtimestamp(value, tz=UTC)
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class ProviderGateway:
    """HTTP client for Paystack, Stripe and Flutterwave.

    Parameters
    ----------
    http:
        Shared async client.  Timeouts are configured on the client.
    base_urls:
        API root per provider (overridable for sandboxes and tests).
    currency:
        ISO currency code used for checkouts.
    callback_url:
        Absolute URL the provider redirects the payer back to.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_urls: dict[ProviderType, str],
        currency: str,
        callback_url: str,
    ) -> None:
        self._http = http
        self._base_urls = {k: v.rstrip("/") for k, v in base_urls.items()}
        self._currency = currency
        self._callback_url = callback_url

    @classmethod
    def from_settings(cls, settings: APISettings, http: httpx.AsyncClient) -> ProviderGateway:
        return cls(
            http,
            base_urls={
                ProviderType.PAYSTACK: settings.paystack_base_url,
                ProviderType.STRIPE: settings.stripe_base_url,
                ProviderType.FLUTTERWAVE: settings.flutterwave_base_url,
            },
            currency=settings.currency,
            callback_url=settings.public_base_url.rstrip("/") + CALLBACK_PATH,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _request(
        self,
        provider: ProviderType,
        operation: str,
        method: str,
        path: str,
        api_key: str,
        *,
        json: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {api_key}", **outbound_headers()}
        url = self._base_urls[provider] + path
        start = time.monotonic()
        try:
            response = await self._http.request(method, url, json=json, data=data, params=params, headers=headers)
        except httpx.TransportError:
            raise
        except httpx.HTTPError as exc:
            raise ProviderError(provider.value, f"{operation} failed: {exc}") from exc
        finally:
            PROVIDER_CALL_DURATION.labels(provider=provider.value, operation=operation).observe(
                time.monotonic() - start
            )

        if response.status_code >= 400:
            logger.warning(
                "Provider call failed: provider=%s operation=%s status=%d",
                provider.value,
                operation,
                response.status_code,
            )
            raise ProviderError(
                provider.value,
                f"{operation} returned HTTP {response.status_code}",
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(provider.value, f"{operation} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise ProviderError(provider.value, f"{operation} returned an unexpected body")
        return body

    async def _call(self, provider: ProviderType, operation: str, *args: Any, **kwargs: Any) -> dict[str, Any]:
        """Single attempt; transport errors become :class:`ProviderError`."""
        try:
            return await self._request(provider, operation, *args, **kwargs)
        except httpx.TransportError as exc:
            raise ProviderError(provider.value, f"{operation} failed: {exc}") from exc

    async def _call_with_retry(
        self, provider: ProviderType, operation: str, *args: Any, **kwargs: Any
    ) -> dict[str, Any]:
        """Idempotent reads are retried on transport errors before giving up."""
        try:
            return await async_retry_with_backoff(
                lambda: self._request(provider, operation, *args, **kwargs),
                _LOOKUP_RETRY,
                retryable_exceptions=(httpx.TransportError,),
            )
        except httpx.TransportError as exc:
            raise ProviderError(provider.value, f"{operation} failed after retries: {exc}") from exc

    # ------------------------------------------------------------------
    # Checkout
    # ------------------------------------------------------------------

    async def create_checkout(
        self,
        provider: ProviderType,
        api_key: str,
        *,
        reference: str,
        amount: Decimal,
        email: str | None,
        name: str | None,
    ) -> CheckoutSession:
        """Open a hosted checkout for *amount* and return its payment URL."""
        if provider == ProviderType.PAYSTACK:
            body = await self._call(
                provider,
                "initialize",
                "POST",
                "/transaction/initialize",
                api_key,
                json={
                    "reference": reference,
                    "amount": _to_minor(amount),
                    "currency": self._currency,
                    "email": email,
                    "callback_url": f"{self._callback_url}?provider=paystack",
                    "metadata": {"reference": reference, "purpose": "platform_fee"},
                },
            )
            data = body.get("data") or {}
            url = data.get("authorization_url")
            provider_ref = data.get("access_code")
        elif provider == ProviderType.FLUTTERWAVE:
            body = await self._call(
                provider,
                "initialize",
                "POST",
                "/v3/payments",
                api_key,
                json={
                    "tx_ref": reference,
                    "amount": str(amount),
                    "currency": self._currency,
                    "redirect_url": f"{self._callback_url}?provider=flutterwave",
                    "customer": {"email": email, "name": name},
                    "meta": {"purpose": "platform_fee"},
                    "customizations": {"title": "Platform fees"},
                },
            )
            url = (body.get("data") or {}).get("link")
            provider_ref = None
        else:
            body = await self._call(
                provider,
                "initialize",
                "POST",
                "/v1/checkout/sessions",
                api_key,
                data={
                    "mode": "payment",
                    "client_reference_id": reference,
                    "customer_email": email or "",
                    "success_url": (
                        f"{self._callback_url}?provider=stripe&session_id={{CHECKOUT_SESSION_ID}}"
                        f"&reference={reference}"
                    ),
                    "cancel_url": f"{self._callback_url}?provider=stripe&reference={reference}&status=cancelled",
                    "line_items[0][quantity]": "1",
                    "line_items[0][price_data][currency]": self._currency.lower(),
                    "line_items[0][price_data][unit_amount]": str(_to_minor(amount)),
                    "line_items[0][price_data][product_data][name]": "Platform fees",
                    "metadata[reference]": reference,
                },
            )
            url = body.get("url")
            provider_ref = body.get("id")

        if not url:
            raise ProviderError(provider.value, "checkout response carried no payment URL")
        logger.info("Checkout created: provider=%s reference=%s", provider.value, reference)
        return CheckoutSession(payment_url=url, provider_reference=provider_ref)

    # ------------------------------------------------------------------
    # Status lookup
    # ------------------------------------------------------------------

    async def verify_transaction(
        self,
        provider: ProviderType,
        api_key: str,
        reference: str,
        session_id: str | None = None,
    ) -> PaystackChargeEvent | StripeCheckoutEvent | FlutterwaveChargeEvent:
        """Ask *provider* for the authoritative status of *reference*."""
        if provider == ProviderType.PAYSTACK:
            body = await self._call_with_retry(
                provider, "verify", "GET", f"/transaction/verify/{reference}", api_key
            )
            event = parse_paystack({"event": "charge.success", "data": body.get("data") or {}})
        elif provider == ProviderType.FLUTTERWAVE:
            body = await self._call_with_retry(
                provider,
                "verify",
                "GET",
                "/v3/transactions/verify_by_reference",
                api_key,
                params={"tx_ref": reference},
            )
            event = parse_flutterwave({"event": "charge.completed", "data": body.get("data") or {}})
        else:
            if not session_id:
                raise ProviderError(provider.value, "session_id is required to verify a checkout session")
            body = await self._call_with_retry(
                provider, "verify", "GET", f"/v1/checkout/sessions/{session_id}", api_key
            )
            if body.get("client_reference_id") != reference:
                raise ProviderError(provider.value, "checkout session does not belong to this payment")
            event = parse_stripe({"type": "checkout.session.completed", "data": {"object": body}})

        # The provider may echo a different casing or omit the reference.
        if event.reference != reference:
            event = event.model_copy(update={"reference": reference})
        return event

    # ------------------------------------------------------------------
    # Transaction listing
    # ------------------------------------------------------------------

    async def list_transactions(
        self,
        provider: ProviderType,
        api_key: str,
        start: datetime,
        end: datetime,
    ) -> list[ExternalTransaction]:
        """Fetch provider-reported transactions created within ``[start, end]``."""
        transactions: list[ExternalTransaction] = []
        if provider == ProviderType.PAYSTACK:
            body = await self._call_with_retry(
                provider,
                "list",
                "GET",
                "/transaction",
                api_key,
                params={"from": start.isoformat(), "to": end.isoformat(), "perPage": 100},
            )
            for item in body.get("data") or []:
                if not item.get("reference") or item.get("amount") is None:
                    continue
                transactions.append(
                    ExternalTransaction(
                        reference=item["reference"],
                        amount=_from_minor(item["amount"]),
                        transaction_date=_parse_timestamp(item.get("paid_at") or item.get("created_at")),
                        provider=provider.value,
                        status=item.get("status"),
                        raw_data=item,
                    )
                )
        elif provider == ProviderType.FLUTTERWAVE:
            body = await self._call_with_retry(
                provider,
                "list",
                "GET",
                "/v3/transactions",
                api_key,
                params={"from": start.date().isoformat(), "to": end.date().isoformat()},
            )
            for item in body.get("data") or []:
                if not item.get("tx_ref") or item.get("amount") is None:
                    continue
                transactions.append(
                    ExternalTransaction(
                        reference=item["tx_ref"],
                        amount=Decimal(str(item["amount"])).quantize(Decimal("0.01")),
                        transaction_date=_parse_timestamp(item.get("created_at")),
                        provider=provider.value,
                        status=item.get("status"),
                        raw_data=item,
                    )
                )
        else:
            body = await self._call_with_retry(
                provider,
                "list",
                "GET",
                "/v1/charges",
                api_key,
                params={
                    "created[gte]": int(start.timestamp()),
                    "created[lte]": int(end.timestamp()),
                    "limit": 100,
                },
            )
            for item in body.get("data") or []:
                reference = (item.get("metadata") or {}).get("reference") or item.get("id")
                if not reference or item.get("amount") is None:
                    continue
                transactions.append(
                    ExternalTransaction(
                        reference=reference,
                        amount=_from_minor(item["amount"]),
                        transaction_date=_parse_timestamp(item.get("created")),
                        provider=provider.value,
                        status=item.get("status"),
                        raw_data=item,
                    )
                )

        logger.info(
            "Fetched %d transactions from %s between %s and %s",
            len(transactions),
            provider.value,
            start.isoformat(),
            end.isoformat(),
        )
        return transactions
