"""Discriminate raw provider payloads into :data:`ProviderEvent` variants."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_core.errors import FeeValidationError
from ledger_core.models.payments import ProviderType, ReportedStatus
from ledger_core.models.webhooks import (
    FlutterwaveChargeEvent,
    PaystackChargeEvent,
    RedirectCallback,
    StripeCheckoutEvent,
    UnrecognizedEvent,
)

logger = logging.getLogger(__name__)

_PENDING_STATUSES = frozenset({"pending", "ongoing", "processing", "queued", "unpaid"})
_REDIRECT_SUCCESS = frozenset({"successful", "success", "completed"})
_REDIRECT_FAILURE = frozenset({"failed", "cancelled", "canceled", "abandoned", "error"})


def _minor_to_major(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return (Decimal(str(value)) / 100).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _major(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None


def _status(raw: str | None, success: frozenset[str]) -> ReportedStatus:
    value = (raw or "").strip().lower()
    if value in success:
        return ReportedStatus.SUCCESSFUL
    if value in _PENDING_STATUSES or not value:
        return ReportedStatus.PENDING
    return ReportedStatus.FAILED


def _object(container: Mapping[str, Any], key: str, provider: ProviderType) -> Mapping[str, Any]:
    """Return ``container[key]`` as a mapping; absent or null reads as empty."""
    value = container.get(key)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise FeeValidationError(f"Malformed {provider.value} payload: '{key}' must be an object")
    return value


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, (Mapping, list)):
        return None
    return str(value)


# ---------------------------------------------------------------------------
# Per-provider parsers
# ---------------------------------------------------------------------------


def parse_paystack(payload: Mapping[str, Any]) -> PaystackChargeEvent:
    """Parse a Paystack ``charge.*`` event.

    Raises
    ------
    FeeValidationError
        ``data`` is present but is not an object.
    """
    data = _object(payload, "data", ProviderType.PAYSTACK)
    raw_status = _text(data.get("status"))
    return PaystackChargeEvent(
        event=str(payload.get("event", "")),
        reference=_text(data.get("reference")),
        reported_status=_status(raw_status, frozenset({"success"})),
        raw_status=raw_status,
        amount=_minor_to_major(data.get("amount")),
        provider_transaction_id=_text(data.get("id")),
        raw=dict(payload),
    )


def parse_flutterwave(payload: Mapping[str, Any]) -> FlutterwaveChargeEvent:
    data = _object(payload, "data", ProviderType.FLUTTERWAVE)
    raw_status = _text(data.get("status") or payload.get("status"))
    return FlutterwaveChargeEvent(
        event=str(payload.get("event", "")),
        reference=_text(data.get("tx_ref") or payload.get("txRef")),
        reported_status=_status(raw_status, frozenset({"successful"})),
        raw_status=raw_status,
        amount=_major(data.get("amount")),
        provider_transaction_id=_text(data.get("id")),
        raw=dict(payload),
    )


def parse_stripe(payload: Mapping[str, Any]) -> StripeCheckoutEvent:
    event_type = str(payload.get("type", ""))
    session = _object(_object(payload, "data", ProviderType.STRIPE), "object", ProviderType.STRIPE)
    raw_status = _text(session.get("payment_status"))

    if event_type.endswith(("async_payment_failed", ".expired")):
        reported = ReportedStatus.FAILED
    else:
        reported = _status(raw_status, frozenset({"paid", "no_payment_required"}))

    metadata = _object(session, "metadata", ProviderType.STRIPE)
    return StripeCheckoutEvent(
        event=event_type,
        session_id=_text(session.get("id")),
        reference=_text(session.get("client_reference_id") or metadata.get("reference")),
        reported_status=reported,
        raw_status=raw_status,
        amount=_minor_to_major(session.get("amount_total")),
        provider_transaction_id=_text(session.get("payment_intent")),
        raw=dict(payload),
    )


def parse_redirect(
    query: Mapping[str, str],
    provider: ProviderType | None = None,
) -> RedirectCallback:
    """Parse a browser redirect (``?reference=...&status=...``).

    The status in a redirect is attacker-controlled; callers must confirm
    it with a server-to-server lookup before settling anything.
    """
    raw_status = query.get("status")
    if raw_status and raw_status.strip().lower() in _REDIRECT_FAILURE:
        reported = ReportedStatus.FAILED
    elif raw_status and raw_status.strip().lower() in _REDIRECT_SUCCESS:
        reported = ReportedStatus.SUCCESSFUL
    else:
        reported = ReportedStatus.PENDING

    provider_value = provider
    if provider_value is None and query.get("provider"):
        try:
            provider_value = ProviderType(str(query["provider"]).lower())
        except ValueError:
            provider_value = None

    return RedirectCallback(
        provider=provider_value,
        reference=query.get("reference") or query.get("tx_ref") or query.get("trxref"),
        session_id=query.get("session_id"),
        reported_status=reported,
        raw_status=raw_status,
        raw=dict(query),
    )


# ---------------------------------------------------------------------------
# Discrimination
# ---------------------------------------------------------------------------

_PARSERS = {
    ProviderType.PAYSTACK: parse_paystack,
    ProviderType.STRIPE: parse_stripe,
    ProviderType.FLUTTERWAVE: parse_flutterwave,
}


def detect_provider(payload: Mapping[str, Any]) -> ProviderType | None:
    """Infer the provider from the payload shape alone."""
    event = str(payload.get("event", ""))
    data = payload.get("data")
    data = data if isinstance(data, Mapping) else {}

    if event == "charge.completed" or "tx_ref" in data:
        return ProviderType.FLUTTERWAVE
    if event.startswith("charge.") or event.startswith("transaction."):
        return ProviderType.PAYSTACK
    if str(payload.get("type", "")).startswith("checkout.session"):
        return ProviderType.STRIPE
    return None


def parse_provider_event(
    payload: Mapping[str, Any],
    *,
    provider: ProviderType | None = None,
) -> PaystackChargeEvent | StripeCheckoutEvent | FlutterwaveChargeEvent | UnrecognizedEvent:
    """Turn a decoded webhook body into exactly one event variant.

    When *provider* is known (from the route) the payload is parsed as that
    provider's shape; otherwise the shape decides.  Payloads that fit no
    shape, or that carry no reference, become :class:`UnrecognizedEvent`.
    """
    detected = provider or detect_provider(payload)
    if detected is None:
        logger.info("Unrecognised provider payload (keys=%s)", sorted(payload.keys()))
        return UnrecognizedEvent(event=payload.get("event") or payload.get("type"), raw=dict(payload))

    event = _PARSERS[detected](payload)
    if not event.reference:
        logger.info("Provider payload from %s carries no reference", detected.value)
        return UnrecognizedEvent(event=getattr(event, "event", None), raw=dict(payload))
    return event
