"""Per-provider webhook signature verification.

Three schemes are supported:

* **Paystack**: ``x-paystack-signature`` carries the hex HMAC-SHA512 of the
  raw request body keyed with the secret.
* **Stripe**: ``stripe-signature`` carries ``t=<unix>,v1=<hex>[,v1=...]``;
  each ``v1`` is the hex HMAC-SHA256 of ``"{t}.{body}"``.  A timestamp
  tolerance bounds replay.
* **Flutterwave**: ``verif-hash`` must equal the configured secret hash.
  This is a shared-secret comparison, not a MAC over the body, and is the
  weakest of the three.

Every comparison uses :func:`hmac.compare_digest`.  All functions are pure;
the caller supplies the body bytes exactly as received.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import time
from collections.abc import Mapping

from pydantic import BaseModel

from ledger_core.errors import SignatureVerificationError
from ledger_core.models.payments import ProviderType

logger = logging.getLogger(__name__)

PAYSTACK_SIGNATURE_HEADER = "x-paystack-signature"
STRIPE_SIGNATURE_HEADER = "stripe-signature"
FLUTTERWAVE_SIGNATURE_HEADER = "verif-hash"

SIGNATURE_HEADERS: dict[ProviderType, str] = {
    ProviderType.PAYSTACK: PAYSTACK_SIGNATURE_HEADER,
    ProviderType.STRIPE: STRIPE_SIGNATURE_HEADER,
    ProviderType.FLUTTERWAVE: FLUTTERWAVE_SIGNATURE_HEADER,
}

DEFAULT_STRIPE_TOLERANCE_SECONDS = 300


class VerificationResult(BaseModel):
    """Outcome of a successful (or skipped) verification."""

    provider: ProviderType
    verified: bool
    degraded_trust: bool = False


# ---------------------------------------------------------------------------
# Signing helpers
# ---------------------------------------------------------------------------


def compute_paystack_signature(body: bytes, secret: str) -> str:
    """Return the hex HMAC-SHA512 of *body*."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def compute_stripe_signature(body: bytes, secret: str, timestamp: int | str) -> str:
    """Return the hex HMAC-SHA256 of ``"{timestamp}.{body}"``."""
    signed_payload = f"{timestamp}.".encode() + body
    return hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()


# ---------------------------------------------------------------------------
# Scheme verifiers
# ---------------------------------------------------------------------------


def verify_paystack_signature(body: bytes, header: str | None, secret: str) -> bool:
    if not header:
        return False
    expected = compute_paystack_signature(body, secret)
    return hmac.compare_digest(expected, header.strip().lower())


def _parse_stripe_header(header: str) -> tuple[str | None, list[str]]:
    timestamp: str | None = None
    signatures: list[str] = []
    for item in header.split(","):
        key, sep, value = item.strip().partition("=")
        if not sep:
            continue
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def verify_stripe_signature(
    body: bytes,
    header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> bool:
    """Verify a Stripe ``t=...,v1=...`` signature header.

    A ``tolerance_seconds`` of ``0`` disables the timestamp check.
    """
    if not header:
        return False
    timestamp, candidates = _parse_stripe_header(header)
    if timestamp is None or not candidates:
        return False
    try:
        ts = int(timestamp)
    except ValueError:
        return False

    if tolerance_seconds > 0:
        current = time.time() if now is None else now
        if abs(current - ts) > tolerance_seconds:
            logger.info("Stripe signature timestamp outside tolerance (t=%s)", timestamp)
            return False

    expected = compute_stripe_signature(body, secret, timestamp)
    # Check every candidate so the comparison count does not leak which one matched.
    matched = False
    for candidate in candidates:
        if hmac.compare_digest(expected, candidate):
            matched = True
    return matched


def verify_flutterwave_hash(header: str | None, secret_hash: str) -> bool:
    if not header:
        return False
    return hmac.compare_digest(secret_hash.encode("utf-8"), header.encode("utf-8"))


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


def _header(headers: Mapping[str, str], name: str) -> str | None:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive; starlette Headers are not.
        lowered = name.lower()
        for key, candidate in headers.items():
            if key.lower() == lowered:
                return candidate
    return value


def verify_webhook(
    provider: ProviderType,
    body: bytes,
    headers: Mapping[str, str],
    secret: str | None,
    *,
    stripe_tolerance_seconds: int = DEFAULT_STRIPE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> VerificationResult:
    """Verify an inbound webhook for *provider*.

    Returns
    -------
    VerificationResult
        ``verified=True`` on success.  When no secret is configured the
        check is skipped and ``degraded_trust=True`` is returned.

    Raises
    ------
    SignatureVerificationError
        If a secret is configured and the signature is missing or wrong.
    """
    if not secret:
        logger.warning(
            "No webhook secret configured for provider=%s; signature verification skipped",
            provider.value,
        )
        return VerificationResult(provider=provider, verified=False, degraded_trust=True)

    header = _header(headers, SIGNATURE_HEADERS[provider])
    if not header:
        raise SignatureVerificationError(provider.value, f"missing {SIGNATURE_HEADERS[provider]} header")

    if provider == ProviderType.PAYSTACK:
        ok = verify_paystack_signature(body, header, secret)
    elif provider == ProviderType.STRIPE:
        ok = verify_stripe_signature(
            body,
            header,
            secret,
            tolerance_seconds=stripe_tolerance_seconds,
            now=now,
        )
    else:
        ok = verify_flutterwave_hash(header, secret)

    if not ok:
        raise SignatureVerificationError(provider.value, "signature mismatch")
    return VerificationResult(provider=provider, verified=True)
