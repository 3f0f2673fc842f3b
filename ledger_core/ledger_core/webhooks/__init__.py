"""Inbound payment-provider webhook parsing and verification."""

from ledger_core.webhooks.payloads import detect_provider, parse_provider_event, parse_redirect
from ledger_core.webhooks.signatures import VerificationResult, verify_webhook

__all__ = [
    "VerificationResult",
    "detect_provider",
    "parse_provider_event",
    "parse_redirect",
    "verify_webhook",
]
