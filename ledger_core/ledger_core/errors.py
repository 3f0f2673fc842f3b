"""Typed exceptions raised by the ledger core.

The API layer maps each family onto an HTTP status code:

* :class:`FeeValidationError` -> 400
* :class:`LedgerTransitionError`, :class:`ConcurrencyConflictError` -> 409
* :class:`SignatureVerificationError` -> 401
* :class:`NotFoundError` -> 404
* :class:`ProviderError` -> 502
"""

from __future__ import annotations

from collections.abc import Iterable


class LedgerError(Exception):
    """Base class for every ledger-domain failure."""


class FeeValidationError(LedgerError, ValueError):
    """Input failed a domain validation rule (amounts, reasons, ranges)."""


class LedgerTransitionError(LedgerError):
    """One or more ledger entries are not eligible for the requested transition.

    The whole batch is rejected; ``invalid_ids`` lists every offending entry
    (missing, or in a status the transition does not accept).
    """

    def __init__(self, message: str, invalid_ids: Iterable[str]) -> None:
        self.invalid_ids: list[str] = sorted(invalid_ids)
        super().__init__(f"{message}: {', '.join(self.invalid_ids)}")


class ConcurrencyConflictError(LedgerError):
    """A conditional update lost a race with a concurrent writer."""


class NotFoundError(LedgerError, LookupError):
    """A referenced entity (payment, record, dispute, rule) does not exist."""


class SignatureVerificationError(LedgerError):
    """An inbound webhook failed provider signature verification."""

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} signature verification failed: {reason}")


class ProviderError(LedgerError):
    """A synchronous call to a payment provider failed or returned garbage."""

    def __init__(self, provider: str, message: str, *, status_code: int | None = None) -> None:
        self.provider = provider
        self.status_code = status_code
        super().__init__(f"{provider}: {message}")
