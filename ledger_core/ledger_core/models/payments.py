"""Platform payment and settlement models."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class ProviderType(str, Enum):
    """Payment providers the platform can collect fees through."""

    PAYSTACK = "paystack"
    STRIPE = "stripe"
    FLUTTERWAVE = "flutterwave"


class PaymentStatus(str, Enum):
    """Lifecycle of a single platform fee payment attempt."""

    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCESSFUL = "successful"
    FAILED = "failed"


# A payment may only be settled or failed from one of these.
NON_TERMINAL_PAYMENT_STATUSES: frozenset[PaymentStatus] = frozenset(
    {PaymentStatus.INITIATED, PaymentStatus.PROCESSING}
)


class ReportedStatus(str, Enum):
    """Provider-reported outcome after payload discrimination."""

    SUCCESSFUL = "successful"
    FAILED = "failed"
    PENDING = "pending"


class SettlementOutcome(str, Enum):
    """What the settlement processor did with an event."""

    SETTLED = "settled"
    FAILED = "failed"
    ALREADY_PROCESSED = "already_processed"
    IGNORED = "ignored"


class SettlementResult(BaseModel):
    """Typed result of applying one provider event to the ledger."""

    payment_reference: str
    outcome: SettlementOutcome
    payment_id: str | None = None
    ledger_ids: list[str] = Field(default_factory=list)
    amount: Decimal | None = None
    degraded_trust: bool = False


class PaymentInitiation(BaseModel):
    """Typed result of creating a platform payment and provider checkout."""

    payment_id: str
    payment_reference: str
    provider: ProviderType
    total_amount: Decimal
    fee_count: int
    is_retry: bool
    payment_url: str | None = None
    status: PaymentStatus = PaymentStatus.INITIATED


class CheckoutSession(BaseModel):
    """Provider response to a checkout request."""

    payment_url: str
    provider_reference: str | None = None
