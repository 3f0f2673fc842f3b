"""Fee configuration and fee computation models.

A tenant has at most one *active* :class:`FeeConfiguration`.  The
evaluator turns (configuration, transaction) into a
:class:`FeeComputation`; the ledger only ever stores the computed
result, never re-derives it.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, model_validator

# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class FeeType(str, Enum):
    """How the configured rate is applied to the base amount."""

    PERCENTAGE = "percentage"
    FLAT = "flat"


class Payer(str, Enum):
    """Who bears the platform fee."""

    GUEST = "guest"
    PROPERTY = "property"


class BillingCycle(str, Enum):
    """Whether a fee is due immediately or accumulated for periodic billing."""

    REALTIME = "realtime"
    MONTHLY = "monthly"


class TransactionClass(str, Enum):
    """Billable transaction classes a configuration can apply to."""

    QR_PAYMENTS = "qr_payments"
    BOOKINGS = "bookings"


class ReferenceType(str, Enum):
    """What a ledger entry's ``reference_id`` points at."""

    BOOKING = "booking"
    QR_PAYMENT = "qr_payment"
    DISPUTE_REFUND = "dispute_refund"


_REFERENCE_FOR_CLASS: dict[TransactionClass, ReferenceType] = {
    TransactionClass.QR_PAYMENTS: ReferenceType.QR_PAYMENT,
    TransactionClass.BOOKINGS: ReferenceType.BOOKING,
}


def reference_type_for(transaction_class: TransactionClass) -> ReferenceType:
    """Return the ledger reference type recorded for *transaction_class*."""
    return _REFERENCE_FOR_CLASS[transaction_class]


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class FeeConfiguration(BaseModel):
    """A tenant's platform fee rules."""

    id: str | None = None
    tenant_id: str
    fee_type: FeeType
    booking_fee: Decimal = Field(default=Decimal("0"), ge=0)
    qr_fee: Decimal = Field(default=Decimal("0"), ge=0)
    payer: Payer = Payer.GUEST
    billing_cycle: BillingCycle = BillingCycle.REALTIME
    applies_to: set[TransactionClass] = Field(default_factory=lambda: {TransactionClass.QR_PAYMENTS})
    trial_exemption_enabled: bool = False
    trial_days: int = Field(default=14, ge=0)
    active: bool = True

    @model_validator(mode="after")
    def _validate_rates(self) -> FeeConfiguration:
        """Reject percentage rates above 100 and empty ``applies_to``."""
        if not self.applies_to:
            raise ValueError("applies_to must name at least one transaction class")
        if self.fee_type == FeeType.PERCENTAGE:
            for label, value in (("booking_fee", self.booking_fee), ("qr_fee", self.qr_fee)):
                if value > 100:
                    raise ValueError(f"{label} is a percentage and must be <= 100 (got {value})")
        return self

    def rate_for(self, transaction_class: TransactionClass) -> Decimal:
        """Return the configured rate for *transaction_class*."""
        if transaction_class == TransactionClass.QR_PAYMENTS:
            return self.qr_fee
        return self.booking_fee


class TenantProfile(BaseModel):
    """The slice of tenant data the fee rules need (trial window)."""

    tenant_id: str
    created_at: datetime
    trial_end_date: datetime | None = None


# ---------------------------------------------------------------------------
# Computation result
# ---------------------------------------------------------------------------


class FeeSkipReason(str, Enum):
    """Why :func:`compute_fee` decided not to apply a fee."""

    NO_ACTIVE_CONFIG = "no_active_config"
    NOT_APPLICABLE = "not_applicable"
    NO_BASE_AMOUNT = "no_base_amount"
    TRIAL_EXEMPTION = "trial_exemption"


class FeeComputation(BaseModel):
    """Outcome of evaluating a fee rule against one transaction.

    When ``applied`` is ``False`` the fee is zero, the total equals the
    base amount and ``reason`` says why.
    """

    applied: bool
    base_amount: Decimal
    fee_amount: Decimal = Decimal("0.00")
    total_amount: Decimal
    net_to_property: Decimal
    rate: Decimal = Decimal("0")
    fee_type: FeeType | None = None
    payer: Payer | None = None
    billing_cycle: BillingCycle | None = None
    reason: FeeSkipReason | None = None


class FeeRecordResult(BaseModel):
    """Outcome of recording a fee against one billable transaction.

    ``ledger_id`` is ``None`` when the fee was not applied.  ``created`` is
    ``False`` when an entry for the same reference already existed.
    """

    computation: FeeComputation
    ledger_id: str | None = None
    created: bool = False
    status: str | None = None


# ---------------------------------------------------------------------------
# Backfill
# ---------------------------------------------------------------------------


class HistoricalTransaction(BaseModel):
    """A paid transaction collected before fee recording was switched on."""

    reference_id: str = Field(..., min_length=1)
    transaction_class: TransactionClass = TransactionClass.QR_PAYMENTS
    amount_paid: Decimal
    payment_status: str = "paid"
    paid_at: datetime


class BackfillError(BaseModel):
    reference_id: str
    reason: str


class BackfillResult(BaseModel):
    backfilled: int = 0
    skipped: int = 0
    errors: list[BackfillError] = Field(default_factory=list)
    ledger_ids: list[str] = Field(default_factory=list)
