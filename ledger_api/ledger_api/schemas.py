"""Shared Pydantic request and response models for API endpoints.

These schemas ensure that request bodies are validated and responses are
documented in the OpenAPI specification.  Routers import from here to
avoid duplication.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any

from fastapi.encoders import jsonable_encoder
from ledger_core.models.alerts import AlertMetric, AlertPeriod, ComparisonPeriod, ThresholdType
from ledger_core.models.disputes import DisputeAction, DisputeStatus
from ledger_core.models.fees import BillingCycle, FeeType, HistoricalTransaction, Payer, TransactionClass
from ledger_core.models.payments import ProviderType
from ledger_core.models.reconciliation import ExternalTransaction
from pydantic import BaseModel, Field


def encode(data: Any) -> Any:
    """JSON-ready copy of *data* with money (``Decimal``) rendered as strings.

    Matches how Pydantic serialises ``Decimal`` in JSON mode, so amounts keep
    their scale whether a route returns a model or a plain dict.
    """
    return jsonable_encoder(data, custom_encoder={Decimal: str})


# ---------------------------------------------------------------------------
# Fees
# ---------------------------------------------------------------------------


class FeeConfigRequest(BaseModel):
    """Body of ``PUT /fees/config``; activates a new configuration."""

    fee_type: FeeType
    booking_fee: Decimal = Field(default=Decimal("0"), ge=0)
    qr_fee: Decimal = Field(default=Decimal("0"), ge=0)
    payer: Payer = Payer.GUEST
    billing_cycle: BillingCycle = BillingCycle.REALTIME
    applies_to: list[TransactionClass] = Field(default_factory=lambda: [TransactionClass.QR_PAYMENTS])
    trial_exemption_enabled: bool = False
    trial_days: int | None = Field(default=None, ge=0)


class RecordFeeRequest(BaseModel):
    """Body of ``POST /fees/record``."""

    transaction_class: TransactionClass
    reference_id: str = Field(..., min_length=1, max_length=128)
    amount: Decimal = Field(..., description="Base transaction amount before fees.")
    metadata: dict[str, Any] | None = None


class RecordFeeResponse(BaseModel):
    applied: bool
    base_amount: Decimal
    fee_amount: Decimal
    total_amount: Decimal
    net_to_property: Decimal
    rate: Decimal
    fee_type: FeeType | None = None
    payer: Payer | None = None
    billing_cycle: BillingCycle | None = None
    reason: str | None = None
    ledger_id: str | None = None
    created: bool = False
    status: str | None = None


class BackfillRequest(BaseModel):
    transactions: list[HistoricalTransaction] = Field(..., min_length=1, max_length=5000)


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


class WaiveRequest(BaseModel):
    """Body of ``POST /ledger/waive``."""

    ledger_ids: list[str] = Field(..., min_length=1, max_length=1000)
    reason: str = Field(..., min_length=1, max_length=1000)
    notes: str | None = Field(default=None, max_length=2000)


class TransitionResponse(BaseModel):
    ledger_ids: list[str]
    to_status: str
    total_amount: Decimal
    payment_id: str | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class InitiatePaymentRequest(BaseModel):
    """Body of ``POST /payments/initiate``.

    ``ledger_ids`` switches to retry mode: only the listed entries are
    paid and ``failed`` entries among them are accepted.
    """

    payment_method_id: str | None = None
    ledger_ids: list[str] | None = Field(default=None, max_length=1000)
    provider: ProviderType | None = None


class VerifyPaymentRequest(BaseModel):
    payment_reference: str = Field(..., min_length=1)
    provider: ProviderType | None = None
    session_id: str | None = Field(default=None, description="Stripe checkout session id.")


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class CreateDisputeRequest(BaseModel):
    ledger_ids: list[str] = Field(..., min_length=1, max_length=500)
    reason: str = Field(..., min_length=1, max_length=2000)
    requested_action: DisputeAction
    requested_amount: Decimal | None = None


class DisputeStatusRequest(BaseModel):
    status: DisputeStatus
    admin_notes: str | None = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class ManualMatchRequest(BaseModel):
    record_id: str
    payment_id: str


class ProviderSyncRequest(BaseModel):
    provider_id: str
    start: datetime
    end: datetime


class BatchReconcileRequest(BaseModel):
    transactions: list[ExternalTransaction] = Field(..., min_length=1, max_length=5000)
    source: str = "api"
    provider_id: str | None = None


# ---------------------------------------------------------------------------
# Alerts
# ---------------------------------------------------------------------------


class AlertRuleRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=256)
    period: AlertPeriod
    metric: AlertMetric = AlertMetric.TOTAL_REVENUE
    threshold_type: ThresholdType
    threshold_value: Decimal = Field(..., ge=0)
    comparison_period: ComparisonPeriod | None = None
    tenant_id: str | None = None
    active: bool = True


class AlertRuleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    period: AlertPeriod | None = None
    metric: AlertMetric | None = None
    threshold_type: ThresholdType | None = None
    threshold_value: Decimal | None = Field(default=None, ge=0)
    comparison_period: ComparisonPeriod | None = None
    tenant_id: str | None = None
    active: bool | None = None


# ---------------------------------------------------------------------------
# Billing & providers
# ---------------------------------------------------------------------------


class BillingRunRequest(BaseModel):
    period_end: datetime | None = Field(
        default=None,
        description="Exclusive upper bound on entry creation; defaults to the start of the current month.",
    )


class ProviderCredentialsRequest(BaseModel):
    """Body of ``PUT /providers/{provider}``.  Secrets are write-only."""

    display_name: str = Field(..., min_length=1, max_length=128)
    api_key: str | None = None
    webhook_secret: str | None = None
    is_active: bool = True
