"""Revenue alert rule and alert models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class AlertPeriod(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class AlertMetric(str, Enum):
    TOTAL_REVENUE = "total_revenue"
    BOOKING_REVENUE = "booking_revenue"
    QR_REVENUE = "qr_revenue"
    TENANT_REVENUE = "tenant_revenue"


class ThresholdType(str, Enum):
    ABSOLUTE = "absolute"
    PERCENTAGE_DROP = "percentage_drop"


class ComparisonPeriod(str, Enum):
    PREVIOUS_DAY = "previous_day"
    PREVIOUS_WEEK = "previous_week"
    PREVIOUS_MONTH = "previous_month"


class AlertType(str, Enum):
    THRESHOLD_BREACH = "threshold_breach"
    ZERO_REVENUE = "zero_revenue"


class AlertSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertRuleSpec(BaseModel):
    """Validated definition of a revenue alert rule."""

    name: str = Field(..., min_length=1, max_length=256)
    period: AlertPeriod
    metric: AlertMetric = AlertMetric.TOTAL_REVENUE
    threshold_type: ThresholdType
    threshold_value: Decimal = Field(..., ge=0)
    comparison_period: ComparisonPeriod | None = None
    tenant_id: str | None = None
    active: bool = True

    @model_validator(mode="after")
    def _validate_threshold(self) -> AlertRuleSpec:
        if self.threshold_type == ThresholdType.PERCENTAGE_DROP and self.threshold_value > 100:
            raise ValueError("percentage_drop threshold must be <= 100")
        if self.metric == AlertMetric.TENANT_REVENUE and not self.tenant_id:
            raise ValueError("tenant_revenue rules must name a tenant_id")
        return self


class PeriodWindow(BaseModel):
    """Half-open ``[start, end)`` evaluation window."""

    start: datetime
    end: datetime


class AlertDraft(BaseModel):
    """An alert the evaluator wants raised, before it is persisted."""

    alert_type: AlertType
    severity: AlertSeverity
    title: str
    message: str
    current_value: Decimal
    expected_value: Decimal | None = None
    threshold_value: Decimal
    period_start: datetime
    period_end: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)
