"""Revenue alert rule evaluation.

Window computation and threshold checks are pure; the alert service
loads ledger rows for each window and persists the resulting drafts.
All windows are computed in UTC.
"""

from __future__ import annotations

import calendar
from collections.abc import Iterable
from datetime import datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from ledger_core.models.alerts import (
    AlertDraft,
    AlertMetric,
    AlertPeriod,
    AlertSeverity,
    AlertType,
    ComparisonPeriod,
    PeriodWindow,
    ThresholdType,
)
from ledger_core.models.fees import ReferenceType
from ledger_core.models.ledger import LedgerStatus

# Only fees that were actually charged count as revenue.
REVENUE_STATUSES: frozenset[LedgerStatus] = frozenset({LedgerStatus.BILLED, LedgerStatus.SETTLED})

_NATURAL_COMPARISON: dict[AlertPeriod, ComparisonPeriod] = {
    AlertPeriod.DAILY: ComparisonPeriod.PREVIOUS_DAY,
    AlertPeriod.WEEKLY: ComparisonPeriod.PREVIOUS_WEEK,
    AlertPeriod.MONTHLY: ComparisonPeriod.PREVIOUS_MONTH,
}


def _shift_months(value: datetime, months: int) -> datetime:
    """Move *value* back or forward by whole months, clamping the day."""
    index = value.year * 12 + (value.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def period_windows(period: AlertPeriod, now: datetime) -> tuple[PeriodWindow, PeriodWindow]:
    """Return ``(current, comparison)`` windows for *period* ending at *now*.

    * daily: yesterday 00:00 to today 00:00, compared with the day before.
    * weekly: the last 7x24h, compared with the 7 days before that.
    * monthly: the same day last month to now, compared with the month before.
    """
    if period == AlertPeriod.DAILY:
        today = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
        yesterday = today - timedelta(days=1)
        return (
            PeriodWindow(start=yesterday, end=today),
            PeriodWindow(start=yesterday - timedelta(days=1), end=yesterday),
        )
    if period == AlertPeriod.WEEKLY:
        week = timedelta(days=7)
        return (
            PeriodWindow(start=now - week, end=now),
            PeriodWindow(start=now - 2 * week, end=now - week),
        )
    start = _shift_months(now, -1)
    return (
        PeriodWindow(start=start, end=now),
        PeriodWindow(start=_shift_months(now, -2), end=start),
    )


def metric_reference_types(metric: AlertMetric) -> frozenset[ReferenceType] | None:
    """Reference types a metric counts; ``None`` means all of them."""
    if metric == AlertMetric.BOOKING_REVENUE:
        return frozenset({ReferenceType.BOOKING})
    if metric == AlertMetric.QR_REVENUE:
        return frozenset({ReferenceType.QR_PAYMENT})
    return None


def revenue(entries: Iterable[Any], metric: AlertMetric) -> Decimal:
    """Sum ``fee_amount`` over revenue-bearing entries matching *metric*."""
    types = metric_reference_types(metric)
    allowed_types = {t.value for t in types} if types is not None else None
    allowed_status = {s.value for s in REVENUE_STATUSES}

    total = Decimal("0.00")
    for entry in entries:
        if str(getattr(entry.status, "value", entry.status)) not in allowed_status:
            continue
        ref_type = str(getattr(entry.reference_type, "value", entry.reference_type))
        if allowed_types is not None and ref_type not in allowed_types:
            continue
        total += Decimal(str(entry.fee_amount))
    return total


def drop_severity(drop_percent: Decimal) -> AlertSeverity:
    if drop_percent >= 50:
        return AlertSeverity.CRITICAL
    if drop_percent >= 30:
        return AlertSeverity.WARNING
    return AlertSeverity.INFO


def evaluate_rule(
    rule: Any,
    current: Decimal,
    previous: Decimal | None,
    window: PeriodWindow,
) -> AlertDraft | None:
    """Decide whether *rule* fires for the given revenue figures.

    Parameters
    ----------
    rule:
        Anything exposing ``name``, ``period``, ``metric``, ``threshold_type``,
        ``threshold_value`` and ``comparison_period`` (ORM row or spec).
    current:
        Revenue in the current window.
    previous:
        Revenue in the comparison window, or ``None`` when not computed.
    window:
        The current window, recorded on the alert.
    """
    threshold_type = ThresholdType(rule.threshold_type)
    threshold = Decimal(str(rule.threshold_value))
    period = AlertPeriod(rule.period)
    metric = AlertMetric(rule.metric)
    alert_type = AlertType.ZERO_REVENUE if current == 0 else AlertType.THRESHOLD_BREACH
    metadata = {"rule_name": rule.name, "metric": metric.value, "period": period.value}

    if threshold_type == ThresholdType.ABSOLUTE:
        if current > threshold:
            return None
        return AlertDraft(
            alert_type=alert_type,
            severity=AlertSeverity.CRITICAL,
            title=f"{rule.name} - Alert Triggered",
            message=(
                f"Revenue of {current:,.2f} is at or below the threshold of "
                f"{threshold:,.2f} for the {period.value} period."
            ),
            current_value=current,
            expected_value=threshold,
            threshold_value=threshold,
            period_start=window.start,
            period_end=window.end,
            metadata=metadata,
        )

    if not rule.comparison_period or previous is None or previous <= 0:
        return None

    drop = ((previous - current) / previous * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    if drop < threshold:
        return None

    return AlertDraft(
        alert_type=alert_type,
        severity=drop_severity(drop),
        title=f"{rule.name} - Alert Triggered",
        message=(
            f"Revenue dropped by {drop:.1f}% from {previous:,.2f} to {current:,.2f} "
            f"compared to {rule.comparison_period}."
        ),
        current_value=current,
        expected_value=previous,
        threshold_value=threshold,
        period_start=window.start,
        period_end=window.end,
        metadata={**metadata, "drop_percent": str(drop)},
    )


def needs_comparison(rule: Any) -> bool:
    """Whether evaluating *rule* requires the comparison window's revenue."""
    return ThresholdType(rule.threshold_type) == ThresholdType.PERCENTAGE_DROP and bool(rule.comparison_period)


def natural_comparison(period: AlertPeriod) -> ComparisonPeriod:
    return _NATURAL_COMPARISON[period]
