"""Unit tests for ledger_core.alerts.rules."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from ledger_core.alerts.rules import (
    drop_severity,
    evaluate_rule,
    needs_comparison,
    period_windows,
    revenue,
)
from ledger_core.models.alerts import (
    AlertMetric,
    AlertPeriod,
    AlertRuleSpec,
    AlertSeverity,
    AlertType,
    ComparisonPeriod,
    PeriodWindow,
    ThresholdType,
)

NOW = datetime(2026, 3, 15, 8, 30, tzinfo=UTC)
WINDOW = PeriodWindow(start=NOW - timedelta(days=1), end=NOW)


@dataclass
class _Entry:
    status: str
    reference_type: str
    fee_amount: Decimal


def _rule(**overrides) -> AlertRuleSpec:
    values = {
        "name": "Daily floor",
        "period": AlertPeriod.DAILY,
        "metric": AlertMetric.TOTAL_REVENUE,
        "threshold_type": ThresholdType.ABSOLUTE,
        "threshold_value": Decimal("1000"),
    }
    values.update(overrides)
    return AlertRuleSpec(**values)


class TestPeriodWindows:
    def test_daily_is_yesterday_midnight_to_midnight(self):
        current, comparison = period_windows(AlertPeriod.DAILY, NOW)
        assert current.start == datetime(2026, 3, 14, tzinfo=UTC)
        assert current.end == datetime(2026, 3, 15, tzinfo=UTC)
        assert comparison.start == datetime(2026, 3, 13, tzinfo=UTC)
        assert comparison.end == current.start

    def test_weekly_is_last_seven_days(self):
        current, comparison = period_windows(AlertPeriod.WEEKLY, NOW)
        assert current.end - current.start == timedelta(days=7)
        assert comparison.end == current.start
        assert current.end == NOW

    def test_monthly_same_day_previous_month(self):
        current, comparison = period_windows(AlertPeriod.MONTHLY, NOW)
        assert current.start == datetime(2026, 2, 15, 8, 30, tzinfo=UTC)
        assert comparison.start == datetime(2026, 1, 15, 8, 30, tzinfo=UTC)

    def test_monthly_clamps_day(self):
        current, _ = period_windows(AlertPeriod.MONTHLY, datetime(2026, 3, 31, tzinfo=UTC))
        assert current.start == datetime(2026, 2, 28, tzinfo=UTC)


class TestRevenue:
    ENTRIES = [
        _Entry("billed", "booking", Decimal("100")),
        _Entry("settled", "qr_payment", Decimal("40")),
        _Entry("pending", "qr_payment", Decimal("999")),
        _Entry("waived", "booking", Decimal("999")),
        _Entry("failed", "booking", Decimal("999")),
    ]

    def test_total_counts_billed_and_settled_only(self):
        assert revenue(self.ENTRIES, AlertMetric.TOTAL_REVENUE) == Decimal("140")

    def test_booking_metric(self):
        assert revenue(self.ENTRIES, AlertMetric.BOOKING_REVENUE) == Decimal("100")

    def test_qr_metric(self):
        assert revenue(self.ENTRIES, AlertMetric.QR_REVENUE) == Decimal("40")


class TestEvaluateRule:
    def test_absolute_breach_is_critical(self):
        draft = evaluate_rule(_rule(), Decimal("800"), None, WINDOW)
        assert draft is not None
        assert draft.severity == AlertSeverity.CRITICAL
        assert draft.alert_type == AlertType.THRESHOLD_BREACH
        assert draft.title == "Daily floor - Alert Triggered"
        assert draft.period_start == WINDOW.start

    def test_absolute_equal_to_threshold_fires(self):
        assert evaluate_rule(_rule(), Decimal("1000"), None, WINDOW) is not None

    def test_absolute_above_threshold_quiet(self):
        assert evaluate_rule(_rule(), Decimal("1000.01"), None, WINDOW) is None

    def test_zero_revenue_type(self):
        draft = evaluate_rule(_rule(), Decimal("0"), None, WINDOW)
        assert draft.alert_type == AlertType.ZERO_REVENUE

    @pytest.mark.parametrize(
        ("current", "severity"),
        [("400", AlertSeverity.CRITICAL), ("650", AlertSeverity.WARNING), ("780", AlertSeverity.INFO)],
    )
    def test_percentage_drop_severity(self, current, severity):
        rule = _rule(
            threshold_type=ThresholdType.PERCENTAGE_DROP,
            threshold_value=Decimal("20"),
            comparison_period=ComparisonPeriod.PREVIOUS_DAY,
        )
        draft = evaluate_rule(rule, Decimal(current), Decimal("1000"), WINDOW)
        assert draft is not None
        assert draft.severity == severity
        assert draft.expected_value == Decimal("1000")

    def test_drop_below_threshold_quiet(self):
        rule = _rule(
            threshold_type=ThresholdType.PERCENTAGE_DROP,
            threshold_value=Decimal("20"),
            comparison_period=ComparisonPeriod.PREVIOUS_DAY,
        )
        assert evaluate_rule(rule, Decimal("900"), Decimal("1000"), WINDOW) is None

    def test_drop_needs_positive_previous(self):
        rule = _rule(
            threshold_type=ThresholdType.PERCENTAGE_DROP,
            threshold_value=Decimal("20"),
            comparison_period=ComparisonPeriod.PREVIOUS_DAY,
        )
        assert evaluate_rule(rule, Decimal("0"), Decimal("0"), WINDOW) is None

    def test_needs_comparison(self):
        assert needs_comparison(_rule()) is False
        rule = _rule(
            threshold_type=ThresholdType.PERCENTAGE_DROP,
            threshold_value=Decimal("10"),
            comparison_period=ComparisonPeriod.PREVIOUS_WEEK,
        )
        assert needs_comparison(rule) is True


class TestSeverityAndValidation:
    def test_drop_severity_boundaries(self):
        assert drop_severity(Decimal("50")) == AlertSeverity.CRITICAL
        assert drop_severity(Decimal("30")) == AlertSeverity.WARNING
        assert drop_severity(Decimal("29.99")) == AlertSeverity.INFO

    def test_percentage_threshold_capped(self):
        with pytest.raises(ValueError):
            _rule(threshold_type=ThresholdType.PERCENTAGE_DROP, threshold_value=Decimal("150"))

    def test_tenant_metric_requires_tenant(self):
        with pytest.raises(ValueError, match="tenant_id"):
            _rule(metric=AlertMetric.TENANT_REVENUE)
