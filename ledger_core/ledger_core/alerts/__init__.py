"""Revenue alert rule evaluation."""

from ledger_core.alerts.rules import (
    REVENUE_STATUSES,
    evaluate_rule,
    metric_reference_types,
    needs_comparison,
    period_windows,
    revenue,
)

__all__ = [
    "REVENUE_STATUSES",
    "evaluate_rule",
    "metric_reference_types",
    "needs_comparison",
    "period_windows",
    "revenue",
]
