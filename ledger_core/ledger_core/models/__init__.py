"""Domain models for the platform fee ledger."""

from ledger_core.models.alerts import (
    AlertDraft,
    AlertMetric,
    AlertPeriod,
    AlertRuleSpec,
    AlertSeverity,
    AlertType,
    ComparisonPeriod,
    PeriodWindow,
    ThresholdType,
)
from ledger_core.models.disputes import DisputeAction, DisputeStatus
from ledger_core.models.fees import (
    BillingCycle,
    FeeComputation,
    FeeConfiguration,
    FeeSkipReason,
    FeeType,
    Payer,
    ReferenceType,
    TenantProfile,
    TransactionClass,
)
from ledger_core.models.ledger import LedgerStatus, LedgerSummary, TransitionResult
from ledger_core.models.payments import (
    PaymentInitiation,
    PaymentStatus,
    ProviderType,
    ReportedStatus,
    SettlementOutcome,
    SettlementResult,
)
from ledger_core.models.reconciliation import (
    CsvImportResult,
    CsvRowError,
    ExternalTransaction,
    InternalPayment,
    MatchScore,
    ReconciliationStatus,
    ReconciliationSummary,
    RecordSource,
)

__all__ = [
    "AlertDraft",
    "AlertMetric",
    "AlertPeriod",
    "AlertRuleSpec",
    "AlertSeverity",
    "AlertType",
    "BillingCycle",
    "ComparisonPeriod",
    "CsvImportResult",
    "CsvRowError",
    "DisputeAction",
    "DisputeStatus",
    "ExternalTransaction",
    "FeeComputation",
    "FeeConfiguration",
    "FeeSkipReason",
    "FeeType",
    "InternalPayment",
    "LedgerStatus",
    "LedgerSummary",
    "MatchScore",
    "Payer",
    "PaymentInitiation",
    "PaymentStatus",
    "PeriodWindow",
    "ProviderType",
    "ReconciliationStatus",
    "ReconciliationSummary",
    "RecordSource",
    "ReferenceType",
    "ReportedStatus",
    "SettlementOutcome",
    "SettlementResult",
    "TenantProfile",
    "ThresholdType",
    "TransactionClass",
    "TransitionResult",
]
