"""Reconciliation record, candidate and result models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class ReconciliationStatus(str, Enum):
    """Match state of an externally reported transaction."""

    UNMATCHED = "unmatched"
    MATCHED = "matched"
    PARTIAL = "partial"
    OVERPAID = "overpaid"


class RecordSource(str, Enum):
    """Where an external transaction record came from.

    Provider syncs store the provider name (``paystack``, ``stripe`` ...)
    as the source instead of ``api``.
    """

    CSV = "csv"
    API = "api"
    MANUAL = "manual"


class MatchConfidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ExternalTransaction(BaseModel):
    """A provider-reported transaction before it becomes a record."""

    reference: str = Field(..., min_length=1)
    amount: Decimal
    transaction_date: datetime | None = None
    provider: str | None = None
    status: str | None = None
    raw_data: dict[str, Any] = Field(default_factory=dict)


class InternalPayment(BaseModel):
    """Read model of an internally recorded guest payment."""

    id: str
    amount: Decimal
    transaction_ref: str | None = None
    provider_reference: str | None = None
    provider: str | None = None
    created_at: datetime


class CsvRowError(BaseModel):
    """A CSV row that could not be imported (1-based, header is row 1)."""

    row_number: int
    reason: str
    raw: str


class CsvImportResult(BaseModel):
    rows: list[ExternalTransaction] = Field(default_factory=list)
    errors: list[CsvRowError] = Field(default_factory=list)


class MatchScore(BaseModel):
    """Weighted similarity between an external record and an internal payment."""

    total: int
    reference_score: int = 0
    amount_score: int = 0
    time_score: int = 0
    provider_score: int = 0
    confidence: MatchConfidence = MatchConfidence.LOW
    reasons: list[str] = Field(default_factory=list)


class MatchSuggestion(BaseModel):
    payment_id: str
    score: MatchScore


class ReconciliationSummary(BaseModel):
    total: int = 0
    matched: int = 0
    unmatched: int = 0
    partial: int = 0
    overpaid: int = 0
    match_rate: float = 0.0
    matched_amount: Decimal = Decimal("0.00")
    unmatched_amount: Decimal = Decimal("0.00")


class MatchLink(BaseModel):
    record_id: str
    payment_id: str
    status: ReconciliationStatus


class AutoMatchResult(BaseModel):
    examined: int = 0
    matched: int = 0
    links: list[MatchLink] = Field(default_factory=list)


class BatchReconcileResult(BaseModel):
    created: int = 0
    matched: int = 0
    partial: int = 0
    unmatched: int = 0
    skipped: int = 0


class ProviderSyncResult(BaseModel):
    provider_id: str
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    auto_match: AutoMatchResult | None = None
