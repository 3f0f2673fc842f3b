"""Ledger entry status and aggregate models."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class LedgerStatus(str, Enum):
    """Lifecycle states of a platform fee ledger entry."""

    PENDING = "pending"
    BILLED = "billed"
    SETTLED = "settled"
    FAILED = "failed"
    WAIVED = "waived"


# Entries in these states still represent money owed to the platform.
OPEN_STATUSES: frozenset[LedgerStatus] = frozenset({LedgerStatus.PENDING, LedgerStatus.BILLED})


class LedgerSummary(BaseModel):
    """Pure fold over a tenant's ledger entries."""

    total_fees: Decimal = Decimal("0.00")
    outstanding_amount: Decimal = Decimal("0.00")
    settled_amount: Decimal = Decimal("0.00")
    failed_amount: Decimal = Decimal("0.00")
    waived_amount: Decimal = Decimal("0.00")
    entry_count: int = 0
    counts: dict[LedgerStatus, int] = Field(default_factory=dict)


class TransitionResult(BaseModel):
    """Result of a successful batch ledger transition."""

    ledger_ids: list[str]
    to_status: LedgerStatus
    total_amount: Decimal
    payment_id: str | None = None

    @property
    def count(self) -> int:
        return len(self.ledger_ids)
