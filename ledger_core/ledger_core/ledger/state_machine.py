"""Ledger entry state machine and summary fold.

The transition table is the single source of truth for which statuses a
batch operation accepts.  Repositories turn it into the ``status IN (...)``
guard of a conditional UPDATE; services use :func:`find_ineligible` to
name offending entries before anything is written.

    pending --bill--> billed --settle--> settled
       |                 |----fail-----> failed --reopen--> billed
       |                 |
       +------waive------+-------------> waived
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from decimal import Decimal
from enum import Enum
from typing import Any

from ledger_core.models.ledger import OPEN_STATUSES, LedgerStatus, LedgerSummary


class LedgerTransition(str, Enum):
    BILL = "bill"
    SETTLE = "settle"
    FAIL = "fail"
    WAIVE = "waive"
    REOPEN = "reopen"


TARGET_STATUS: dict[LedgerTransition, LedgerStatus] = {
    LedgerTransition.BILL: LedgerStatus.BILLED,
    LedgerTransition.SETTLE: LedgerStatus.SETTLED,
    LedgerTransition.FAIL: LedgerStatus.FAILED,
    LedgerTransition.WAIVE: LedgerStatus.WAIVED,
    LedgerTransition.REOPEN: LedgerStatus.BILLED,
}

ALLOWED_SOURCES: dict[LedgerTransition, frozenset[LedgerStatus]] = {
    LedgerTransition.BILL: frozenset({LedgerStatus.PENDING}),
    LedgerTransition.SETTLE: OPEN_STATUSES,
    LedgerTransition.FAIL: OPEN_STATUSES,
    LedgerTransition.WAIVE: OPEN_STATUSES,
    # Only a new payment attempt may reopen a failed entry.
    LedgerTransition.REOPEN: frozenset({LedgerStatus.FAILED}),
}


def find_ineligible(
    requested_ids: Iterable[str],
    current_status: Mapping[str, LedgerStatus | str],
    allowed: frozenset[LedgerStatus],
) -> list[str]:
    """Return the requested ids that are missing or not in an *allowed* status.

    Parameters
    ----------
    requested_ids:
        Ledger entry ids named by the caller.
    current_status:
        ``{id: status}`` for the entries that exist (scoped to the tenant).
    allowed:
        Statuses the transition accepts.
    """
    allowed_values = {s.value for s in allowed}
    offending: list[str] = []
    for entry_id in dict.fromkeys(requested_ids):
        status = current_status.get(entry_id)
        if status is None:
            offending.append(entry_id)
            continue
        value = status.value if isinstance(status, LedgerStatus) else str(status)
        if value not in allowed_values:
            offending.append(entry_id)
    return sorted(offending)


def summarize(entries: Iterable[Any]) -> LedgerSummary:
    """Fold ledger entries into a :class:`LedgerSummary`.

    Accepts any objects exposing ``status`` and ``fee_amount`` (ORM rows or
    pydantic models).  Amounts are summed as ``Decimal`` in Python so the
    result does not depend on the database's numeric aggregation.
    """
    amounts: dict[LedgerStatus, Decimal] = {s: Decimal("0.00") for s in LedgerStatus}
    counts: dict[LedgerStatus, int] = {s: 0 for s in LedgerStatus}

    for entry in entries:
        status = LedgerStatus(entry.status)
        amount = entry.fee_amount if isinstance(entry.fee_amount, Decimal) else Decimal(str(entry.fee_amount))
        amounts[status] += amount
        counts[status] += 1

    total = sum(amounts.values(), Decimal("0.00"))
    return LedgerSummary(
        total_fees=total,
        outstanding_amount=amounts[LedgerStatus.PENDING] + amounts[LedgerStatus.BILLED],
        settled_amount=amounts[LedgerStatus.SETTLED],
        failed_amount=amounts[LedgerStatus.FAILED],
        waived_amount=amounts[LedgerStatus.WAIVED],
        entry_count=sum(counts.values()),
        counts=counts,
    )
