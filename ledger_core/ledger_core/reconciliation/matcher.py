"""Exact-amount reconciliation rules.

These functions decide *what* should be linked; the repository layer
persists the links.  All amount comparisons use an absolute epsilon
(0.01 by default) on ``Decimal`` values.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_core.models.reconciliation import (
    InternalPayment,
    ReconciliationStatus,
    ReconciliationSummary,
)

DEFAULT_EPSILON = Decimal("0.01")


def amounts_match(a: Decimal, b: Decimal, epsilon: Decimal = DEFAULT_EPSILON) -> bool:
    """Return ``True`` when ``|a - b| < epsilon``."""
    return abs(a - b) < epsilon


def classify_match(
    external_amount: Decimal,
    internal_amount: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> ReconciliationStatus:
    """Classify a manual link between an external record and a payment.

    ``matched`` within epsilon, ``partial`` when less was received
    internally than reported, ``overpaid`` when more was.
    """
    if amounts_match(external_amount, internal_amount, epsilon):
        return ReconciliationStatus.MATCHED
    if internal_amount < external_amount:
        return ReconciliationStatus.PARTIAL
    return ReconciliationStatus.OVERPAID


def select_candidate(
    amount: Decimal,
    candidates: Sequence[InternalPayment],
    excluded: set[str],
    epsilon: Decimal = DEFAULT_EPSILON,
    transaction_date: datetime | None = None,
) -> InternalPayment | None:
    """Pick the payment an unmatched record should be linked to.

    Among payments with an equal amount that are not in *excluded*, the one
    created closest to *transaction_date* wins.  Equal distances, and
    records without a date, fall back to the earliest ``created_at``; ``id``
    breaks exact timestamp ties so the choice is deterministic.
    """
    eligible = [p for p in candidates if p.id not in excluded and amounts_match(amount, p.amount, epsilon)]
    if not eligible:
        return None
    if transaction_date is None:
        return min(eligible, key=lambda p: (p.created_at, p.id))
    return min(eligible, key=lambda p: (abs(p.created_at - transaction_date), p.created_at, p.id))


def plan_auto_match(
    records: Iterable[Any],
    candidates: Sequence[InternalPayment],
    already_linked: Iterable[str] = (),
    epsilon: Decimal = DEFAULT_EPSILON,
) -> list[tuple[str, str]]:
    """Compute ``(record_id, payment_id)`` links for unmatched records.

    Records are processed in the order given (callers pass them oldest
    first), each taking the unlinked payment closest to its
    ``transaction_date``.  A payment is linked at most once, including
    payments already linked before this run.
    """
    excluded = set(already_linked)
    links: list[tuple[str, str]] = []
    for record in records:
        choice = select_candidate(
            Decimal(str(record.amount)),
            candidates,
            excluded,
            epsilon,
            getattr(record, "transaction_date", None),
        )
        if choice is None:
            continue
        excluded.add(choice.id)
        links.append((record.id, choice.id))
    return links


def match_rate(reconciled: int, total: int) -> float:
    """Percentage of reconciled records, 0.0 when there are none.

    A record counts as reconciled once it is linked to a payment, whatever
    the amount outcome, so the rate is 100 exactly when nothing is
    ``unmatched``.
    """
    if total <= 0:
        return 0.0
    return round(min(reconciled, total) / total * 100, 2)


def summarize_records(records: Iterable[Any]) -> ReconciliationSummary:
    """Fold reconciliation records (``status``, ``amount``) into a summary."""
    counts = {status: 0 for status in ReconciliationStatus}
    matched_amount = Decimal("0.00")
    unmatched_amount = Decimal("0.00")

    for record in records:
        status = ReconciliationStatus(record.status)
        counts[status] += 1
        amount = Decimal(str(record.amount))
        if status == ReconciliationStatus.MATCHED:
            matched_amount += amount
        elif status == ReconciliationStatus.UNMATCHED:
            unmatched_amount += amount

    total = sum(counts.values())
    return ReconciliationSummary(
        total=total,
        matched=counts[ReconciliationStatus.MATCHED],
        unmatched=counts[ReconciliationStatus.UNMATCHED],
        partial=counts[ReconciliationStatus.PARTIAL],
        overpaid=counts[ReconciliationStatus.OVERPAID],
        match_rate=match_rate(total - counts[ReconciliationStatus.UNMATCHED], total),
        matched_amount=matched_amount,
        unmatched_amount=unmatched_amount,
    )
