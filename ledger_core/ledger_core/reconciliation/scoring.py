"""Fuzzy match scoring between external records and internal payments.

Scores are additive out of 100:

==========  ==========================================  ======
Factor      Rule                                        Points
==========  ==========================================  ======
reference   exact / containment / edit distance <= 3    40/30/20
amount      exact / within 1% / within 5%               30/25/15
time        < 1h / < 24h / < 72h / < 168h                20/15/10/5
provider    exact / containment                         10/7
==========  ==========================================  ======

Suggestions are advisory only; nothing here links records.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from ledger_core.models.reconciliation import (
    ExternalTransaction,
    InternalPayment,
    MatchConfidence,
    MatchScore,
    MatchSuggestion,
)

_NON_ALNUM = re.compile(r"[^a-z0-9]")

DEFAULT_THRESHOLD = 50

# (hours apart, points, reason) checked in order.
_TIME_BANDS = ((1, 20, "same hour"), (24, 15, "same day"), (72, 10, "within 3 days"), (168, 5, "within 7 days"))


def normalize_reference(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def _reference_score(external: str, internal: InternalPayment) -> tuple[int, str | None]:
    ext = normalize_reference(external)
    refs = [normalize_reference(r) for r in (internal.transaction_ref, internal.provider_reference) if r]
    refs = [r for r in refs if r]
    if not ext or not refs:
        return 0, None
    if ext in refs:
        return 40, "exact reference"
    if any(r in ext for r in refs):
        return 30, "partial reference"
    if min(levenshtein(ext, r) for r in refs) <= 3:
        return 20, "similar reference"
    return 0, None


def _amount_score(external: ExternalTransaction, internal: InternalPayment) -> tuple[int, str | None]:
    difference = abs(external.amount - internal.amount)
    if difference < 0.01:
        return 30, "exact amount"
    if external.amount == 0:
        return 0, None
    percent = difference / abs(external.amount) * 100
    if percent < 1:
        return 25, "amount within 1%"
    if percent < 5:
        return 15, "amount within 5%"
    return 0, None


def _time_score(external: ExternalTransaction, internal: InternalPayment) -> tuple[int, str | None]:
    if external.transaction_date is None:
        return 0, None
    hours = abs((external.transaction_date - internal.created_at).total_seconds()) / 3600
    for limit, points, label in _TIME_BANDS:
        if hours < limit:
            return points, label
    return 0, None


def _provider_score(external: ExternalTransaction, internal: InternalPayment) -> tuple[int, str | None]:
    if not external.provider or not internal.provider:
        return 0, None
    ext = external.provider.strip().lower()
    pay = internal.provider.strip().lower()
    if ext == pay:
        return 10, "same provider"
    if ext in pay or pay in ext:
        return 7, "similar provider"
    return 0, None


def calculate_match_score(external: ExternalTransaction, internal: InternalPayment) -> MatchScore:
    """Score how likely *internal* is the payment behind *external*."""
    reference, r_reason = _reference_score(external.reference, internal)
    amount, a_reason = _amount_score(external, internal)
    time_points, t_reason = _time_score(external, internal)
    provider, p_reason = _provider_score(external, internal)

    total = reference + amount + time_points + provider
    if total >= 80:
        confidence = MatchConfidence.HIGH
    elif total >= 60:
        confidence = MatchConfidence.MEDIUM
    else:
        confidence = MatchConfidence.LOW

    return MatchScore(
        total=total,
        reference_score=reference,
        amount_score=amount,
        time_score=time_points,
        provider_score=provider,
        confidence=confidence,
        reasons=[r for r in (r_reason, a_reason, t_reason, p_reason) if r],
    )


def rank_candidates(
    external: ExternalTransaction,
    candidates: Iterable[InternalPayment],
    *,
    threshold: int = DEFAULT_THRESHOLD,
    limit: int = 5,
) -> list[MatchSuggestion]:
    """Return candidates scoring at least *threshold*, best first."""
    scored = [MatchSuggestion(payment_id=p.id, score=calculate_match_score(external, p)) for p in candidates]
    scored = [s for s in scored if s.score.total >= threshold]
    scored.sort(key=lambda s: (-s.score.total, s.payment_id))
    return scored[:limit]


def find_best_match(
    external: ExternalTransaction,
    candidates: Iterable[InternalPayment],
    *,
    threshold: int = DEFAULT_THRESHOLD,
) -> MatchSuggestion | None:
    ranked = rank_candidates(external, candidates, threshold=threshold, limit=1)
    return ranked[0] if ranked else None
