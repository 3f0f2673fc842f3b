"""Reconciliation of provider-reported transactions against internal payments."""

from ledger_core.reconciliation.csv_import import parse_reconciliation_csv
from ledger_core.reconciliation.matcher import (
    amounts_match,
    classify_match,
    match_rate,
    plan_auto_match,
    select_candidate,
    summarize_records,
)
from ledger_core.reconciliation.scoring import calculate_match_score, find_best_match, rank_candidates

__all__ = [
    "amounts_match",
    "calculate_match_score",
    "classify_match",
    "find_best_match",
    "match_rate",
    "parse_reconciliation_csv",
    "plan_auto_match",
    "rank_candidates",
    "select_candidate",
    "summarize_records",
]
