"""Platform fee rule evaluation."""

from ledger_core.fees.evaluator import (
    compute_fee,
    initial_status,
    is_in_trial,
    reverse_fee,
    to_money,
    trial_end_for,
)

__all__ = [
    "compute_fee",
    "initial_status",
    "is_in_trial",
    "reverse_fee",
    "to_money",
    "trial_end_for",
]
