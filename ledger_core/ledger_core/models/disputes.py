"""Dispute workflow enums and allowed status transitions."""

from __future__ import annotations

from enum import Enum


class DisputeAction(str, Enum):
    """What the tenant asks the platform to do with the disputed fees."""

    WAIVE = "waive"
    REDUCE = "reduce"
    REVIEW = "review"


class DisputeStatus(str, Enum):
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"


DISPUTE_TRANSITIONS: dict[DisputeStatus, frozenset[DisputeStatus]] = {
    DisputeStatus.PENDING: frozenset({DisputeStatus.UNDER_REVIEW, DisputeStatus.APPROVED, DisputeStatus.REJECTED}),
    DisputeStatus.UNDER_REVIEW: frozenset({DisputeStatus.APPROVED, DisputeStatus.REJECTED}),
    DisputeStatus.APPROVED: frozenset(),
    DisputeStatus.REJECTED: frozenset(),
}


def can_transition(current: DisputeStatus, target: DisputeStatus) -> bool:
    """Return ``True`` if a dispute may move from *current* to *target*."""
    return target in DISPUTE_TRANSITIONS[current]
