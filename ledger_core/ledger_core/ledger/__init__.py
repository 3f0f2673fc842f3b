"""Ledger entry lifecycle rules."""

from ledger_core.ledger.state_machine import (
    ALLOWED_SOURCES,
    TARGET_STATUS,
    LedgerTransition,
    find_ineligible,
    summarize,
)

__all__ = ["ALLOWED_SOURCES", "TARGET_STATUS", "LedgerTransition", "find_ineligible", "summarize"]
