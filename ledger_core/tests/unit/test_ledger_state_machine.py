"""Unit tests for ledger_core.ledger.state_machine."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from ledger_core.ledger.state_machine import (
    ALLOWED_SOURCES,
    TARGET_STATUS,
    LedgerTransition,
    find_ineligible,
    summarize,
)
from ledger_core.models.ledger import LedgerStatus


@dataclass
class _Entry:
    status: str
    fee_amount: Decimal


class TestTransitionTable:
    def test_settle_fail_waive_accept_open_statuses(self):
        for transition in (LedgerTransition.SETTLE, LedgerTransition.FAIL, LedgerTransition.WAIVE):
            assert ALLOWED_SOURCES[transition] == {LedgerStatus.PENDING, LedgerStatus.BILLED}

    def test_terminal_statuses_accept_nothing_but_reopen(self):
        for status in (LedgerStatus.SETTLED, LedgerStatus.WAIVED):
            assert all(status not in sources for sources in ALLOWED_SOURCES.values())
        assert ALLOWED_SOURCES[LedgerTransition.REOPEN] == {LedgerStatus.FAILED}

    def test_reopen_targets_billed(self):
        assert TARGET_STATUS[LedgerTransition.REOPEN] == LedgerStatus.BILLED


class TestFindIneligible:
    def test_all_eligible(self):
        statuses = {"a": "pending", "b": LedgerStatus.BILLED}
        assert find_ineligible(["a", "b"], statuses, ALLOWED_SOURCES[LedgerTransition.WAIVE]) == []

    def test_reports_wrong_status_and_missing(self):
        statuses = {"a": "pending", "b": "settled"}
        offending = find_ineligible(["c", "a", "b"], statuses, ALLOWED_SOURCES[LedgerTransition.SETTLE])
        assert offending == ["b", "c"]

    def test_duplicates_reported_once(self):
        offending = find_ineligible(["x", "x"], {}, ALLOWED_SOURCES[LedgerTransition.WAIVE])
        assert offending == ["x"]


class TestSummarize:
    def test_empty(self):
        summary = summarize([])
        assert summary.total_fees == Decimal("0.00")
        assert summary.entry_count == 0

    def test_buckets_by_status(self):
        entries = [
            _Entry("pending", Decimal("100.00")),
            _Entry("billed", Decimal("200.00")),
            _Entry("billed", Decimal("300.00")),
            _Entry("settled", Decimal("50.00")),
            _Entry("failed", Decimal("25.00")),
            _Entry("waived", Decimal("10.00")),
        ]
        summary = summarize(entries)
        assert summary.outstanding_amount == Decimal("600.00")
        assert summary.settled_amount == Decimal("50.00")
        assert summary.failed_amount == Decimal("25.00")
        assert summary.waived_amount == Decimal("10.00")
        assert summary.total_fees == Decimal("685.00")
        assert summary.entry_count == 6
        assert summary.counts[LedgerStatus.BILLED] == 2

    def test_waiving_moves_amount_out_of_outstanding(self):
        before = summarize([_Entry("billed", Decimal("200")), _Entry("billed", Decimal("300"))])
        after = summarize([_Entry("waived", Decimal("200")), _Entry("waived", Decimal("300"))])
        assert before.outstanding_amount - after.outstanding_amount == Decimal("500")
        assert after.waived_amount == Decimal("500")

    def test_negative_refund_entries_reduce_totals(self):
        summary = summarize([_Entry("billed", Decimal("100")), _Entry("billed", Decimal("-40"))])
        assert summary.outstanding_amount == Decimal("60")
