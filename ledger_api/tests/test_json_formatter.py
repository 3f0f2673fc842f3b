"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal

import pytest

from ledger_api.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "test message", level: int = logging.INFO, name: str = "test.logger", exc_info=None):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "+00:00" in data["timestamp"]

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        assert "\n" not in formatter.format(_record("warn msg", logging.WARNING))

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="ledger_api.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/api/v1/webhooks/payments",
            "status_code": 200,
            "tenant_id": "anonymous",
        }
        data = json.loads(formatter.format(record))

        assert data["request"]["path"] == "/api/v1/webhooks/payments"
        assert data["request"]["tenant_id"] == "anonymous"

    def test_ledger_context_renders_decimals_as_strings(self, formatter: JSONFormatter) -> None:
        record = _record("Payment settled")
        record.ledger = {"payment_reference": "PF-1", "amount": Decimal("150.50")}  # type: ignore[attr-defined]
        data = json.loads(formatter.format(record))

        assert data["ledger"] == {"payment_reference": "PF-1", "amount": "150.50"}

    def test_trace_fields_only_when_set(self, formatter: JSONFormatter) -> None:
        plain = json.loads(formatter.format(_record()))
        assert "trace_id" not in plain
        assert "request" not in plain

        traced = _record()
        traced.trace_id = "4bf92f3577b16e8153e785e29fc5f28c"  # type: ignore[attr-defined]
        traced.span_id = ""  # type: ignore[attr-defined]
        data = json.loads(formatter.format(traced))
        assert data["trace_id"] == "4bf92f3577b16e8153e785e29fc5f28c"
        assert "span_id" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", logging.ERROR, exc_info=exc_info)))

        assert data["level"] == "ERROR"
        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]
