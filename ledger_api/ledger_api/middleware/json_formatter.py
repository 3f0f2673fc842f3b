"""JSON log formatter for log aggregation.

Activate by setting ``API_STRUCTURED_LOGGING=true``.  Each record becomes
one JSON line::

    {
        "timestamp": "2026-03-15T12:34:56.789012+00:00",
        "level": "INFO",
        "logger": "ledger_api.services.settlement_service",
        "message": "Payment settled",
        "trace_id": "...",
        "ledger": {"payment_reference": "PF-...", "tenant_id": "..."},
        "request": { ... },
        "exc_info": "Traceback ..."
    }

Services attach ledger identifiers with ``extra={"ledger": {...}}``;
``Decimal`` amounts are rendered as strings.
"""

from __future__ import annotations

import json
import logging
import traceback
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any


def _default(value: Any) -> str:
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


class JSONFormatter(logging.Formatter):
    """Format log records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in ("trace_id", "span_id"):
            value = getattr(record, field, None)
            if value:
                payload[field] = value

        for field in ("ledger", "request"):
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload["exc_info"] = "".join(traceback.format_exception(*record.exc_info))

        return json.dumps(payload, default=_default, ensure_ascii=False)
