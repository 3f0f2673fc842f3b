"""Prometheus metrics for HTTP traffic and ledger operations.

HTTP requests are recorded as RED metrics (rate, errors, duration) by
:class:`PrometheusMiddleware`.  The ledger counters below are incremented
by the services that own the corresponding operation.

Path normalisation collapses identifiers (``/disputes/4f1c...`` ->
``/disputes/{id}``) to keep label cardinality bounded.
"""

from __future__ import annotations

import logging
import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

HTTP_REQUESTS_TOTAL = Counter(
    "ledger_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "ledger_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_VERIFICATIONS_TOTAL = Counter(
    "ledger_webhook_verifications_total",
    "Inbound payment webhooks by provider and verification result",
    ["provider", "result"],
)

SETTLEMENTS_TOTAL = Counter(
    "ledger_settlements_total",
    "Provider events applied to the ledger by outcome",
    ["outcome"],
)

LEDGER_TRANSITIONS_TOTAL = Counter(
    "ledger_entry_transitions_total",
    "Ledger entries moved by a batch transition",
    ["transition"],
)

OUTBOX_DELIVERIES_TOTAL = Counter(
    "ledger_outbox_deliveries_total",
    "Outbox delivery attempts by intent kind and result",
    ["kind", "result"],
)

RECONCILIATION_LINKS_TOTAL = Counter(
    "ledger_reconciliation_links_total",
    "Reconciliation records linked to payments by how they were matched",
    ["matched_by"],
)

ALERTS_RAISED_TOTAL = Counter(
    "ledger_revenue_alerts_total",
    "Revenue alerts raised by severity",
    ["severity"],
)

PROVIDER_CALL_DURATION = Histogram(
    "ledger_provider_call_duration_seconds",
    "Outbound payment-provider call duration in seconds",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)


# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_PATH_PARAM_PATTERNS = [
    # UUIDs (8-4-4-4-12 hex format)
    (re.compile(r"/[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}"), "/{id}"),
    # Hex row ids
    (re.compile(r"/[0-9a-f]{12,64}"), "/{id}"),
    # Payment references (PF-<epoch ms>-<tenant prefix>)
    (re.compile(r"/PF-\d+-[\w-]+"), "/{reference}"),
    # Pure numeric segments
    (re.compile(r"/\d+"), "/{id}"),
]


def _normalise_path(path: str) -> str:
    """Collapse path parameters to prevent cardinality explosion."""
    for pattern, replacement in _PATH_PARAM_PATTERNS:
        path = pattern.sub(replacement, path)
    return path


# Paths excluded from metrics recording.
_SKIP_PATHS: frozenset[str] = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Record HTTP request rate, error rate, and latency."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in _SKIP_PATHS:
            return await call_next(request)

        method = request.method
        normalised = _normalise_path(path)

        start = time.monotonic()
        response = await call_next(request)
        duration = time.monotonic() - start

        HTTP_REQUESTS_TOTAL.labels(method=method, path=normalised, status_code=str(response.status_code)).inc()
        HTTP_REQUEST_DURATION.labels(method=method, path=normalised).observe(duration)
        return response
