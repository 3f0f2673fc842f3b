"""W3C Trace Context propagation.

Parses incoming ``traceparent`` headers and keeps ``trace_id`` /
``span_id`` in ``contextvars`` for the lifetime of the request.  Outbound
calls to payment providers and the notification/receipt services forward
the context through :func:`outbound_headers`, so a settlement can be
followed from webhook to receipt in the logs.

Header format::

    traceparent: {version}-{trace_id}-{parent_span_id}-{flags}
    Example:     00-4bf92f3577b16e8153e785e29fc5f28c-d75597dee50b0cac-01
"""

from __future__ import annotations

import contextvars
import logging
import os
import re

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = logging.getLogger(__name__)

_trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="")
_span_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("span_id", default="")
_trace_flags_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_flags", default="00")

_TRACEPARENT_RE = re.compile(r"^([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})$")


def get_trace_id() -> str:
    """Return the current trace ID (or empty string outside a request)."""
    return _trace_id_var.get()


def get_traceparent() -> str:
    """Rebuild a ``traceparent`` value for the active span, or ``""``."""
    trace_id = _trace_id_var.get()
    span_id = _span_id_var.get()
    if not trace_id or not span_id:
        return ""
    return f"00-{trace_id}-{span_id}-{_trace_flags_var.get()}"


def outbound_headers() -> dict[str, str]:
    """Headers to attach to outbound HTTP calls made while serving a request."""
    traceparent = get_traceparent()
    return {"traceparent": traceparent} if traceparent else {}


def parse_traceparent(header: str) -> tuple[str, str, str]:
    """Parse a W3C traceparent header.

    Returns ``(trace_id, parent_span_id, flags)`` or ``("", "", "")`` if
    the header is missing or invalid.
    """
    if not header:
        return ("", "", "")

    match = _TRACEPARENT_RE.match(header.strip().lower())
    if not match:
        logger.debug("Invalid traceparent header: %s", header)
        return ("", "", "")

    version, trace_id, parent_span_id, flags = match.groups()
    if version == "ff":
        return ("", "", "")
    if trace_id == "0" * 32 or parent_span_id == "0" * 16:
        return ("", "", "")
    return (trace_id, parent_span_id, flags)


class TraceContextMiddleware(BaseHTTPMiddleware):
    """Adopt the caller's trace (or start one) and open a span for this service.

    ``request.state.trace_id`` / ``span_id`` are set for handlers and the
    access log; ``X-Trace-ID`` is echoed on the response.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        trace_id, parent_span_id, flags = parse_traceparent(request.headers.get("traceparent", ""))
        span_id = os.urandom(8).hex()
        if not trace_id:
            trace_id = os.urandom(16).hex()
            flags = "00"

        _trace_id_var.set(trace_id)
        _span_id_var.set(span_id)
        _trace_flags_var.set(flags)

        request.state.trace_id = trace_id
        request.state.span_id = span_id
        request.state.parent_span_id = parent_span_id

        response = await call_next(request)
        response.headers["X-Trace-ID"] = trace_id
        return response


class TraceLoggingFilter(logging.Filter):
    """Inject ``trace_id`` and ``span_id`` into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()  # type: ignore[attr-defined]
        record.span_id = _span_id_var.get()  # type: ignore[attr-defined]
        return True
