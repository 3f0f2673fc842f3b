"""Explicit per-operation context passed into ledger services.

Services never reach for a module-level clock or tenant.  The caller
builds a :class:`LedgerContext` once per request (or per scheduled job)
and hands it down, which keeps every time-dependent rule reproducible
in tests.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class LedgerContext:
    """Tenant, acting principal and clock for a single unit of work."""

    tenant_id: str
    actor: str = "system"
    clock: Callable[[], datetime] = field(default=utcnow, compare=False)

    def now(self) -> datetime:
        """Return the context's notion of "now" (always UTC-aware)."""
        value = self.clock()
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value

    def for_tenant(self, tenant_id: str) -> LedgerContext:
        """Return a copy of this context scoped to another tenant."""
        return replace(self, tenant_id=tenant_id)
