"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from ledger_core.state.database import get_engine, get_session, get_tenant_session
from ledger_core.state.repository import (
    AlertRepository,
    AuditRepository,
    DisputeRepository,
    FeeConfigRepository,
    FeeInvoiceRepository,
    FinanceProviderRepository,
    InternalPaymentRepository,
    LedgerLockRepository,
    LedgerRepository,
    OutboxRepository,
    PaymentProviderRepository,
    PlatformPaymentRepository,
    ReconciliationRepository,
    TenantRepository,
)

__all__ = [
    "AlertRepository",
    "AuditRepository",
    "DisputeRepository",
    "FeeConfigRepository",
    "FeeInvoiceRepository",
    "FinanceProviderRepository",
    "InternalPaymentRepository",
    "LedgerLockRepository",
    "LedgerRepository",
    "OutboxRepository",
    "PaymentProviderRepository",
    "PlatformPaymentRepository",
    "ReconciliationRepository",
    "TenantRepository",
    "get_engine",
    "get_session",
    "get_tenant_session",
]
