"""SQLAlchemy 2.0 ORM table definitions for the platform fee ledger.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for Alembic migrations and the
repository layer.  Money columns are ``Numeric(14, 2)`` and are read back
as ``Decimal``.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

_Money = Numeric(14, 2, asdecimal=True)
_Rate = Numeric(12, 4, asdecimal=True)


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all ledger tables."""


# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class PlatformTenantTable(Base):
    """Tenant properties billed by the platform (trial window and contact)."""

    __tablename__ = "platform_tenants"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Fee configuration
# ---------------------------------------------------------------------------


class FeeConfigurationTable(Base):
    """Per-tenant fee rules.  At most one row per tenant is active."""

    __tablename__ = "platform_fee_configurations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    fee_type: Mapped[str] = mapped_column(String(16), nullable=False)
    booking_fee: Mapped[Decimal] = mapped_column(_Rate, nullable=False, default=Decimal("0"))
    qr_fee: Mapped[Decimal] = mapped_column(_Rate, nullable=False, default=Decimal("0"))
    payer: Mapped[str] = mapped_column(String(16), nullable=False, default="guest")
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False, default="realtime")
    applies_to: Mapped[list[str]] = mapped_column(_JsonType, nullable=False)
    trial_exemption_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=14)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("fee_type IN ('percentage','flat')", name="ck_fee_config_fee_type"),
        CheckConstraint("payer IN ('guest','property')", name="ck_fee_config_payer"),
        CheckConstraint("booking_fee >= 0 AND qr_fee >= 0", name="ck_fee_config_non_negative"),
        Index(
            "uq_fee_config_one_active",
            "tenant_id",
            unique=True,
            postgresql_where=text("active"),
            sqlite_where=text("active = 1"),
        ),
        Index("ix_fee_config_tenant_created", "tenant_id", "created_at"),
    )


# ---------------------------------------------------------------------------
# Fee ledger
# ---------------------------------------------------------------------------


class LedgerEntryTable(Base):
    """One fee obligation per billable transaction.  Rows are never deleted."""

    __tablename__ = "platform_fee_ledger"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reference_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reference_id: Mapped[str] = mapped_column(String(128), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    fee_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    rate: Mapped[Decimal] = mapped_column(_Rate, nullable=False)
    fee_type: Mapped[str] = mapped_column(String(16), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(16), nullable=False)
    payer: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    billed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    waived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    invoice_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    waived_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    approval_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    waived_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "reference_type", "reference_id", name="uq_ledger_tenant_reference"),
        CheckConstraint(
            "status IN ('pending','billed','settled','failed','waived')",
            name="ck_ledger_status",
        ),
        CheckConstraint(
            "reference_type IN ('booking','qr_payment','dispute_refund')",
            name="ck_ledger_reference_type",
        ),
        Index("ix_ledger_tenant_status", "tenant_id", "status"),
        Index("ix_ledger_tenant_created", "tenant_id", "created_at"),
        Index("ix_ledger_payment", "payment_id"),
    )


# ---------------------------------------------------------------------------
# Platform payments
# ---------------------------------------------------------------------------


class PlatformPaymentTable(Base):
    """A single attempt to collect a batch of ledger entries."""

    __tablename__ = "platform_payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_method_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payment_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    total_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="initiated")
    ledger_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False)
    provider_response: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated','processing','successful','failed')",
            name="ck_platform_payments_status",
        ),
        Index("ix_platform_payments_tenant_created", "tenant_id", "created_at"),
    )


class PaymentProviderTable(Base):
    """Platform-level provider credentials used to collect fees.

    ``api_key_encrypted`` and ``webhook_secret_encrypted`` hold Fernet
    tokens; plaintext secrets are never stored.
    """

    __tablename__ = "platform_payment_providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    provider_type: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(128), nullable=False)
    api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------


class FinanceProviderTable(Base):
    """A tenant's own payment provider account, synced for reconciliation."""

    __tablename__ = "finance_providers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_type: Mapped[str] = mapped_column(String(32), nullable=False)
    api_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    auto_reconcile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_finance_providers_tenant", "tenant_id"),)


class InternalPaymentTable(Base):
    """Guest payments recorded by the property (the reconciliation target)."""

    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    transaction_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    provider: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="paid")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_payments_tenant_amount", "tenant_id", "amount"),
        Index("ix_payments_tenant_ref", "tenant_id", "transaction_ref"),
    )


class ReconciliationRecordTable(Base):
    """A provider-reported transaction and its link to an internal payment."""

    __tablename__ = "finance_reconciliation_records"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    reference: Mapped[str] = mapped_column(String(256), nullable=False)
    amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="unmatched")
    matched_payment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    transaction_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    matched_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("tenant_id", "reference", name="uq_recon_tenant_reference"),
        # One external record per internal payment.
        UniqueConstraint("tenant_id", "matched_payment_id", name="uq_recon_tenant_payment"),
        CheckConstraint(
            "status IN ('unmatched','matched','partial','overpaid')",
            name="ck_recon_status",
        ),
        Index("ix_recon_tenant_status", "tenant_id", "status"),
    )


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------


class FeeDisputeTable(Base):
    """A tenant's challenge against one or more ledger entries."""

    __tablename__ = "platform_fee_disputes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ledger_ids: Mapped[list[str]] = mapped_column(_JsonType, nullable=False)
    dispute_reason: Mapped[str] = mapped_column(Text, nullable=False)
    requested_action: Mapped[str] = mapped_column(String(16), nullable=False)
    requested_amount: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    disputed_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str] = mapped_column(String(256), nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','under_review','approved','rejected')",
            name="ck_disputes_status",
        ),
        CheckConstraint("requested_action IN ('waive','reduce','review')", name="ck_disputes_action"),
        Index("ix_disputes_tenant_status", "tenant_id", "status"),
    )


# ---------------------------------------------------------------------------
# Revenue alerts
# ---------------------------------------------------------------------------


class AlertRuleTable(Base):
    """Revenue threshold rule evaluated by the scheduler."""

    __tablename__ = "revenue_alert_rules"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    period: Mapped[str] = mapped_column(String(16), nullable=False)
    metric: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold_type: Mapped[str] = mapped_column(String(32), nullable=False)
    threshold_value: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    comparison_period: Mapped[str | None] = mapped_column(String(32), nullable=True)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_alert_rules_active", "active"),)


class AlertTable(Base):
    """An alert raised by a rule evaluation."""

    __tablename__ = "revenue_alerts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    rule_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    current_value: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    expected_value: Mapped[Decimal | None] = mapped_column(_Money, nullable=True)
    threshold_value: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    acknowledged: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    acknowledged_by: Mapped[str | None] = mapped_column(String(256), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("severity IN ('info','warning','critical')", name="ck_alerts_severity"),
        Index("ix_alerts_rule_created", "rule_id", "created_at"),
        Index("ix_alerts_acknowledged", "acknowledged"),
    )


# ---------------------------------------------------------------------------
# Fee invoices (periodic billing)
# ---------------------------------------------------------------------------


class FeeInvoiceTable(Base):
    """Invoice grouping monthly-cycle entries billed in one run."""

    __tablename__ = "platform_fee_invoices"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    invoice_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(_Money, nullable=False)
    fee_count: Mapped[int] = mapped_column(Integer, nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="issued")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('issued','paid','void')", name="ck_fee_invoices_status"),
        Index("ix_fee_invoices_tenant_period", "tenant_id", "period_start", "period_end"),
    )


class InvoiceSequenceTable(Base):
    """Platform-wide invoice counter, one row per ``PFI-YYYYMM-`` prefix.

    Not tenant-scoped: invoice numbers are unique across tenants, so the
    counter must not be filtered by row-level security.
    """

    __tablename__ = "platform_fee_invoice_sequences"

    prefix: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False)


# ---------------------------------------------------------------------------
# Outbox
# ---------------------------------------------------------------------------


class OutboxTable(Base):
    """Side-effect intents written in the same transaction as the ledger change."""

    __tablename__ = "ledger_outbox"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("status IN ('pending','delivered','dead')", name="ck_outbox_status"),
        Index("ix_outbox_status_next_attempt", "status", "next_attempt_at"),
    )


# ---------------------------------------------------------------------------
# Single-flight locks
# ---------------------------------------------------------------------------


class LedgerLockTable(Base):
    """Named per-tenant locks with an expiry, e.g. the auto-match job."""

    __tablename__ = "ledger_locks"

    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    lock_name: Mapped[str] = mapped_column(String(128), nullable=False)
    holder: Mapped[str] = mapped_column(String(256), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (PrimaryKeyConstraint("tenant_id", "lock_name"),)


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


class AuditLogTable(Base):
    """Append-only audit log with tamper-evidence via hash chaining.

    ``entry_hash`` is a SHA-256 digest of the entry's content fields and
    ``previous_hash`` links to the preceding entry's hash, forming a
    tamper-evident chain per tenant.
    """

    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(256), nullable=False)
    action: Mapped[str] = mapped_column(String(128), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index("ix_audit_tenant_created", "tenant_id", "created_at"),
        Index("ix_audit_tenant_action", "tenant_id", "action"),
        Index("ix_audit_entity", "tenant_id", "entity_type", "entity_id"),
    )
