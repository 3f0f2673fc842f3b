"""Initial schema for the platform fee ledger.

Creates tenants, fee configurations, the fee ledger, platform payments and
provider credentials, reconciliation records, disputes, revenue alerts,
invoices, the outbox, single-flight locks and the audit log.

Revision ID: 001
Revises: None
Create Date: 2026-06-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_MONEY = sa.Numeric(14, 2)
_RATE = sa.Numeric(12, 4)


def _ts(name: str, *, nullable: bool = True, default_now: bool = False) -> sa.Column:
    if default_now:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()"))
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # platform_tenants
    # ------------------------------------------------------------------
    op.create_table(
        "platform_tenants",
        sa.Column("tenant_id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=True),
        _ts("trial_end_date"),
        _ts("created_at", default_now=True),
    )

    # ------------------------------------------------------------------
    # platform_fee_configurations
    # ------------------------------------------------------------------
    op.create_table(
        "platform_fee_configurations",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("fee_type", sa.String(16), nullable=False),
        sa.Column("booking_fee", _RATE, nullable=False, server_default="0"),
        sa.Column("qr_fee", _RATE, nullable=False, server_default="0"),
        sa.Column("payer", sa.String(16), nullable=False, server_default="guest"),
        sa.Column("billing_cycle", sa.String(16), nullable=False, server_default="realtime"),
        sa.Column("applies_to", postgresql.JSONB(), nullable=False),
        sa.Column("trial_exemption_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("trial_days", sa.Integer(), nullable=False, server_default="14"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_by", sa.String(256), nullable=True),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.CheckConstraint("fee_type IN ('percentage','flat')", name="ck_fee_config_fee_type"),
        sa.CheckConstraint("payer IN ('guest','property')", name="ck_fee_config_payer"),
        sa.CheckConstraint("booking_fee >= 0 AND qr_fee >= 0", name="ck_fee_config_non_negative"),
    )
    op.create_index(
        "uq_fee_config_one_active",
        "platform_fee_configurations",
        ["tenant_id"],
        unique=True,
        postgresql_where=sa.text("active"),
    )
    op.create_index("ix_fee_config_tenant_created", "platform_fee_configurations", ["tenant_id", "created_at"])

    # ------------------------------------------------------------------
    # platform_fee_ledger
    # ------------------------------------------------------------------
    op.create_table(
        "platform_fee_ledger",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("reference_type", sa.String(32), nullable=False),
        sa.Column("reference_id", sa.String(128), nullable=False),
        sa.Column("base_amount", _MONEY, nullable=False),
        sa.Column("fee_amount", _MONEY, nullable=False),
        sa.Column("rate", _RATE, nullable=False),
        sa.Column("fee_type", sa.String(16), nullable=False),
        sa.Column("billing_cycle", sa.String(16), nullable=False),
        sa.Column("payer", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        _ts("billed_at"),
        _ts("settled_at"),
        _ts("failed_at"),
        _ts("waived_at"),
        sa.Column("payment_id", sa.String(64), nullable=True),
        sa.Column("invoice_id", sa.String(64), nullable=True),
        sa.Column("waived_reason", sa.Text(), nullable=True),
        sa.Column("approval_notes", sa.Text(), nullable=True),
        sa.Column("waived_by", sa.String(256), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.UniqueConstraint("tenant_id", "reference_type", "reference_id", name="uq_ledger_tenant_reference"),
        sa.CheckConstraint("status IN ('pending','billed','settled','failed','waived')", name="ck_ledger_status"),
        sa.CheckConstraint(
            "reference_type IN ('booking','qr_payment','dispute_refund')",
            name="ck_ledger_reference_type",
        ),
    )
    op.create_index("ix_ledger_tenant_status", "platform_fee_ledger", ["tenant_id", "status"])
    op.create_index("ix_ledger_tenant_created", "platform_fee_ledger", ["tenant_id", "created_at"])
    op.create_index("ix_ledger_payment", "platform_fee_ledger", ["payment_id"])

    # ------------------------------------------------------------------
    # platform_payments / platform_payment_providers
    # ------------------------------------------------------------------
    op.create_table(
        "platform_payments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("payment_method_id", sa.String(64), nullable=True),
        sa.Column("payment_reference", sa.String(128), nullable=False, unique=True),
        sa.Column("total_amount", _MONEY, nullable=False),
        sa.Column("provider", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="initiated"),
        sa.Column("ledger_ids", postgresql.JSONB(), nullable=False),
        sa.Column("provider_response", postgresql.JSONB(), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        _ts("settled_at"),
        _ts("failed_at"),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.CheckConstraint(
            "status IN ('initiated','processing','successful','failed')",
            name="ck_platform_payments_status",
        ),
    )
    op.create_index("ix_platform_payments_tenant_created", "platform_payments", ["tenant_id", "created_at"])

    op.create_table(
        "platform_payment_providers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("provider_type", sa.String(32), nullable=False, unique=True),
        sa.Column("display_name", sa.String(128), nullable=False),
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("webhook_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
    )

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------
    op.create_table(
        "finance_providers",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("provider_type", sa.String(32), nullable=False),
        sa.Column("api_key_encrypted", sa.Text(), nullable=True),
        sa.Column("auto_reconcile", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_synced_at"),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_finance_providers_tenant", "finance_providers", ["tenant_id"])

    op.create_table(
        "payments",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("transaction_ref", sa.String(128), nullable=True),
        sa.Column("provider_reference", sa.String(128), nullable=True),
        sa.Column("provider", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="paid"),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_payments_tenant_amount", "payments", ["tenant_id", "amount"])
    op.create_index("ix_payments_tenant_ref", "payments", ["tenant_id", "transaction_ref"])

    op.create_table(
        "finance_reconciliation_records",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("reference", sa.String(256), nullable=False),
        sa.Column("amount", _MONEY, nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="unmatched"),
        sa.Column("matched_payment_id", sa.String(64), nullable=True),
        sa.Column("provider_id", sa.String(64), nullable=True),
        _ts("transaction_date"),
        sa.Column("raw_data", postgresql.JSONB(), nullable=True),
        _ts("reconciled_at"),
        sa.Column("matched_by", sa.String(256), nullable=True),
        _ts("created_at", default_now=True),
        sa.UniqueConstraint("tenant_id", "reference", name="uq_recon_tenant_reference"),
        sa.UniqueConstraint("tenant_id", "matched_payment_id", name="uq_recon_tenant_payment"),
        sa.CheckConstraint("status IN ('unmatched','matched','partial','overpaid')", name="ck_recon_status"),
    )
    op.create_index("ix_recon_tenant_status", "finance_reconciliation_records", ["tenant_id", "status"])

    # ------------------------------------------------------------------
    # platform_fee_disputes
    # ------------------------------------------------------------------
    op.create_table(
        "platform_fee_disputes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("ledger_ids", postgresql.JSONB(), nullable=False),
        sa.Column("dispute_reason", sa.Text(), nullable=False),
        sa.Column("requested_action", sa.String(16), nullable=False),
        sa.Column("requested_amount", _MONEY, nullable=True),
        sa.Column("disputed_amount", _MONEY, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("created_by", sa.String(256), nullable=False),
        sa.Column("resolved_by", sa.String(256), nullable=True),
        _ts("resolved_at"),
        _ts("processed_at"),
        _ts("created_at", default_now=True),
        _ts("updated_at", default_now=True),
        sa.CheckConstraint(
            "status IN ('pending','under_review','approved','rejected')",
            name="ck_disputes_status",
        ),
        sa.CheckConstraint("requested_action IN ('waive','reduce','review')", name="ck_disputes_action"),
    )
    op.create_index("ix_disputes_tenant_status", "platform_fee_disputes", ["tenant_id", "status"])

    # ------------------------------------------------------------------
    # Revenue alerts
    # ------------------------------------------------------------------
    op.create_table(
        "revenue_alert_rules",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("period", sa.String(16), nullable=False),
        sa.Column("metric", sa.String(32), nullable=False),
        sa.Column("threshold_type", sa.String(32), nullable=False),
        sa.Column("threshold_value", _MONEY, nullable=False),
        sa.Column("comparison_period", sa.String(32), nullable=True),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        _ts("last_checked_at"),
        sa.Column("created_by", sa.String(256), nullable=True),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_alert_rules_active", "revenue_alert_rules", ["active"])

    op.create_table(
        "revenue_alerts",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("rule_id", sa.String(64), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=True),
        sa.Column("alert_type", sa.String(32), nullable=False),
        sa.Column("severity", sa.String(16), nullable=False),
        sa.Column("title", sa.String(512), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("current_value", _MONEY, nullable=False),
        sa.Column("expected_value", _MONEY, nullable=True),
        sa.Column("threshold_value", _MONEY, nullable=False),
        _ts("period_start", nullable=False),
        _ts("period_end", nullable=False),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("acknowledged", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("acknowledged_by", sa.String(256), nullable=True),
        _ts("acknowledged_at"),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("severity IN ('info','warning','critical')", name="ck_alerts_severity"),
    )
    op.create_index("ix_alerts_rule_created", "revenue_alerts", ["rule_id", "created_at"])
    op.create_index("ix_alerts_acknowledged", "revenue_alerts", ["acknowledged"])

    # ------------------------------------------------------------------
    # platform_fee_invoices
    # ------------------------------------------------------------------
    op.create_table(
        "platform_fee_invoices",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
        _ts("period_start", nullable=False),
        _ts("period_end", nullable=False),
        sa.Column("total_amount", _MONEY, nullable=False),
        sa.Column("fee_count", sa.Integer(), nullable=False),
        _ts("due_date", nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="issued"),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("status IN ('issued','paid','void')", name="ck_fee_invoices_status"),
    )
    op.create_index(
        "ix_fee_invoices_tenant_period",
        "platform_fee_invoices",
        ["tenant_id", "period_start", "period_end"],
    )

    # ------------------------------------------------------------------
    # ledger_outbox / ledger_locks
    # ------------------------------------------------------------------
    op.create_table(
        "ledger_outbox",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        _ts("next_attempt_at", default_now=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _ts("delivered_at"),
        _ts("created_at", default_now=True),
        sa.CheckConstraint("status IN ('pending','delivered','dead')", name="ck_outbox_status"),
    )
    op.create_index("ix_outbox_status_next_attempt", "ledger_outbox", ["status", "next_attempt_at"])

    op.create_table(
        "ledger_locks",
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("lock_name", sa.String(128), nullable=False),
        sa.Column("holder", sa.String(256), nullable=False),
        _ts("acquired_at", default_now=True),
        _ts("expires_at", nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "lock_name"),
    )

    # ------------------------------------------------------------------
    # audit_log
    # ------------------------------------------------------------------
    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("actor", sa.String(256), nullable=False),
        sa.Column("action", sa.String(128), nullable=False),
        sa.Column("entity_type", sa.String(128), nullable=True),
        sa.Column("entity_id", sa.String(512), nullable=True),
        sa.Column("metadata_json", postgresql.JSONB(), nullable=True),
        sa.Column("previous_hash", sa.String(64), nullable=True),
        sa.Column("entry_hash", sa.String(64), nullable=False),
        _ts("created_at", default_now=True),
    )
    op.create_index("ix_audit_tenant_created", "audit_log", ["tenant_id", "created_at"])
    op.create_index("ix_audit_tenant_action", "audit_log", ["tenant_id", "action"])
    op.create_index("ix_audit_entity", "audit_log", ["tenant_id", "entity_type", "entity_id"])


def downgrade() -> None:
    for table in (
        "audit_log",
        "ledger_locks",
        "ledger_outbox",
        "platform_fee_invoices",
        "revenue_alerts",
        "revenue_alert_rules",
        "platform_fee_disputes",
        "finance_reconciliation_records",
        "payments",
        "finance_providers",
        "platform_payment_providers",
        "platform_payments",
        "platform_fee_ledger",
        "platform_fee_configurations",
        "platform_tenants",
    ):
        op.drop_table(table)
