"""Enable Row-Level Security on tenant-scoped ledger tables.

Each table gets a ``USING`` / ``WITH CHECK`` policy tied to
``current_setting('app.tenant_id', true)``.  Sessions without the variable
see zero rows.

Tables that are read across tenants by platform jobs (payments looked up by
webhook reference, alert rules and alerts, provider credentials) are left
out; the API scopes those explicitly.

Revision ID: 002
Revises: 001
Create Date: 2026-06-01 00:10:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: str | None = "001"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_TENANT_TABLES: list[str] = [
    "platform_fee_configurations",
    "platform_fee_ledger",
    "finance_providers",
    "payments",
    "finance_reconciliation_records",
    "platform_fee_invoices",
    "ledger_locks",
    "audit_log",
]


def upgrade() -> None:
    for table in _TENANT_TABLES:
        op.execute(f"ALTER TABLE {table} ENABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} FORCE ROW LEVEL SECURITY")
        op.execute(
            f"CREATE POLICY tenant_isolation_{table} ON {table} "
            f"USING (tenant_id = current_setting('app.tenant_id', true)) "
            f"WITH CHECK (tenant_id = current_setting('app.tenant_id', true))"
        )


def downgrade() -> None:
    for table in reversed(_TENANT_TABLES):
        op.execute(f"DROP POLICY IF EXISTS tenant_isolation_{table} ON {table}")
        op.execute(f"ALTER TABLE {table} DISABLE ROW LEVEL SECURITY")
        op.execute(f"ALTER TABLE {table} NO FORCE ROW LEVEL SECURITY")
