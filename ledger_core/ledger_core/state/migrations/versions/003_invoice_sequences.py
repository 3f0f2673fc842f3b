"""Platform-wide invoice number counter.

``platform_fee_invoices`` is under forced row-level security, so counting
existing invoices only sees the current tenant's rows.  Numbers are now
claimed from ``platform_fee_invoice_sequences``, which is not tenant-scoped.
The counter is seeded from the invoices already issued; RLS is lifted for
the duration of the seed so the migration sees every tenant.

Revision ID: 003
Revises: 002
Create Date: 2026-10-17 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "003"
down_revision: str | None = "002"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# "PFI-YYYYMM-" followed by a four-digit sequence.
_PREFIX_LENGTH = 11


def upgrade() -> None:
    op.create_table(
        "platform_fee_invoice_sequences",
        sa.Column("prefix", sa.String(32), primary_key=True),
        sa.Column("last_value", sa.Integer(), nullable=False),
    )

    op.execute("ALTER TABLE platform_fee_invoices NO FORCE ROW LEVEL SECURITY")
    op.execute(
        "INSERT INTO platform_fee_invoice_sequences (prefix, last_value) "
        f"SELECT substr(invoice_number, 1, {_PREFIX_LENGTH}), "
        f"max(CAST(substr(invoice_number, {_PREFIX_LENGTH + 1}) AS INTEGER)) "
        "FROM platform_fee_invoices "
        f"GROUP BY substr(invoice_number, 1, {_PREFIX_LENGTH})"
    )
    op.execute("ALTER TABLE platform_fee_invoices FORCE ROW LEVEL SECURITY")


def downgrade() -> None:
    op.drop_table("platform_fee_invoice_sequences")
