"""Unit tests for the ledger repositories against in-memory SQLite."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from ledger_core.state.repository import (
    FeeConfigRepository,
    FeeInvoiceRepository,
    InternalPaymentRepository,
    LedgerLockRepository,
    LedgerRepository,
    OutboxRepository,
    PlatformPaymentRepository,
    ReconciliationRepository,
    TenantRepository,
)
from ledger_core.state.tables import LedgerLockTable
from sqlalchemy.ext.asyncio import AsyncSession


def _entry(reference_id: str, fee: str = "50.00", status: str = "billed") -> dict:
    return {
        "reference_type": "qr_payment",
        "reference_id": reference_id,
        "base_amount": Decimal("1000.00"),
        "fee_amount": Decimal(fee),
        "rate": Decimal("5"),
        "fee_type": "percentage",
        "billing_cycle": "realtime",
        "payer": "guest",
        "status": status,
    }


# ---------------------------------------------------------------------------
# TenantRepository / FeeConfigRepository
# ---------------------------------------------------------------------------


class TestTenantRepository:
    @pytest.mark.asyncio
    async def test_upsert_and_get(self, async_session: AsyncSession):
        repo = TenantRepository(async_session)
        await repo.upsert("tenant-a", name="Lagoon Hotel", contact_email="ops@lagoon.example")
        await repo.upsert("tenant-a", name="Lagoon Hotel & Suites", contact_email=None)
        tenant = await repo.get("tenant-a")
        assert tenant.name == "Lagoon Hotel & Suites"
        assert tenant.created_at.tzinfo is not None


class TestFeeConfigRepository:
    @pytest.mark.asyncio
    async def test_activate_deactivates_previous(self, async_session: AsyncSession):
        repo = FeeConfigRepository(async_session, tenant_id="tenant-a")
        first = await repo.activate(
            {"fee_type": "percentage", "qr_fee": Decimal("5"), "applies_to": ["qr_payments"]},
            created_by="admin",
        )
        second = await repo.activate(
            {"fee_type": "flat", "qr_fee": Decimal("100"), "applies_to": ["qr_payments"]},
            created_by="admin",
        )
        active = await repo.get_active()
        assert active.id == second.id
        await async_session.refresh(first)
        assert first.active is False
        assert len(await repo.list_history()) == 2

    @pytest.mark.asyncio
    async def test_scoped_to_tenant(self, async_session: AsyncSession):
        await FeeConfigRepository(async_session, tenant_id="tenant-a").activate(
            {"fee_type": "percentage", "qr_fee": Decimal("5"), "applies_to": ["qr_payments"]}
        )
        assert await FeeConfigRepository(async_session, tenant_id="tenant-b").get_active() is None


# ---------------------------------------------------------------------------
# LedgerRepository
# ---------------------------------------------------------------------------


class TestLedgerRepository:
    @pytest.mark.asyncio
    async def test_insert_is_keyed_by_reference(self, async_session: AsyncSession):
        repo = LedgerRepository(async_session, tenant_id="tenant-a")
        row, created = await repo.insert(_entry("qr-1"))
        again, created_again = await repo.insert(_entry("qr-1", fee="99.00"))
        assert created is True
        assert created_again is False
        assert again.id == row.id
        assert again.fee_amount == Decimal("50.00")

    @pytest.mark.asyncio
    async def test_same_reference_other_tenant_is_separate(self, async_session: AsyncSession):
        _, a = await LedgerRepository(async_session, tenant_id="tenant-a").insert(_entry("qr-1"))
        _, b = await LedgerRepository(async_session, tenant_id="tenant-b").insert(_entry("qr-1"))
        assert a is True and b is True

    @pytest.mark.asyncio
    async def test_conditional_transition(self, async_session: AsyncSession):
        repo = LedgerRepository(async_session, tenant_id="tenant-a")
        open_row, _ = await repo.insert(_entry("qr-1"))
        settled_row, _ = await repo.insert(_entry("qr-2", status="settled"))

        changed = await repo.transition(
            [open_row.id, settled_row.id],
            from_statuses=["pending", "billed"],
            values={"status": "waived", "waived_reason": "goodwill"},
        )
        assert changed == 1

        rows = {r.id: r for r in await repo.get_many([open_row.id, settled_row.id])}
        assert rows[open_row.id].status == "waived"
        assert rows[open_row.id].waived_reason == "goodwill"
        assert rows[settled_row.id].status == "settled"

    @pytest.mark.asyncio
    async def test_lock_statuses_scoped_to_tenant(self, async_session: AsyncSession):
        row, _ = await LedgerRepository(async_session, tenant_id="tenant-a").insert(_entry("qr-1"))
        other = LedgerRepository(async_session, tenant_id="tenant-b")
        assert await other.lock_statuses([row.id]) == {}

    @pytest.mark.asyncio
    async def test_list_filters(self, async_session: AsyncSession):
        repo = LedgerRepository(async_session, tenant_id="tenant-a")
        await repo.insert(_entry("qr-1", status="pending"))
        await repo.insert(_entry("qr-2", status="billed"))
        await repo.insert(_entry("qr-3", status="settled"))
        rows = await repo.list_entries(statuses=["pending", "billed"])
        assert {r.reference_id for r in rows} == {"qr-1", "qr-2"}
        assert len(await repo.list_entries(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_existing_references(self, async_session: AsyncSession):
        repo = LedgerRepository(async_session, tenant_id="tenant-a")
        await repo.insert(_entry("qr-1"))
        assert await repo.existing_references("qr_payment", ["qr-1", "qr-9"]) == {"qr-1"}


# ---------------------------------------------------------------------------
# PlatformPaymentRepository
# ---------------------------------------------------------------------------


class TestPlatformPaymentRepository:
    @pytest.mark.asyncio
    async def test_transition_wins_once(self, async_session: AsyncSession):
        repo = PlatformPaymentRepository(async_session, tenant_id="tenant-a")
        await repo.create(
            {
                "payment_reference": "PF-1-tenant-a",
                "total_amount": Decimal("50.00"),
                "provider": "paystack",
                "ledger_ids": ["x"],
            }
        )
        unscoped = PlatformPaymentRepository(async_session)
        first = await unscoped.transition(
            "PF-1-tenant-a", from_statuses=["initiated", "processing"], values={"status": "successful"}
        )
        second = await unscoped.transition(
            "PF-1-tenant-a", from_statuses=["initiated", "processing"], values={"status": "successful"}
        )
        assert (first, second) == (True, False)
        payment = await unscoped.get_by_reference("PF-1-tenant-a")
        assert payment.status == "successful"

    @pytest.mark.asyncio
    async def test_get_by_reference_respects_tenant(self, async_session: AsyncSession):
        await PlatformPaymentRepository(async_session, tenant_id="tenant-a").create(
            {"payment_reference": "PF-2", "total_amount": Decimal("1"), "provider": "stripe", "ledger_ids": []}
        )
        assert await PlatformPaymentRepository(async_session, tenant_id="tenant-b").get_by_reference("PF-2") is None


# ---------------------------------------------------------------------------
# Reconciliation repositories
# ---------------------------------------------------------------------------


class TestReconciliationRepositories:
    @pytest.mark.asyncio
    async def test_insert_if_absent_skips_duplicates(self, async_session: AsyncSession):
        repo = ReconciliationRepository(async_session, tenant_id="tenant-a")
        values = {"reference": "EXT-1", "amount": Decimal("100.00"), "source": "csv"}
        assert await repo.insert_if_absent(values) is True
        assert await repo.insert_if_absent(values) is False
        assert len(await repo.list_records()) == 1

    @pytest.mark.asyncio
    async def test_link_and_unlinked_payments(self, async_session: AsyncSession):
        recon = ReconciliationRepository(async_session, tenant_id="tenant-a")
        payments = InternalPaymentRepository(async_session, tenant_id="tenant-a")
        p1 = await payments.create({"amount": Decimal("100.00"), "transaction_ref": "EXT-1"})
        p2 = await payments.create({"amount": Decimal("100.00")})
        await recon.insert_if_absent({"reference": "EXT-1", "amount": Decimal("100.00"), "source": "csv"})
        record = await recon.get_by_reference("EXT-1")

        linked = await recon.link(
            record.id,
            p1.id,
            status="matched",
            matched_by="auto",
            at=datetime.now(UTC),
            require_unmatched=True,
        )
        assert linked is True
        # A second auto link on the same record loses.
        assert (
            await recon.link(
                record.id, p2.id, status="matched", matched_by="auto", at=datetime.now(UTC), require_unmatched=True
            )
            is False
        )
        assert await recon.linked_payment_ids() == {p1.id}
        assert [p.id for p in await payments.list_unlinked()] == [p2.id]
        assert [p.id for p in await payments.find_by_reference("EXT-1")] == [p1.id]

    @pytest.mark.asyncio
    async def test_refresh_only_while_unmatched(self, async_session: AsyncSession):
        repo = ReconciliationRepository(async_session, tenant_id="tenant-a")
        await repo.insert_if_absent({"reference": "EXT-1", "amount": Decimal("100.00"), "source": "paystack"})
        assert await repo.refresh_unmatched("EXT-1", {"amount": Decimal("120.00")}) is True
        record = await repo.get_by_reference("EXT-1")
        await repo.link(record.id, "p1", status="matched", matched_by="auto", at=datetime.now(UTC))
        assert await repo.refresh_unmatched("EXT-1", {"amount": Decimal("1.00")}) is False


class TestFeeInvoiceRepository:
    @pytest.mark.asyncio
    async def test_numbers_are_shared_across_tenants(self, async_session: AsyncSession):
        assert await FeeInvoiceRepository(async_session, "tenant-a").next_number("PFI-202602-") == 1
        assert await FeeInvoiceRepository(async_session, "tenant-b").next_number("PFI-202602-") == 2
        assert await FeeInvoiceRepository(async_session, "tenant-a").next_number("PFI-202602-") == 3

    @pytest.mark.asyncio
    async def test_each_prefix_counts_from_one(self, async_session: AsyncSession):
        repo = FeeInvoiceRepository(async_session, "tenant-a")
        assert await repo.next_number("PFI-202602-") == 1
        assert await repo.next_number("PFI-202603-") == 1


# ---------------------------------------------------------------------------
# LedgerLockRepository / OutboxRepository
# ---------------------------------------------------------------------------


class TestLedgerLockRepository:
    @pytest.mark.asyncio
    async def test_single_holder(self, async_session: AsyncSession):
        repo = LedgerLockRepository(async_session, tenant_id="tenant-a")
        assert await repo.acquire("auto_match", "worker-1", ttl_seconds=60) is True
        assert await repo.acquire("auto_match", "worker-2", ttl_seconds=60) is False
        await repo.release("auto_match", "worker-1")
        assert await repo.acquire("auto_match", "worker-2", ttl_seconds=60) is True

    @pytest.mark.asyncio
    async def test_expired_lock_is_reaped(self, async_session: AsyncSession):
        now = datetime.now(UTC)
        async_session.add(
            LedgerLockTable(
                tenant_id="tenant-a",
                lock_name="auto_match",
                holder="crashed-worker",
                acquired_at=now - timedelta(minutes=10),
                expires_at=now - timedelta(minutes=5),
            )
        )
        await async_session.flush()
        repo = LedgerLockRepository(async_session, tenant_id="tenant-a")
        assert await repo.acquire("auto_match", "worker-2", ttl_seconds=60) is True

    @pytest.mark.asyncio
    async def test_locks_are_per_tenant(self, async_session: AsyncSession):
        assert await LedgerLockRepository(async_session, tenant_id="a").acquire("auto_match", "w", 60) is True
        assert await LedgerLockRepository(async_session, tenant_id="b").acquire("auto_match", "w", 60) is True


class TestOutboxRepository:
    @pytest.mark.asyncio
    async def test_due_respects_next_attempt(self, async_session: AsyncSession):
        repo = OutboxRepository(async_session)
        now = datetime.now(UTC)
        ready = await repo.enqueue(tenant_id="tenant-a", kind="receipt", payload={"payment_id": "p1"})
        later = await repo.enqueue(tenant_id="tenant-a", kind="notification", payload={"payment_id": "p1"})
        later.next_attempt_at = now + timedelta(hours=1)
        await async_session.flush()

        due = await repo.due(now + timedelta(seconds=1))
        assert [row.id for row in due] == [ready.id]
        assert len(await repo.list_by_status("pending")) == 2
