"""Outbox delivery: success, backoff, dead-lettering and unrouted kinds."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import httpx
import pytest
from ledger_core.state.repository import OutboxRepository

from ledger_api.services.outbox import OutboxWorker


@pytest.fixture()
def start() -> datetime:
    # Rows are enqueued with a wall-clock next_attempt_at; start just after it.
    return datetime.now(UTC) + timedelta(seconds=1)


async def _enqueue(session_factory, kind: str = "notification", **payload) -> str:
    async with session_factory() as session:
        row = await OutboxRepository(session).enqueue(
            tenant_id="tenant-a",
            kind=kind,
            payload={"tenant_id": "tenant-a", **payload},
        )
        await session.commit()
    return row.id


async def _rows(session_factory, status: str):
    async with session_factory() as session:
        return await OutboxRepository(session).list_by_status(status)


def _worker(session_factory, http_client, settings, at: datetime) -> OutboxWorker:
    return OutboxWorker(session_factory, http_client, settings, clock=lambda: at)


class TestDelivery:
    @pytest.mark.asyncio
    async def test_rows_go_to_their_endpoints(
        self, session_factory, http_client, test_settings, provider_stub, start
    ) -> None:
        provider_stub.on("POST", "/hooks", json={"ok": True})
        notification_id = await _enqueue(session_factory, "notification", title="Paid")
        await _enqueue(session_factory, "receipt", amount="50.00")

        counts = await _worker(session_factory, http_client, test_settings, start).drain()

        assert counts == {"delivered": 2, "retried": 0, "dead": 0, "skipped": 0}
        hosts = sorted(request.url.host for request in provider_stub.calls("POST", "/hooks"))
        assert hosts == ["notify.test", "receipts.test"]

        notify = next(r for r in provider_stub.requests if r.url.host == "notify.test")
        assert notify.headers["Idempotency-Key"] == notification_id

        delivered = await _rows(session_factory, "delivered")
        assert len(delivered) == 2
        assert all(row.attempts == 1 and row.delivered_at is not None for row in delivered)

    @pytest.mark.asyncio
    async def test_delivered_rows_are_not_sent_again(
        self, session_factory, http_client, test_settings, provider_stub, start
    ) -> None:
        provider_stub.on("POST", "/hooks", json={"ok": True})
        await _enqueue(session_factory)

        worker = _worker(session_factory, http_client, test_settings, start)
        await worker.drain()
        second = await worker.drain()

        assert second == {"delivered": 0, "retried": 0, "dead": 0, "skipped": 0}
        assert len(provider_stub.calls("POST", "/hooks")) == 1

    @pytest.mark.asyncio
    async def test_unknown_kind_is_skipped(self, session_factory, http_client, test_settings, start) -> None:
        await _enqueue(session_factory, "webhook_echo")

        counts = await _worker(session_factory, http_client, test_settings, start).drain()

        assert counts["skipped"] == 1
        (row,) = await _rows(session_factory, "delivered")
        assert row.last_error == "no endpoint configured"


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_backs_off_then_dies(
        self, session_factory, http_client, test_settings, provider_stub, start
    ) -> None:
        provider_stub.on("POST", "/hooks", status_code=503, json={"error": "down"})
        await _enqueue(session_factory)

        first = await _worker(session_factory, http_client, test_settings, start).drain()
        assert first["retried"] == 1
        (row,) = await _rows(session_factory, "pending")
        assert row.attempts == 1
        assert row.next_attempt_at > start
        assert "503" in row.last_error

        # Not due again until the backoff has elapsed.
        idle = await _worker(session_factory, http_client, test_settings, start).drain()
        assert idle == {"delivered": 0, "retried": 0, "dead": 0, "skipped": 0}

        later = start + timedelta(hours=1)
        assert (await _worker(session_factory, http_client, test_settings, later).drain())["retried"] == 1
        final = await _worker(session_factory, http_client, test_settings, later + timedelta(hours=1)).drain()
        assert final["dead"] == 1

        (dead,) = await _rows(session_factory, "dead")
        assert dead.attempts == test_settings.outbox_max_attempts
        assert len(provider_stub.calls("POST", "/hooks")) == 3

    @pytest.mark.asyncio
    async def test_transport_error_is_retried(
        self, session_factory, http_client, test_settings, provider_stub, start
    ) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider_stub.on("POST", "/hooks", handler=_refuse)
        await _enqueue(session_factory)

        counts = await _worker(session_factory, http_client, test_settings, start).drain()
        assert counts["retried"] == 1
        (row,) = await _rows(session_factory, "pending")
        assert "connection refused" in row.last_error

    @pytest.mark.asyncio
    async def test_recovered_endpoint_delivers_on_retry(
        self, session_factory, http_client, test_settings, provider_stub, start
    ) -> None:
        provider_stub.on("POST", "/hooks", status_code=500)
        await _enqueue(session_factory)
        await _worker(session_factory, http_client, test_settings, start).drain()

        provider_stub.on("POST", "/hooks", json={"ok": True})
        counts = await _worker(session_factory, http_client, test_settings, start + timedelta(hours=1)).drain()

        assert counts["delivered"] == 1
        (row,) = await _rows(session_factory, "delivered")
        assert row.attempts == 2
        assert row.last_error is None
