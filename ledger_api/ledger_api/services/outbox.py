"""Outbox worker: delivers notification and receipt intents over HTTP.

Intents are written in the same transaction as the ledger change that
caused them, so a crash between commit and delivery loses nothing.  The
worker claims due rows, POSTs each payload to the endpoint configured for
its kind and records the outcome.  Failures back off exponentially via
``next_attempt_at``; a row that keeps failing is parked as ``dead``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

import httpx
from ledger_core.context import utcnow
from ledger_core.retry import RetryConfig, next_attempt_at
from ledger_core.state.repository import OutboxRepository
from ledger_core.state.tables import OutboxTable
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_api.config import APISettings
from ledger_api.middleware.prometheus import OUTBOX_DELIVERIES_TOTAL
from ledger_api.middleware.trace_context import outbound_headers
from ledger_api.services.settlement_service import OUTBOX_NOTIFICATION, OUTBOX_RECEIPT

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_DELIVERED = "delivered"
STATUS_DEAD = "dead"

_NO_ENDPOINT = "no endpoint configured"


class OutboxWorker:
    """Drain due outbox rows in batches.

    Parameters
    ----------
    session_factory:
        Factory for administrative sessions; outbox rows span tenants.
    http:
        Shared client.  Each request carries its own bounded timeout.
    settings:
        Endpoints, batch size, attempt limit and backoff base.
    clock:
        Source of "now"; tests pass a fixed clock.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        settings: APISettings,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._http = http
        self._settings = settings
        self._clock = clock
        self._retry = RetryConfig(
            max_retries=settings.outbox_max_attempts,
            base_delay=settings.outbox_base_delay_seconds,
            max_delay=settings.outbox_base_delay_seconds * 64,
        )

    def _endpoint_for(self, kind: str) -> str | None:
        if kind == OUTBOX_NOTIFICATION:
            return self._settings.notification_url
        if kind == OUTBOX_RECEIPT:
            return self._settings.receipt_url
        return None

    async def drain(self) -> dict[str, int]:
        """Attempt every due row once.

        Returns
        -------
        dict[str, int]
            Counts of ``delivered``, ``retried``, ``dead`` and ``skipped`` rows.
        """
        counts = {"delivered": 0, "retried": 0, "dead": 0, "skipped": 0}
        async with self._session_factory() as session:
            rows = await OutboxRepository(session).due(self._clock(), limit=self._settings.outbox_batch_size)
            for row in rows:
                result = await self._deliver(row)
                counts[result] += 1
            await session.commit()

        if any(counts.values()):
            logger.info("Outbox drain: %s", counts)
        return counts

    async def _deliver(self, row: OutboxTable) -> str:
        now = self._clock()
        url = self._endpoint_for(row.kind)
        if url is None:
            row.status = STATUS_DELIVERED
            row.delivered_at = now
            row.last_error = _NO_ENDPOINT
            OUTBOX_DELIVERIES_TOTAL.labels(kind=row.kind, result="skipped").inc()
            logger.debug("Outbox %s (%s) has no endpoint; marked delivered", row.id, row.kind)
            return "skipped"

        try:
            response = await self._http.post(
                url,
                json=row.payload,
                headers={"Idempotency-Key": row.id, **outbound_headers()},
                timeout=self._settings.outbox_timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            return self._record_failure(row, now, exc)

        row.status = STATUS_DELIVERED
        row.delivered_at = now
        row.attempts += 1
        row.last_error = None
        OUTBOX_DELIVERIES_TOTAL.labels(kind=row.kind, result="delivered").inc()
        logger.debug("Outbox %s (%s) delivered to %s", row.id, row.kind, url)
        return "delivered"

    def _record_failure(self, row: OutboxTable, now: datetime, exc: httpx.HTTPError) -> str:
        row.attempts += 1
        row.last_error = str(exc)[:1000] or exc.__class__.__name__
        if row.attempts >= self._settings.outbox_max_attempts:
            row.status = STATUS_DEAD
            OUTBOX_DELIVERIES_TOTAL.labels(kind=row.kind, result="dead").inc()
            logger.error(
                "Outbox %s (%s, tenant=%s) dead after %d attempts: %s",
                row.id,
                row.kind,
                row.tenant_id,
                row.attempts,
                row.last_error,
            )
            return "dead"

        row.next_attempt_at = next_attempt_at(row.attempts, now, self._retry)
        OUTBOX_DELIVERIES_TOTAL.labels(kind=row.kind, result="retry").inc()
        logger.warning(
            "Outbox %s (%s) attempt %d failed, next at %s: %s",
            row.id,
            row.kind,
            row.attempts,
            row.next_attempt_at.isoformat(),
            row.last_error,
        )
        return "retried"
