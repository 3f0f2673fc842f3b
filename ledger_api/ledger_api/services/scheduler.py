"""Background scheduler for revenue alerts, the billing run and outbox draining.

Runs as an ``asyncio`` background task inside the API process.  Each job
has its own interval; the loop wakes every few seconds, runs whatever is
due and commits each job in its own session so a failing job cannot roll
back another.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import httpx
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ledger_api.config import APISettings
from ledger_api.services.alert_service import AlertService
from ledger_api.services.billing_service import BillingService
from ledger_api.services.outbox import OutboxWorker

logger = logging.getLogger(__name__)

_TICK_SECONDS = 5.0


@dataclass
class _Job:
    name: str
    interval: float
    run: Callable[[], Awaitable[object]]
    next_run: float = field(default=0.0)


class JobScheduler:
    """Periodic job loop.

    Parameters
    ----------
    session_factory:
        Factory for administrative sessions (jobs span tenants).
    http:
        Shared HTTP client for the outbox worker.
    settings:
        Job intervals and outbox settings.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http: httpx.AsyncClient,
        settings: APISettings,
    ) -> None:
        self._session_factory = session_factory
        self._outbox = OutboxWorker(session_factory, http, settings)
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._jobs = [
            _Job("alerts", settings.alert_interval_seconds, self.run_alerts),
            _Job("billing", settings.billing_interval_seconds, self.run_billing),
            _Job("outbox", settings.outbox_interval_seconds, self._outbox.drain),
        ]

    @property
    def running(self) -> bool:
        """Whether the scheduler loop is active."""
        return self._running

    async def start(self) -> None:
        """Start the scheduler background task."""
        if self._running:
            logger.warning("JobScheduler already running; ignoring start()")
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("JobScheduler started: %s", ", ".join(f"{j.name}={j.interval}s" for j in self._jobs))

    async def stop(self) -> None:
        """Stop the scheduler gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("JobScheduler stopped")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def run_alerts(self) -> int:
        async with self._session_factory() as session:
            raised = await AlertService(session, actor="alert-job").evaluate_all()
            await session.commit()
        return len(raised)

    async def run_billing(self) -> int:
        async with self._session_factory() as session:
            summaries = await BillingService(session).run_monthly()
            await session.commit()
        return len(summaries)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def run_due(self) -> list[str]:
        """Run every job whose interval has elapsed; return their names."""
        now = time.monotonic()
        ran: list[str] = []
        for job in self._jobs:
            if job.next_run > now:
                continue
            job.next_run = now + job.interval
            try:
                await job.run()
            except (OperationalError, InterfaceError) as exc:
                logger.error("Scheduled job %s database error: %s", job.name, exc, exc_info=True)
                continue
            ran.append(job.name)
        return ran

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.run_due()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.critical("JobScheduler unexpected error: %s", exc, exc_info=True)
                raise
            await asyncio.sleep(_TICK_SECONDS)
