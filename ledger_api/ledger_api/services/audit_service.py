"""Centralized audit logging for ledger mutations.

Wraps :class:`AuditRepository` with the ledger's action names.  Every
financial state change (fee recorded, waived, settled, failed, disputed,
billed, reconciled) is funnelled through this service in the same
transaction as the change itself, so the hash-chained trail and the
ledger cannot disagree.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from ledger_core.context import LedgerContext
from ledger_core.state.repository import AuditRepository
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Action constants
# ---------------------------------------------------------------------------


class AuditAction:
    """Well-known audit action identifiers."""

    FEE_CONFIG_UPDATED = "FEE_CONFIG_UPDATED"
    PLATFORM_FEE_RECORDED = "PLATFORM_FEE_RECORDED"
    PLATFORM_FEE_BACKFILLED = "PLATFORM_FEE_BACKFILLED"
    PLATFORM_FEE_WAIVED = "PLATFORM_FEE_WAIVED"
    PLATFORM_FEE_BILLED = "PLATFORM_FEE_BILLED"
    PLATFORM_FEE_PAYMENT_INITIATED = "PLATFORM_FEE_PAYMENT_INITIATED"
    PLATFORM_FEE_PAYMENT_SUCCESSFUL = "PLATFORM_FEE_PAYMENT_SUCCESSFUL"
    PLATFORM_FEE_PAYMENT_FAILED = "PLATFORM_FEE_PAYMENT_FAILED"
    PLATFORM_FEE_DISPUTE_CREATED = "PLATFORM_FEE_DISPUTE_CREATED"
    PLATFORM_FEE_DISPUTE_UPDATED = "PLATFORM_FEE_DISPUTE_UPDATED"
    PLATFORM_FEE_DISPUTE_PROCESSED = "PLATFORM_FEE_DISPUTE_PROCESSED"
    RECONCILIATION_IMPORTED = "RECONCILIATION_IMPORTED"
    RECONCILIATION_MATCHED = "RECONCILIATION_MATCHED"
    RECONCILIATION_AUTO_MATCHED = "RECONCILIATION_AUTO_MATCHED"
    RECONCILIATION_SYNCED = "RECONCILIATION_SYNCED"
    RECONCILIATION_BATCH = "RECONCILIATION_BATCH"
    ALERT_RULE_CREATED = "ALERT_RULE_CREATED"
    ALERT_RULE_UPDATED = "ALERT_RULE_UPDATED"
    ALERT_ACKNOWLEDGED = "ALERT_ACKNOWLEDGED"
    PROVIDER_CREDENTIALS_UPDATED = "PROVIDER_CREDENTIALS_UPDATED"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    """Thin wrapper around :class:`AuditRepository` for services and routers.

    Parameters
    ----------
    session:
        The async database session for the current unit of work.
    tenant_id:
        Tenant whose audit chain the entries are appended to.
    actor:
        Identity of the user or system principal performing the action.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        tenant_id: str,
        actor: str = "system",
    ) -> None:
        self._repo = AuditRepository(session, tenant_id=tenant_id)
        self._actor = actor

    @classmethod
    def for_context(cls, session: AsyncSession, ctx: LedgerContext) -> AuditService:
        return cls(session, tenant_id=ctx.tenant_id, actor=ctx.actor)

    async def log(
        self,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        **kwargs: object,
    ) -> str:
        """Record an audit event.

        Extra keyword arguments are stored in ``metadata_json`` (ledger ids,
        amounts, reasons, ``degraded_trust``).  Returns the entry id.
        """
        metadata: dict | None = dict(kwargs) if kwargs else None  # type: ignore[arg-type]
        return await self._repo.log(
            actor=self._actor,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
        )

    async def query(
        self,
        *,
        action: str | None = None,
        entity_type: str | None = None,
        entity_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        rows = await self._repo.query(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            since=since,
            limit=limit,
            offset=offset,
        )
        return [
            {
                "id": row.id,
                "actor": row.actor,
                "action": row.action,
                "entity_type": row.entity_type,
                "entity_id": row.entity_id,
                "metadata": row.metadata_json,
                "entry_hash": row.entry_hash,
                "created_at": row.created_at,
            }
            for row in rows
        ]

    async def verify_chain(self, *, limit: int = 1000) -> tuple[bool, int]:
        return await self._repo.verify_chain(limit=limit)
