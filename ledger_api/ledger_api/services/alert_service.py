"""Revenue alert rules and their periodic evaluation.

Rules are platform-level: a rule without ``tenant_id`` watches revenue
across every tenant.  Evaluation is driven by the job scheduler or the
``/alerts/evaluate`` endpoint; each rule runs inside its own savepoint so
one broken rule cannot stop the rest.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from typing import Any

from ledger_core.alerts import (
    REVENUE_STATUSES,
    evaluate_rule,
    needs_comparison,
    period_windows,
    revenue,
)
from ledger_core.context import utcnow
from ledger_core.errors import FeeValidationError, NotFoundError
from ledger_core.models.alerts import AlertMetric, AlertPeriod, AlertRuleSpec, PeriodWindow
from ledger_core.state.repository import AlertRepository, LedgerRepository
from ledger_core.state.tables import AlertRuleTable, AlertTable
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ledger_api.middleware.prometheus import ALERTS_RAISED_TOTAL
from ledger_api.services.audit_service import AuditAction, AuditService
from ledger_api.services.provider_service import PLATFORM_AUDIT_TENANT

logger = logging.getLogger(__name__)

# Placeholder tenant for cross-tenant revenue queries.
_ALL_TENANTS = "*"


def rule_to_dict(row: AlertRuleTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "name": row.name,
        "period": row.period,
        "metric": row.metric,
        "threshold_type": row.threshold_type,
        "threshold_value": row.threshold_value,
        "comparison_period": row.comparison_period,
        "tenant_id": row.tenant_id,
        "active": row.active,
        "last_checked_at": row.last_checked_at,
        "created_at": row.created_at,
    }


def alert_to_dict(row: AlertTable) -> dict[str, Any]:
    return {
        "id": row.id,
        "rule_id": row.rule_id,
        "tenant_id": row.tenant_id,
        "alert_type": row.alert_type,
        "severity": row.severity,
        "title": row.title,
        "message": row.message,
        "current_value": row.current_value,
        "expected_value": row.expected_value,
        "threshold_value": row.threshold_value,
        "period_start": row.period_start,
        "period_end": row.period_end,
        "metadata": row.metadata_json,
        "acknowledged": row.acknowledged,
        "acknowledged_by": row.acknowledged_by,
        "acknowledged_at": row.acknowledged_at,
        "created_at": row.created_at,
    }


class AlertService:
    """Alert rule management and evaluation (platform scope)."""

    def __init__(
        self,
        session: AsyncSession,
        *,
        actor: str = "system",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session = session
        self._actor = actor
        self._clock = clock
        self._repo = AlertRepository(session)
        self._audit = AuditService(session, tenant_id=PLATFORM_AUDIT_TENANT, actor=actor)

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    @staticmethod
    def _validate(fields: dict[str, Any]) -> AlertRuleSpec:
        try:
            return AlertRuleSpec(**fields)
        except ValidationError as exc:
            raise FeeValidationError(f"Invalid alert rule: {exc.errors()[0]['msg']}") from exc

    @staticmethod
    def _row_values(spec: AlertRuleSpec) -> dict[str, Any]:
        return {
            "name": spec.name,
            "period": spec.period.value,
            "metric": spec.metric.value,
            "threshold_type": spec.threshold_type.value,
            "threshold_value": spec.threshold_value,
            "comparison_period": spec.comparison_period.value if spec.comparison_period else None,
            "tenant_id": spec.tenant_id,
            "active": spec.active,
        }

    async def create_rule(self, fields: dict[str, Any]) -> AlertRuleTable:
        spec = self._validate(fields)
        row = await self._repo.create_rule({**self._row_values(spec), "created_by": self._actor})
        await self._audit.log(
            AuditAction.ALERT_RULE_CREATED,
            entity_type="revenue_alert_rule",
            entity_id=row.id,
            name=spec.name,
            metric=spec.metric.value,
            threshold_type=spec.threshold_type.value,
            threshold_value=spec.threshold_value,
        )
        return row

    async def update_rule(self, rule_id: str, fields: dict[str, Any]) -> AlertRuleTable:
        row = await self._repo.get_rule(rule_id)
        if row is None:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        merged = {**{k: v for k, v in rule_to_dict(row).items() if k in AlertRuleSpec.model_fields}, **fields}
        spec = self._validate(merged)
        updated = await self._repo.update_rule(rule_id, self._row_values(spec))
        if updated is None:
            raise NotFoundError(f"Alert rule {rule_id} not found")
        await self._audit.log(
            AuditAction.ALERT_RULE_UPDATED,
            entity_type="revenue_alert_rule",
            entity_id=rule_id,
            changed=sorted(fields),
        )
        return updated

    async def list_rules(self, *, active_only: bool = False) -> list[AlertRuleTable]:
        return await self._repo.list_rules(active_only=active_only)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    async def _revenue(self, rule: AlertRuleTable, window: PeriodWindow) -> Decimal:
        scoped = rule.tenant_id is not None
        ledger = LedgerRepository(self._session, rule.tenant_id if scoped else _ALL_TENANTS)
        entries = await ledger.list_revenue_window(
            window.start,
            window.end,
            statuses=[s.value for s in REVENUE_STATUSES],
            all_tenants=not scoped,
        )
        return revenue(entries, AlertMetric(rule.metric))

    async def _evaluate_one(self, rule: AlertRuleTable, now: datetime) -> AlertTable | None:
        current_window, comparison_window = period_windows(AlertPeriod(rule.period), now)
        current = await self._revenue(rule, current_window)
        previous = await self._revenue(rule, comparison_window) if needs_comparison(rule) else None

        draft = evaluate_rule(rule, current, previous, current_window)
        alert = None
        if draft is not None:
            alert = await self._repo.create_alert(
                {
                    "rule_id": rule.id,
                    "tenant_id": rule.tenant_id,
                    "alert_type": draft.alert_type.value,
                    "severity": draft.severity.value,
                    "title": draft.title,
                    "message": draft.message,
                    "current_value": draft.current_value,
                    "expected_value": draft.expected_value,
                    "threshold_value": draft.threshold_value,
                    "period_start": draft.period_start,
                    "period_end": draft.period_end,
                    "metadata_json": json.loads(json.dumps(draft.metadata, default=str)),
                    "created_at": now,
                }
            )
            ALERTS_RAISED_TOTAL.labels(severity=draft.severity.value).inc()
            logger.warning(
                "Revenue alert raised: rule=%s severity=%s %s", rule.name, draft.severity.value, draft.message
            )

        await self._repo.touch_rule(rule.id, now)
        return alert

    async def evaluate_all(self, now: datetime | None = None) -> list[AlertTable]:
        """Evaluate every active rule and persist the alerts that fire.

        Every evaluated rule gets ``last_checked_at``.  A rule that fails is
        rolled back to its savepoint and logged; the remaining rules still run.
        """
        now = now or self._clock()
        raised: list[AlertTable] = []
        for rule in await self._repo.list_rules(active_only=True):
            try:
                async with self._session.begin_nested():
                    alert = await self._evaluate_one(rule, now)
            except (SQLAlchemyError, ValueError, ArithmeticError):
                logger.exception("Alert rule %s (%s) failed to evaluate", rule.id, rule.name)
                continue
            if alert is not None:
                raised.append(alert)
        logger.info("Alert evaluation complete: raised=%d", len(raised))
        return raised

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    async def list_alerts(
        self,
        *,
        acknowledged: bool | None = None,
        tenant_id: str | None = None,
        limit: int = 100,
    ) -> list[AlertTable]:
        return await self._repo.list_alerts(acknowledged=acknowledged, tenant_id=tenant_id, limit=limit)

    async def acknowledge(self, alert_id: str) -> bool:
        """Acknowledge an alert.  Returns ``False`` if it was already acknowledged."""
        done = await self._repo.acknowledge(alert_id, by=self._actor, at=self._clock())
        if not done:
            existing = await self._session.get(AlertTable, alert_id)
            if existing is None:
                raise NotFoundError(f"Alert {alert_id} not found")
            return False
        await self._audit.log(AuditAction.ALERT_ACKNOWLEDGED, entity_type="revenue_alert", entity_id=alert_id)
        return True
