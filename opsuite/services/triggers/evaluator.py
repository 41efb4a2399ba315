from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import time
from typing import Any
from uuid import uuid4

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.config import get_settings
from opsuite.core.timeutils import as_utc, utc_now
from opsuite.domain.models import Alert, Tenant, TriggerRule
from opsuite.persistence.db import SessionLocal
from opsuite.persistence.guards import tenant_predicate
from opsuite.services.alerts import create_alert, finalize_alert, has_open_alert
from opsuite.services.telemetry import increment_counter
from opsuite.services.triggers.anomaly import detect_anomaly
from opsuite.services.triggers.cron import is_due
from opsuite.services.triggers.metrics import resolve_metric_series, resolve_metric_value


logger = logging.getLogger(__name__)

RULE_TYPE_SCHEDULE = "schedule"
RULE_TYPE_METRIC_THRESHOLD = "metric_threshold"
RULE_TYPE_ANOMALY = "anomaly"


@dataclass(frozen=True)
class RuleEvaluation:
    triggered: bool
    alert: Alert | None = None


@dataclass(frozen=True)
class TenantSweepResult:
    tenant_id: str
    triggered: int
    error: str | None = None


@dataclass(frozen=True)
class SweepSummary:
    run_id: str
    triggered: int
    tenants: list[TenantSweepResult]
    duration_ms: int

    def as_dict(self) -> dict[str, Any]:
        tenants: list[dict[str, Any]] = []
        for result in self.tenants:
            item: dict[str, Any] = {"tenantId": result.tenant_id, "triggered": result.triggered}
            if result.error is not None:
                item["error"] = result.error
            tenants.append(item)
        return {
            "runId": self.run_id,
            "triggered": self.triggered,
            "tenants": tenants,
            "durationMs": self.duration_ms,
        }


_NOT_TRIGGERED = RuleEvaluation(triggered=False)


def format_number(value: float) -> str:
    # Group thousands and trim float noise for alert summaries.
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.3f}".rstrip("0").rstrip(".")


async def _fire(
    *,
    session: AsyncSession,
    rule: TriggerRule,
    now: datetime,
    summary: str,
    payload: dict[str, Any],
) -> RuleEvaluation:
    # Debounce on any open alert, then let the unique open-alert index settle races.
    if await has_open_alert(session=session, rule_id=rule.id):
        return _NOT_TRIGGERED
    tenant_id = rule.tenant_id
    alert = await create_alert(
        session=session,
        rule=rule,
        now=now,
        title=rule.name,
        summary=summary,
        payload=payload,
    )
    if alert is None:
        return _NOT_TRIGGERED
    await finalize_alert(session=session, tenant_id=tenant_id, alert=alert)
    return RuleEvaluation(triggered=True, alert=alert)


async def _evaluate_schedule_rule(*, session: AsyncSession, rule: TriggerRule, now: datetime) -> RuleEvaluation:
    if not rule.schedule:
        return _NOT_TRIGGERED
    if not is_due(rule.schedule, as_utc(rule.last_run_at), now):
        return _NOT_TRIGGERED
    triggered_at = now.isoformat()
    return await _fire(
        session=session,
        rule=rule,
        now=now,
        summary=f'Scheduled rule "{rule.name}" executed at {triggered_at}',
        payload={
            "schedule": rule.schedule,
            "triggeredAt": triggered_at,
            "ruleId": rule.id,
            "ruleType": rule.type,
        },
    )


async def _evaluate_metric_threshold_rule(
    *, session: AsyncSession, rule: TriggerRule, now: datetime
) -> RuleEvaluation:
    if not rule.metric or rule.threshold is None:
        return _NOT_TRIGGERED
    observed = await resolve_metric_value(
        session=session,
        tenant_id=rule.tenant_id,
        metric_key=rule.metric,
        now=now,
    )
    if observed is None or observed < rule.threshold:
        return _NOT_TRIGGERED
    return await _fire(
        session=session,
        rule=rule,
        now=now,
        summary=(
            f"Metric {rule.metric} reached {format_number(observed)} "
            f"(threshold {format_number(rule.threshold)})"
        ),
        payload={
            "metric": rule.metric,
            "threshold": rule.threshold,
            "observed": observed,
            "ruleId": rule.id,
            "ruleType": rule.type,
        },
    )


async def _evaluate_anomaly_rule(*, session: AsyncSession, rule: TriggerRule, now: datetime) -> RuleEvaluation:
    if not rule.metric:
        return _NOT_TRIGGERED
    settings = get_settings()
    window_days = rule.window_days if rule.window_days and rule.window_days > 0 else settings.anomaly_default_window_days
    threshold = rule.threshold if rule.threshold is not None else settings.anomaly_default_threshold
    series = await resolve_metric_series(
        session=session,
        tenant_id=rule.tenant_id,
        metric_key=rule.metric,
        window_days=window_days,
        now=now,
    )
    result = detect_anomaly(series, threshold=threshold, min_points=settings.anomaly_min_points)
    if result is None or not result.is_anomaly:
        return _NOT_TRIGGERED
    return await _fire(
        session=session,
        rule=rule,
        now=now,
        summary=(
            f"Anomaly detected for {rule.metric}: z-score {result.z_score:.2f} "
            f"(threshold {format_number(threshold)})"
        ),
        payload={
            "metric": rule.metric,
            "zScore": result.z_score,
            "mean": result.mean,
            "stdDeviation": result.std_deviation,
            "latest": result.latest,
            "threshold": threshold,
            "ruleId": rule.id,
            "ruleType": rule.type,
        },
    )


_EVALUATORS = {
    RULE_TYPE_SCHEDULE: _evaluate_schedule_rule,
    RULE_TYPE_METRIC_THRESHOLD: _evaluate_metric_threshold_rule,
    RULE_TYPE_ANOMALY: _evaluate_anomaly_rule,
}


async def evaluate_rule(*, session: AsyncSession, rule: TriggerRule, now: datetime) -> RuleEvaluation:
    evaluator = _EVALUATORS.get(rule.type)
    if evaluator is None:
        return _NOT_TRIGGERED
    return await evaluator(session=session, rule=rule, now=now)


async def _mark_rule_run(
    *, session: AsyncSession, rule_id: str, now: datetime, triggered: bool
) -> None:
    values: dict[str, Any] = {"last_run_at": now, "updated_at": now}
    if triggered:
        values["last_triggered_at"] = now
    await session.execute(update(TriggerRule).where(TriggerRule.id == rule_id).values(**values))
    await session.commit()


async def evaluate_tenant_triggers(
    *,
    session: AsyncSession,
    tenant_id: str,
    now: datetime | None = None,
) -> int:
    # Evaluate every enabled rule for one tenant; a failing rule is logged and skipped.
    current = as_utc(now) or utc_now()
    rule_ids = (
        await session.execute(
            select(TriggerRule.id)
            .where(tenant_predicate(TriggerRule, tenant_id), TriggerRule.enabled.is_(True))
            .order_by(TriggerRule.created_at.asc(), TriggerRule.id.asc())
        )
    ).scalars().all()
    triggered_count = 0
    for rule_id in rule_ids:
        try:
            rule = await session.get(TriggerRule, rule_id)
            if rule is None or not rule.enabled:
                continue
            evaluation = await evaluate_rule(session=session, rule=rule, now=current)
            if evaluation.triggered:
                triggered_count += 1
                increment_counter("triggers.fired")
                logger.info(
                    "trigger_fired rule_id=%s tenant_id=%s alert_id=%s",
                    rule_id,
                    tenant_id,
                    evaluation.alert.id if evaluation.alert is not None else None,
                )
            # Only a rule that evaluated cleanly advances its run markers.
            await _mark_rule_run(session=session, rule_id=rule_id, now=current, triggered=evaluation.triggered)
        except Exception:  # noqa: BLE001 - one bad rule must not stop the rest of the tenant's rules.
            await session.rollback()
            increment_counter("triggers.failed")
            logger.exception("trigger_rule_evaluation_failed rule_id=%s tenant_id=%s", rule_id, tenant_id)
    return triggered_count


async def list_tenant_ids(*, session: AsyncSession) -> list[str]:
    # Registered tenants by creation time, then any tenant that only appears on rules.
    registered = (
        await session.execute(select(Tenant.id).order_by(Tenant.created_at.asc(), Tenant.id.asc()))
    ).scalars().all()
    rule_tenants = (
        await session.execute(select(TriggerRule.tenant_id).where(TriggerRule.enabled.is_(True)).distinct())
    ).scalars().all()
    known = set(registered)
    return list(registered) + sorted(tenant for tenant in set(rule_tenants) if tenant not in known)


async def run_trigger_sweep(*, tenant_id: str | None = None, now: datetime | None = None) -> SweepSummary:
    # Evaluate one tenant or all tenants, each in its own session so failures stay isolated.
    started = time.monotonic()
    current = as_utc(now) or utc_now()
    run_id = uuid4().hex
    if tenant_id is not None:
        tenant_ids = [tenant_id]
    else:
        async with SessionLocal() as session:
            tenant_ids = await list_tenant_ids(session=session)
    results: list[TenantSweepResult] = []
    for current_tenant in tenant_ids:
        try:
            async with SessionLocal() as session:
                fired = await evaluate_tenant_triggers(
                    session=session,
                    tenant_id=current_tenant,
                    now=current,
                )
            results.append(TenantSweepResult(tenant_id=current_tenant, triggered=fired))
        except Exception as exc:  # noqa: BLE001 - keep sweeping remaining tenants.
            increment_counter("triggers.tenant_failed")
            logger.exception("trigger_tenant_sweep_failed run_id=%s tenant_id=%s", run_id, current_tenant)
            results.append(
                TenantSweepResult(tenant_id=current_tenant, triggered=0, error=str(exc) or exc.__class__.__name__)
            )
    summary = SweepSummary(
        run_id=run_id,
        triggered=sum(result.triggered for result in results),
        tenants=results,
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(
        "trigger_sweep_completed run_id=%s tenants=%s triggered=%s duration_ms=%s",
        summary.run_id,
        len(summary.tenants),
        summary.triggered,
        summary.duration_ms,
    )
    return summary
