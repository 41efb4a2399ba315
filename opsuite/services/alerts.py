from __future__ import annotations

from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.errors import DatabaseError
from opsuite.core.timeutils import as_utc, start_of_utc_day, utc_now
from opsuite.domain.models import (
    ALERT_OPEN_STATUSES,
    Alert,
    BillingUsage,
    TenantWidget,
    TriggerRule,
    UsageSnapshot,
)
from opsuite.persistence.guards import tenant_predicate
from opsuite.services.audit import record_event
from opsuite.services.notifications import notify_alert_raised
from opsuite.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_UPSERT_ATTEMPTS = 2


def merge_summary(existing: Any, patch: dict[str, Any]) -> dict[str, Any]:
    # Shallow merge: patch keys replace whole top-level values; non-object inputs start empty.
    current = dict(existing) if isinstance(existing, dict) else {}
    return {**current, **patch}


async def has_open_alert(*, session: AsyncSession, rule_id: str) -> bool:
    existing = await session.scalar(
        select(Alert.id)
        .where(Alert.rule_id == rule_id, Alert.status.in_(ALERT_OPEN_STATUSES))
        .limit(1)
    )
    return existing is not None


async def create_alert(
    *,
    session: AsyncSession,
    rule: TriggerRule,
    now: datetime,
    title: str | None = None,
    summary: str | None = None,
    payload: dict[str, Any] | None = None,
) -> Alert | None:
    # Insert the open alert; the partial unique index rejects a second open alert for the same rule.
    rule_id = rule.id
    tenant_id = rule.tenant_id
    alert = Alert(
        id=uuid4().hex,
        tenant_id=tenant_id,
        rule_id=rule_id,
        type=rule.type,
        severity=rule.severity or "warning",
        title=title or rule.name,
        summary=summary or f'Trigger rule "{rule.name}" fired',
        payload=payload,
        status="pending",
        created_at=now,
        updated_at=now,
    )
    session.add(alert)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        increment_counter("alerts.open_conflict")
        logger.info("alert_open_conflict rule_id=%s tenant_id=%s", rule_id, tenant_id)
        return None
    increment_counter("alerts.created")
    return alert


async def _count_widgets(session: AsyncSession, tenant_id: str) -> int:
    count = await session.scalar(
        select(func.count()).select_from(TenantWidget).where(tenant_predicate(TenantWidget, tenant_id))
    )
    return int(count or 0)


async def _apply_usage_rollup(
    session: AsyncSession,
    *,
    tenant_id: str,
    day: datetime,
    widget_count: int,
    last_alert: dict[str, Any],
) -> None:
    snapshot = (
        await session.execute(
            select(UsageSnapshot).where(UsageSnapshot.tenant_id == tenant_id, UsageSnapshot.date == day)
        )
    ).scalar_one_or_none()
    if snapshot is None:
        session.add(
            UsageSnapshot(
                tenant_id=tenant_id,
                date=day,
                tokens_used=0,
                tasks_executed=0,
                alerts_triggered=1,
                active_widgets=widget_count,
                summary=merge_summary(None, {"lastAlert": last_alert}),
            )
        )
        return
    snapshot.alerts_triggered = int(snapshot.alerts_triggered or 0) + 1
    snapshot.active_widgets = widget_count
    snapshot.summary = merge_summary(snapshot.summary, {"lastAlert": last_alert})


async def _apply_billing_rollup(
    session: AsyncSession,
    *,
    tenant_id: str,
    day: datetime,
    widget_count: int,
    last_alert: dict[str, Any],
) -> None:
    usage = (
        await session.execute(
            select(BillingUsage).where(BillingUsage.tenant_id == tenant_id, BillingUsage.date == day)
        )
    ).scalar_one_or_none()
    if usage is None:
        session.add(
            BillingUsage(
                tenant_id=tenant_id,
                date=day,
                alerts_triggered=1,
                active_widgets=widget_count,
                metadata_json=merge_summary(None, {"lastAlert": last_alert}),
            )
        )
        return
    usage.alerts_triggered = int(usage.alerts_triggered or 0) + 1
    usage.active_widgets = widget_count
    usage.metadata_json = merge_summary(usage.metadata_json, {"lastAlert": last_alert})


async def record_alert_impact(*, session: AsyncSession, tenant_id: str, alert: Alert) -> None:
    # Roll the alert into today's usage and billing buckets in one transaction.
    created_at = as_utc(alert.created_at) or utc_now()
    day = start_of_utc_day(created_at)
    usage_alert = {
        "id": alert.id,
        "severity": alert.severity,
        "type": alert.type,
        "title": alert.title,
        "summary": alert.summary,
        "createdAt": created_at.isoformat(),
    }
    billing_alert = {
        "id": alert.id,
        "severity": alert.severity,
        "type": alert.type,
        "createdAt": created_at.isoformat(),
    }
    for attempt in range(1, _UPSERT_ATTEMPTS + 1):
        widget_count = await _count_widgets(session, tenant_id)
        await _apply_usage_rollup(
            session, tenant_id=tenant_id, day=day, widget_count=widget_count, last_alert=usage_alert
        )
        await _apply_billing_rollup(
            session, tenant_id=tenant_id, day=day, widget_count=widget_count, last_alert=billing_alert
        )
        try:
            await session.commit()
            return
        except IntegrityError as exc:
            # A concurrent sweep created today's bucket first; retry against the existing rows.
            await session.rollback()
            if attempt == _UPSERT_ATTEMPTS:
                raise DatabaseError(f"Alert rollup for tenant {tenant_id} kept conflicting") from exc


async def finalize_alert(*, session: AsyncSession, tenant_id: str, alert: Alert) -> None:
    # Side effects for a fired alert: notify, emit tenant telemetry, then roll up usage.
    alert_id = alert.id
    metadata = {
        "alertId": alert_id,
        "ruleId": alert.rule_id,
        "severity": alert.severity,
        "type": alert.type,
    }
    await notify_alert_raised(session=session, alert=alert)
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="system",
        actor_id=None,
        event_type="alert.triggered",
        outcome="success",
        resource_type="alert",
        resource_id=alert_id,
        metadata=metadata,
        commit=True,
        best_effort=True,
    )
    # Best-effort writes above may have rolled back and expired the row.
    await session.refresh(alert)
    try:
        await record_alert_impact(session=session, tenant_id=tenant_id, alert=alert)
    except (DatabaseError, SQLAlchemyError):
        # The alert stays committed; a missed rollup never blocks the fire.
        await session.rollback()
        increment_counter("alerts.rollup_failed")
        await session.refresh(alert)
        logger.warning("alert_rollup_failed tenant_id=%s alert_id=%s", tenant_id, alert_id, exc_info=True)


async def _get_tenant_alert(session: AsyncSession, *, tenant_id: str, alert_id: str) -> Alert | None:
    row = await session.get(Alert, alert_id)
    if row is None or row.tenant_id != tenant_id:
        return None
    return row


async def acknowledge_alert(
    *,
    session: AsyncSession,
    tenant_id: str,
    alert_id: str,
    actor_id: str,
) -> Alert | None:
    # Acknowledging closes the alert for debounce purposes so the rule may fire again.
    row = await _get_tenant_alert(session, tenant_id=tenant_id, alert_id=alert_id)
    if row is None:
        return None
    if row.status in ALERT_OPEN_STATUSES:
        now = utc_now()
        row.status = "acknowledged"
        row.acknowledged_at = now
        row.acknowledged_by = actor_id
        row.snoozed_until = None
        row.updated_at = now
        await session.commit()
    return row


async def snooze_alert(
    *,
    session: AsyncSession,
    tenant_id: str,
    alert_id: str,
    until: datetime,
) -> Alert | None:
    # Snoozed alerts stay open and keep suppressing new alerts for their rule.
    row = await _get_tenant_alert(session, tenant_id=tenant_id, alert_id=alert_id)
    if row is None:
        return None
    if row.status in ALERT_OPEN_STATUSES:
        row.status = "snoozed"
        row.snoozed_until = as_utc(until)
        row.updated_at = utc_now()
        await session.commit()
    return row


async def resolve_alert(*, session: AsyncSession, tenant_id: str, alert_id: str) -> Alert | None:
    row = await _get_tenant_alert(session, tenant_id=tenant_id, alert_id=alert_id)
    if row is None:
        return None
    if row.status != "resolved":
        row.status = "resolved"
        row.snoozed_until = None
        row.updated_at = utc_now()
        await session.commit()
    return row


async def list_open_alerts(*, session: AsyncSession, tenant_id: str) -> list[Alert]:
    rows = (
        await session.execute(
            select(Alert)
            .where(tenant_predicate(Alert, tenant_id), Alert.status.in_(ALERT_OPEN_STATUSES))
            .order_by(Alert.created_at.desc(), Alert.id.asc())
        )
    ).scalars().all()
    return list(rows)
