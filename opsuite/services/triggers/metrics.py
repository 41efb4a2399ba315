from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.config import get_settings
from opsuite.domain.models import (
    AnalyticsSnapshot,
    KnowledgeEntry,
    KnowledgeSource,
    ModuleInsight,
    UsageSnapshot,
)
from opsuite.persistence.guards import tenant_predicate


# Snapshot-backed metrics: category -> (model, allowed fields).
_SNAPSHOT_METRICS = {
    "usage": (UsageSnapshot, ("tokens_used", "tasks_executed", "alerts_triggered")),
    "analytics": (AnalyticsSnapshot, ("sessions", "conversions", "revenue")),
}


def split_metric_key(metric_key: str) -> tuple[str, str]:
    category, _, field = (metric_key or "").partition(".")
    return category.strip(), field.strip()


def _snapshot_column(category: str, field: str):
    known = _SNAPSHOT_METRICS.get(category)
    if known is None:
        return None, None
    model, fields = known
    if field not in fields:
        return model, None
    return model, getattr(model, field)


async def _count_shared_rows(session: AsyncSession, model, tenant_id: str) -> int:
    # Knowledge rows with a null tenant are global and count for every tenant.
    count = await session.scalar(
        select(func.count())
        .select_from(model)
        .where(tenant_predicate(model, tenant_id, include_shared=True))
    )
    return int(count or 0)


async def resolve_metric_value(
    *,
    session: AsyncSession,
    tenant_id: str,
    metric_key: str,
    now: datetime,
) -> float | None:
    # Return the current scalar for a metric key, or None when there is no data to compare.
    category, field = split_metric_key(metric_key)
    model, column = _snapshot_column(category, field)
    if model is not None:
        if column is None:
            return None
        value = (
            await session.execute(
                select(column)
                .where(tenant_predicate(model, tenant_id))
                .order_by(model.date.desc())
                .limit(1)
            )
        ).scalar_one_or_none()
        return float(value) if value is not None else None
    if category == "insights" and field == "count":
        window_hours = get_settings().insights_count_window_hours
        since = now - timedelta(hours=window_hours)
        count = await session.scalar(
            select(func.count())
            .select_from(ModuleInsight)
            .where(tenant_predicate(ModuleInsight, tenant_id), ModuleInsight.created_at >= since)
        )
        return float(count or 0)
    if category == "knowledge":
        if field == "entries":
            return float(await _count_shared_rows(session, KnowledgeEntry, tenant_id))
        if field == "sources":
            return float(await _count_shared_rows(session, KnowledgeSource, tenant_id))
    return None


async def resolve_metric_series(
    *,
    session: AsyncSession,
    tenant_id: str,
    metric_key: str,
    window_days: int,
    now: datetime,
) -> list[float]:
    # Daily values inside the window, oldest first; only snapshot-backed metrics have history.
    category, field = split_metric_key(metric_key)
    model, column = _snapshot_column(category, field)
    if model is None or column is None:
        return []
    start = now - timedelta(days=window_days)
    rows = (
        await session.execute(
            select(column)
            .where(tenant_predicate(model, tenant_id), model.date >= start)
            .order_by(model.date.asc())
        )
    ).scalars().all()
    return [float(value or 0) for value in rows]
