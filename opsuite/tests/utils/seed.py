from __future__ import annotations

from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from opsuite.domain.models import ActionApproval, TriggerRule
from opsuite.persistence.db import SessionLocal


def fixed_now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


async def create_rule(
    *,
    tenant_id: str,
    type: str,
    name: str = "Rule",
    metric: str | None = None,
    threshold: float | None = None,
    schedule: str | None = None,
    window_days: int | None = None,
    created_at: datetime | None = None,
    last_run_at: datetime | None = None,
) -> str:
    # Insert one enabled rule and return its id.
    rule_id = f"rule-{uuid4().hex}"
    async with SessionLocal() as session:
        session.add(
            TriggerRule(
                id=rule_id,
                tenant_id=tenant_id,
                name=name,
                type=type,
                enabled=True,
                metric=metric,
                threshold=threshold,
                schedule=schedule,
                window_days=window_days,
                severity="warning",
                last_run_at=last_run_at,
                created_at=created_at or fixed_now(),
            )
        )
        await session.commit()
    return rule_id


async def create_approval(
    *,
    tenant_id: str,
    payload: dict[str, Any],
    status: str = "approved",
    created_by: str = "u-requester",
    approved_by: str | None = "u-approver",
) -> str:
    approval_id = f"appr-{uuid4().hex}"
    async with SessionLocal() as session:
        session.add(
            ActionApproval(
                id=approval_id,
                tenant_id=tenant_id,
                source="assistant",
                payload=payload,
                risk_score=10,
                status=status,
                created_by=created_by,
                approved_by=approved_by,
            )
        )
        await session.commit()
    return approval_id
