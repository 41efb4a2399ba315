from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.apps.api.deps import get_db, get_optional_tenant_id
from opsuite.apps.api.response import Enveloped, envelope
from opsuite.core.timeutils import as_utc
from opsuite.services.dead_letter import list_dead_letters
from opsuite.services.queue import get_queue_health, get_worker_heartbeat
from opsuite.services.telemetry import counters_snapshot, job_stats


router = APIRouter(prefix="/ops", tags=["ops"])

_JOB_STATS_WINDOW_S = 900


class QueueHealth(BaseModel):
    active: int | None
    waiting: int | None
    failed: int
    worker_heartbeat_at: datetime | None = None


class QueueHealthResponse(BaseModel):
    queues: dict[str, QueueHealth]
    counters: dict[str, int]
    # Job outcomes and worst latency per queue over the recent window.
    jobs: dict[str, dict[str, float | int | None]]


class DeadLetterItem(BaseModel):
    id: str
    original_queue: str
    original_job_id: str
    tenant_id: str | None
    failure_reason: str
    failed_at: datetime
    attempts_made: int
    failed_data: dict[str, Any] | None


class DeadLetterListResponse(BaseModel):
    items: list[DeadLetterItem]


@router.get("/queues", response_model=Enveloped[QueueHealthResponse])
async def queue_health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report per-queue depth and dead-letter counts for operational tooling.
    health = await get_queue_health(session=db)
    queues: dict[str, QueueHealth] = {}
    for queue_name, counts in health.items():
        queues[queue_name] = QueueHealth(
            active=counts["active"],
            waiting=counts["waiting"],
            failed=int(counts["failed"] or 0),
            worker_heartbeat_at=await get_worker_heartbeat(queue_name),
        )
    payload = QueueHealthResponse(
        queues=queues,
        counters=counters_snapshot(),
        jobs=job_stats(_JOB_STATS_WINDOW_S),
    )
    return envelope(request, payload.model_dump(mode="json"))


@router.get("/dead-letters", response_model=Enveloped[DeadLetterListResponse])
async def dead_letters(
    request: Request,
    queue: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=250),
    tenant_id: str | None = Depends(get_optional_tenant_id),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Newest first; filtered to the caller's tenant when the tenant header is present.
    rows = await list_dead_letters(session=db, queue_name=queue, tenant_id=tenant_id, limit=limit)
    items = [
        DeadLetterItem(
            id=row.id,
            original_queue=row.original_queue,
            original_job_id=row.original_job_id,
            tenant_id=row.tenant_id,
            failure_reason=row.failure_reason,
            failed_at=as_utc(row.failed_at),
            attempts_made=row.attempts_made,
            failed_data=row.failed_data,
        )
        for row in rows
    ]
    payload = DeadLetterListResponse(items=items)
    return envelope(request, payload.model_dump(mode="json"))
