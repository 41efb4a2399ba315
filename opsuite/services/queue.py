from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import hashlib
import logging
from typing import Any
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.config import get_settings
from opsuite.core.timeutils import utc_now
from opsuite.domain.models import DeadLetterJob


logger = logging.getLogger(__name__)

ACTION_EXECUTION_JOB = "execute_action"
TRIGGER_SWEEP_JOB = "run_trigger_sweep"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


def worker_heartbeat_key(queue_name: str) -> str:
    return f"opsuite:worker:heartbeat:{queue_name}"


def _queue_key(queue_name: str) -> str:
    # arq keeps pending and running job ids in one sorted set per queue.
    return f"arq:queue:{queue_name}"


def _in_progress_key(job_id: str) -> str:
    return f"arq:in-progress:{job_id}"


class _JobPayload(BaseModel):
    # Jobs travel as camelCase JSON; Python code reads snake_case attributes.
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_job_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ActionExecutionJobPayload(_JobPayload):
    tenant_id: str
    approval_id: str
    source: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    approved_by: str | None = None
    module_slug: str | None = None
    capability: str | None = None
    undo_payload: dict[str, Any] | None = None
    risk_score: int | None = None

    @property
    def actor_id(self) -> str:
        return self.approved_by or self.created_by or "system-action-worker"


class TriggerSweepJobPayload(_JobPayload):
    # No tenant means sweep every tenant.
    tenant_id: str | None = None
    triggered_by: str = "scheduler"
    requested_at: datetime | None = None


class DeadLetterRecord(_JobPayload):
    original_queue: str
    original_job_id: str
    tenant_id: str | None = None
    failed_data: dict[str, Any] = Field(default_factory=dict)
    failure_reason: str
    failed_at: datetime
    attempts_made: int


async def get_redis_pool():
    # Cache the Redis pool per event loop to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.action_executor_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


def retry_backoff_ms(*, job_id: str, attempt_no: int) -> int:
    # Exponential backoff with deterministic jitter keeps retries reproducible and spread out.
    settings = get_settings()
    base = max(1, int(settings.queue_backoff_delay_ms))
    cap = max(base, int(settings.queue_backoff_max_ms))
    exponent = max(0, int(attempt_no) - 1)
    backoff = min(cap, base * (2**exponent))
    digest = hashlib.sha256(f"{job_id}:{attempt_no}".encode("utf-8")).hexdigest()
    jitter = int(digest[:8], 16) % 251
    return min(cap, backoff + jitter)


def action_job_id(approval_id: str, *, dispatch: str | None = None) -> str:
    # Each dispatch gets its own id; only arq redeliveries of that dispatch share it.
    return f"action:{approval_id}:{dispatch or uuid4().hex[:12]}"


async def enqueue_action_execution(payload: ActionExecutionJobPayload, *, job_id: str | None = None) -> str:
    settings = get_settings()
    resolved_job_id = job_id or action_job_id(payload.approval_id)
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        ACTION_EXECUTION_JOB,
        payload.to_job_data(),
        _job_id=resolved_job_id,
        _queue_name=settings.action_executor_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else resolved_job_id


async def enqueue_trigger_sweep(payload: TriggerSweepJobPayload, *, job_id: str | None = None) -> str | None:
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        TRIGGER_SWEEP_JOB,
        payload.to_job_data(),
        _job_id=job_id,
        _queue_name=settings.trigger_runner_queue_name,
    )
    return job.job_id if job else job_id


async def set_worker_heartbeat(*, queue_name: str, timestamp: datetime | None = None) -> None:
    redis = await get_redis_pool()
    heartbeat_time = timestamp or utc_now()
    await redis.set(worker_heartbeat_key(queue_name), heartbeat_time.isoformat())


async def get_worker_heartbeat(queue_name: str) -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(worker_heartbeat_key(queue_name))
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


async def _queue_counts(redis, queue_name: str) -> tuple[int, int]:
    job_ids = await redis.zrange(_queue_key(queue_name), 0, -1)
    active = 0
    for raw_id in job_ids:
        job_id = raw_id.decode("utf-8") if isinstance(raw_id, (bytes, bytearray)) else str(raw_id)
        if await redis.exists(_in_progress_key(job_id)):
            active += 1
    return active, max(0, len(job_ids) - active)


async def get_queue_health(*, session: AsyncSession) -> dict[str, dict[str, int | None]]:
    # Report active/waiting from Redis and failed from the dead-letter table per queue.
    settings = get_settings()
    queue_names = [settings.action_executor_queue_name, settings.trigger_runner_queue_name]
    failed_rows = (
        await session.execute(
            select(DeadLetterJob.original_queue, func.count())
            .where(DeadLetterJob.original_queue.in_(queue_names))
            .group_by(DeadLetterJob.original_queue)
        )
    ).all()
    failed_by_queue = {str(queue): int(count) for queue, count in failed_rows}
    try:
        redis = await get_redis_pool()
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        logger.warning("queue_health_redis_unavailable")
        redis = None
    health: dict[str, dict[str, int | None]] = {}
    for queue_name in queue_names:
        active: int | None = None
        waiting: int | None = None
        if redis is not None:
            try:
                active, waiting = await _queue_counts(redis, queue_name)
            except Exception:  # noqa: BLE001 - report unknown depth instead of failing the probe
                logger.warning("queue_health_depth_failed queue=%s", queue_name, exc_info=True)
        health[queue_name] = {
            "active": active,
            "waiting": waiting,
            "failed": failed_by_queue.get(queue_name, 0),
        }
    return health


def defer_delta(ms: int) -> timedelta | None:
    delta = timedelta(milliseconds=max(0, int(ms)))
    return delta if delta.total_seconds() > 0 else None


def job_deadline_s() -> float:
    # Jobs stop themselves just before arq's timeout so failure handling still runs.
    settings = get_settings()
    timeout_s = max(1, int(settings.queue_job_timeout_s))
    return float(max(1, timeout_s - max(0, int(settings.queue_job_timeout_margin_s))))
