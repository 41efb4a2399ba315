from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
import logging
import time
from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from opsuite.core.config import get_settings
from opsuite.core.errors import JobAttemptsExhaustedError, JobTimeoutError
from opsuite.core.logging import configure_logging
from opsuite.core.timeutils import utc_now
from opsuite.services.dead_letter import handle_job_failure
from opsuite.services.queue import (
    TriggerSweepJobPayload,
    defer_delta,
    enqueue_trigger_sweep,
    job_deadline_s,
    retry_backoff_ms,
    set_worker_heartbeat,
)
from opsuite.services.telemetry import record_job
from opsuite.services.triggers import evaluator
from opsuite.services.triggers.cron import next_fire_time


logger = logging.getLogger(__name__)


def sweep_job_id(fire_time: datetime) -> str:
    # Several trigger workers may schedule the same slot; arq keeps only one job per id.
    return f"trigger-sweep:{int(fire_time.timestamp())}"


async def _run_sweep(payload: TriggerSweepJobPayload):
    deadline_s = job_deadline_s()
    try:
        async with asyncio.timeout(deadline_s):
            return await evaluator.run_trigger_sweep(tenant_id=payload.tenant_id)
    except TimeoutError as exc:
        raise JobTimeoutError(f"Trigger sweep timed out after {deadline_s:g}s") from exc


async def process_sweep_job(
    payload: TriggerSweepJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_attempts: int,
) -> dict[str, Any]:
    settings = get_settings()
    queue_name = settings.trigger_runner_queue_name
    started = time.monotonic()

    async def _dead_letter(exc: BaseException) -> bool:
        return await handle_job_failure(
            exc=exc,
            original_queue=queue_name,
            original_job_id=job_id,
            tenant_id=payload.tenant_id,
            failed_data=payload.to_job_data(),
            attempts_made=attempt,
            max_attempts=max_attempts,
        )

    if attempt > max_attempts:
        exhausted = JobAttemptsExhaustedError(f"Job {job_id} exceeded {max_attempts} attempts")
        record_job(queue=queue_name, outcome="failed", duration_ms=0)
        await _dead_letter(exhausted)
        raise exhausted
    try:
        summary = await _run_sweep(payload)
    except asyncio.CancelledError:
        record_job(queue=queue_name, outcome="failed", duration_ms=(time.monotonic() - started) * 1000)
        await _dead_letter(JobTimeoutError(f"Job {job_id} was cancelled on attempt {attempt}"))
        raise
    except Exception as exc:
        record_job(queue=queue_name, outcome="failed", duration_ms=(time.monotonic() - started) * 1000)
        if await _dead_letter(exc):
            raise
        raise Retry(defer=defer_delta(retry_backoff_ms(job_id=job_id, attempt_no=attempt))) from exc
    record_job(queue=queue_name, outcome="succeeded", duration_ms=(time.monotonic() - started) * 1000)
    return summary.as_dict()


async def run_trigger_sweep(ctx, payload: dict | None = None) -> dict[str, Any]:
    job_payload = TriggerSweepJobPayload.model_validate(payload or {})
    settings = get_settings()
    job_id = ctx.get("job_id") or "trigger-sweep:adhoc"
    attempt = int(ctx.get("job_try", 1))
    return await process_sweep_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_attempts=max(1, int(settings.queue_max_retries)),
    )


async def schedule_due_sweep(*, last_checked: datetime | None, now: datetime) -> datetime | None:
    # Enqueue the recurring sweep when its cron slot has passed; returns the slot enqueued.
    settings = get_settings()
    base = last_checked or now - timedelta(seconds=60)
    fire_time = next_fire_time(settings.trigger_runner_cron, base)
    if fire_time is None or fire_time > now:
        return None
    await enqueue_trigger_sweep(
        TriggerSweepJobPayload(triggered_by="scheduler", requested_at=now),
        job_id=sweep_job_id(fire_time),
    )
    return fire_time


async def _scheduler_loop() -> None:
    # Poll the sweep cron on a bounded cadence; missed slots collapse into one sweep.
    settings = get_settings()
    interval_s = max(1, int(settings.trigger_scheduler_poll_interval_s))
    last_checked: datetime | None = None
    while True:
        now = utc_now()
        try:
            fired = await schedule_due_sweep(last_checked=last_checked, now=now)
            if fired is not None:
                logger.info("trigger_sweep_enqueued slot=%s", fired.isoformat())
                last_checked = now
            elif last_checked is None:
                last_checked = now - timedelta(seconds=60)
        except Exception:  # noqa: BLE001 - keep scheduler alive while surfacing failures in worker logs.
            logger.exception("trigger sweep scheduler failed")
        await asyncio.sleep(interval_s)


async def _heartbeat_loop() -> None:
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(queue_name=settings.trigger_runner_queue_name)
        except Exception:  # noqa: BLE001 - keep heartbeats alive across transient Redis errors
            logger.warning("trigger_worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    # Start the recurring sweep scheduler with the worker so sweeps continue without API traffic.
    ctx["scheduler_task"] = asyncio.create_task(_scheduler_loop())
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    for key in ("scheduler_task", "heartbeat_task"):
        task = ctx.get(key)
        if task:
            task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.trigger_runner_queue_name
    max_jobs = max(1, int(settings.queue_trigger_runner_concurrency))
    # One extra try lets the job itself dead-letter redeliveries past the retry budget.
    max_tries = max(1, int(settings.queue_max_retries)) + 1
    job_timeout = settings.queue_job_timeout_s
    functions = [run_trigger_sweep]
    on_startup = _startup
    on_shutdown = _shutdown
