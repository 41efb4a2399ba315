from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

from arq import Retry
from arq.connections import RedisSettings

from opsuite.core.config import get_settings
from opsuite.core.errors import JobAttemptsExhaustedError, JobTimeoutError
from opsuite.core.logging import configure_logging
from opsuite.services.actions import orchestrator
from opsuite.services.capabilities import register_default_capabilities
from opsuite.services.dead_letter import handle_job_failure
from opsuite.services.queue import (
    ActionExecutionJobPayload,
    action_job_id,
    defer_delta,
    job_deadline_s,
    retry_backoff_ms,
    set_worker_heartbeat,
)
from opsuite.services.telemetry import record_job


logger = logging.getLogger(__name__)

_PROGRESS_TTL_S = 3600


def job_progress_key(job_id: str) -> str:
    return f"opsuite:job-progress:{job_id}"


def _progress_writer(redis, job_id: str) -> orchestrator.ProgressCallback:
    # Log each execution phase and publish the latest one so operators can poll long-running actions.
    async def _write(progress: orchestrator.ExecutionProgress) -> None:
        logger.info(
            "action_job_progress job_id=%s phase=%s percentage=%s",
            job_id,
            progress.phase,
            progress.percentage,
        )
        if redis is not None:
            await redis.set(job_progress_key(job_id), json.dumps(progress.as_dict()), ex=_PROGRESS_TTL_S)

    return _write


async def _dead_letter_attempt(
    payload: ActionExecutionJobPayload,
    *,
    exc: BaseException,
    job_id: str,
    attempt: int,
    max_attempts: int,
) -> bool:
    settings = get_settings()
    return await handle_job_failure(
        exc=exc,
        original_queue=settings.action_executor_queue_name,
        original_job_id=job_id,
        tenant_id=payload.tenant_id,
        failed_data=payload.to_job_data(),
        attempts_made=attempt,
        max_attempts=max_attempts,
    )


async def process_action_job(
    payload: ActionExecutionJobPayload,
    *,
    job_id: str,
    attempt: int,
    max_attempts: int,
    progress: orchestrator.ProgressCallback | None = None,
) -> dict[str, Any]:
    # Retry retryable failures with backoff; dead-letter terminal failures and the final attempt.
    settings = get_settings()
    queue_name = settings.action_executor_queue_name
    started = time.monotonic()
    if attempt > max_attempts:
        # Crash redeliveries can outlive the retry budget; fail the approval without running it.
        exhausted = JobAttemptsExhaustedError(f"Job {job_id} exceeded {max_attempts} attempts")
        await orchestrator.abandon_action(payload, job_id=job_id, message=str(exhausted))
        record_job(queue=queue_name, outcome="failed", duration_ms=(time.monotonic() - started) * 1000)
        await _dead_letter_attempt(payload, exc=exhausted, job_id=job_id, attempt=attempt, max_attempts=max_attempts)
        raise exhausted
    try:
        result = await orchestrator.execute_action(
            payload,
            job_id=job_id,
            queue_name=queue_name,
            progress=progress,
            timeout_s=job_deadline_s(),
        )
    except asyncio.CancelledError:
        record_job(queue=queue_name, outcome="failed", duration_ms=(time.monotonic() - started) * 1000)
        # arq does not retry a job it timed out, so a cancelled final attempt must surface here.
        cancelled = JobTimeoutError(f"Job {job_id} was cancelled on attempt {attempt}")
        await _dead_letter_attempt(payload, exc=cancelled, job_id=job_id, attempt=attempt, max_attempts=max_attempts)
        raise
    except Exception as exc:
        record_job(queue=queue_name, outcome="failed", duration_ms=(time.monotonic() - started) * 1000)
        dead_lettered = await _dead_letter_attempt(
            payload, exc=exc, job_id=job_id, attempt=attempt, max_attempts=max_attempts
        )
        if dead_lettered:
            raise
        delay_ms = retry_backoff_ms(job_id=job_id, attempt_no=attempt)
        logger.warning(
            "action_job_retry_scheduled job_id=%s attempt=%s delay_ms=%s",
            job_id,
            attempt,
            delay_ms,
        )
        raise Retry(defer=defer_delta(delay_ms)) from exc
    record_job(queue=queue_name, outcome="succeeded", duration_ms=(time.monotonic() - started) * 1000)
    return result.as_dict()


async def execute_action(ctx, payload: dict) -> dict[str, Any]:
    # Parse and validate payloads in the worker to enforce the job schema.
    job_payload = ActionExecutionJobPayload.model_validate(payload)
    settings = get_settings()
    job_id = ctx.get("job_id") or action_job_id(job_payload.approval_id)
    attempt = int(ctx.get("job_try", 1))
    return await process_action_job(
        job_payload,
        job_id=job_id,
        attempt=attempt,
        max_attempts=max(1, int(settings.queue_max_retries)),
        progress=_progress_writer(ctx.get("redis"), job_id),
    )


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        try:
            await set_worker_heartbeat(queue_name=settings.action_executor_queue_name)
        except Exception:  # noqa: BLE001 - keep heartbeats alive across transient Redis errors
            logger.warning("action_worker_heartbeat_failed", exc_info=True)
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    register_default_capabilities()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.action_executor_queue_name
    max_jobs = max(1, int(settings.queue_action_executor_concurrency))
    # One extra try lets the job itself dead-letter redeliveries past the retry budget.
    max_tries = max(1, int(settings.queue_max_retries)) + 1
    job_timeout = settings.queue_job_timeout_s
    functions = [execute_action]
    on_startup = _startup
    on_shutdown = _shutdown
