from __future__ import annotations

from datetime import datetime
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.errors import is_terminal_error
from opsuite.core.timeutils import utc_now
from opsuite.domain.models import DeadLetterJob
from opsuite.persistence.db import SessionLocal
from opsuite.services.audit import sanitize_metadata
from opsuite.services.queue import DeadLetterRecord
from opsuite.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def should_dead_letter(*, attempts_made: int, max_attempts: int, exc: BaseException | None = None) -> bool:
    # Dead-letter on the final allowed attempt, or immediately for failures retries cannot fix.
    if exc is not None and is_terminal_error(exc):
        return True
    return attempts_made >= max_attempts


def build_dead_letter_record(
    *,
    original_queue: str,
    original_job_id: str,
    tenant_id: str | None,
    failed_data: dict[str, Any],
    failure_reason: str,
    attempts_made: int,
    failed_at: datetime | None = None,
) -> DeadLetterRecord:
    return DeadLetterRecord(
        original_queue=original_queue,
        original_job_id=original_job_id,
        tenant_id=tenant_id,
        failed_data=sanitize_metadata(failed_data),
        failure_reason=failure_reason,
        failed_at=failed_at or utc_now(),
        attempts_made=attempts_made,
    )


async def _persist(session: AsyncSession, record: DeadLetterRecord) -> DeadLetterJob:
    row = DeadLetterJob(
        id=uuid4().hex,
        original_queue=record.original_queue,
        original_job_id=record.original_job_id,
        tenant_id=record.tenant_id,
        failed_data=record.failed_data,
        failure_reason=record.failure_reason,
        failed_at=record.failed_at,
        attempts_made=record.attempts_made,
    )
    session.add(row)
    await session.commit()
    return row


async def route_to_dead_letter(
    record: DeadLetterRecord,
    *,
    session: AsyncSession | None = None,
) -> DeadLetterJob | None:
    # Best-effort: a failed dead-letter write is logged and never masks the original job error.
    try:
        if session is None:
            async with SessionLocal() as dlq_session:
                row = await _persist(dlq_session, record)
        else:
            row = await _persist(session, record)
    except Exception as exc:  # noqa: BLE001 - never mask the original job error.
        if session is not None:
            await session.rollback()
        increment_counter("dead_letter.write_failed")
        logger.error(
            "dead_letter_write_failed queue=%s job_id=%s tenant_id=%s",
            record.original_queue,
            record.original_job_id,
            record.tenant_id,
            exc_info=exc,
        )
        return None
    increment_counter(f"dead_letter.{record.original_queue}")
    logger.warning(
        "job_dead_lettered queue=%s job_id=%s tenant_id=%s attempts=%s reason=%s",
        record.original_queue,
        record.original_job_id,
        record.tenant_id,
        record.attempts_made,
        record.failure_reason,
    )
    return row


async def handle_job_failure(
    *,
    exc: BaseException,
    original_queue: str,
    original_job_id: str,
    tenant_id: str | None,
    failed_data: dict[str, Any],
    attempts_made: int,
    max_attempts: int,
) -> bool:
    # Returns True when the job was routed to the dead-letter store on this attempt.
    if not should_dead_letter(attempts_made=attempts_made, max_attempts=max_attempts, exc=exc):
        return False
    record = build_dead_letter_record(
        original_queue=original_queue,
        original_job_id=original_job_id,
        tenant_id=tenant_id,
        failed_data=failed_data,
        failure_reason=str(exc) or exc.__class__.__name__,
        attempts_made=attempts_made,
    )
    await route_to_dead_letter(record)
    return True


async def list_dead_letters(
    *,
    session: AsyncSession,
    queue_name: str | None = None,
    tenant_id: str | None = None,
    limit: int = 50,
) -> list[DeadLetterJob]:
    query = select(DeadLetterJob)
    if queue_name:
        query = query.where(DeadLetterJob.original_queue == queue_name)
    if tenant_id:
        query = query.where(DeadLetterJob.tenant_id == tenant_id)
    rows = (
        await session.execute(
            query.order_by(DeadLetterJob.failed_at.desc(), DeadLetterJob.id.asc()).limit(max(1, min(limit, 250)))
        )
    ).scalars().all()
    return list(rows)
