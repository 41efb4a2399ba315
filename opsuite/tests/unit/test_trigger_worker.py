from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

from arq import Retry
import pytest
from sqlalchemy import select

from opsuite.core.errors import JobAttemptsExhaustedError, JobTimeoutError
from opsuite.domain.models import DeadLetterJob
from opsuite.persistence.db import SessionLocal

from opsuite.services.queue import TriggerSweepJobPayload
from opsuite.services.triggers import evaluator
from opsuite.services.triggers.evaluator import SweepSummary, TenantSweepResult
from opsuite.workers import trigger_worker
from opsuite.workers.trigger_worker import process_sweep_job, schedule_due_sweep, sweep_job_id


_NOW = datetime(2026, 3, 2, 12, 0, 20, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_scheduler_enqueues_due_slot_once(monkeypatch) -> None:
    enqueued: list[tuple[TriggerSweepJobPayload, str | None]] = []

    async def _enqueue_stub(payload: TriggerSweepJobPayload, *, job_id: str | None = None) -> str | None:
        enqueued.append((payload, job_id))
        return job_id

    monkeypatch.setattr(trigger_worker, "enqueue_trigger_sweep", _enqueue_stub)
    # Default cadence is every ten minutes; 12:00 is inside the first look-back minute.
    fired = await schedule_due_sweep(last_checked=None, now=_NOW)
    assert fired == datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
    assert enqueued[0][1] == sweep_job_id(fired)
    assert enqueued[0][0].tenant_id is None

    assert await schedule_due_sweep(last_checked=_NOW, now=_NOW + timedelta(minutes=5)) is None
    assert len(enqueued) == 1


@pytest.mark.asyncio
async def test_sweep_job_returns_summary(monkeypatch) -> None:
    async def _sweep(*, tenant_id=None, now=None):  # type: ignore[override]
        return SweepSummary(
            run_id="run-1",
            triggered=2,
            tenants=[TenantSweepResult(tenant_id="t-1", triggered=2)],
            duration_ms=12,
        )

    monkeypatch.setattr(evaluator, "run_trigger_sweep", _sweep)
    result = await process_sweep_job(TriggerSweepJobPayload(), job_id="trigger-sweep:1", attempt=1, max_attempts=3)
    assert result == {
        "runId": "run-1",
        "triggered": 2,
        "tenants": [{"tenantId": "t-1", "triggered": 2}],
        "durationMs": 12,
    }


@pytest.mark.asyncio
async def test_failed_sweep_retries_before_final_attempt(monkeypatch) -> None:
    async def _broken(*, tenant_id=None, now=None):  # type: ignore[override]
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(evaluator, "run_trigger_sweep", _broken)
    with pytest.raises(Retry):
        await process_sweep_job(
            TriggerSweepJobPayload(tenant_id="t-1"), job_id="trigger-sweep:2", attempt=1, max_attempts=3
        )


async def _dead_letter_reasons() -> list[str]:
    async with SessionLocal() as session:
        rows = (await session.execute(select(DeadLetterJob))).scalars().all()
        return [row.failure_reason for row in rows]


@pytest.mark.asyncio
async def test_sweep_past_deadline_is_dead_lettered_on_final_attempt(monkeypatch) -> None:
    async def _stuck(*, tenant_id=None, now=None):  # type: ignore[override]
        await asyncio.sleep(5)

    monkeypatch.setattr(evaluator, "run_trigger_sweep", _stuck)
    monkeypatch.setattr(trigger_worker, "job_deadline_s", lambda: 0.05)
    with pytest.raises(Retry):
        await process_sweep_job(TriggerSweepJobPayload(), job_id="trigger-sweep:3", attempt=1, max_attempts=3)
    with pytest.raises(JobTimeoutError):
        await process_sweep_job(TriggerSweepJobPayload(), job_id="trigger-sweep:3", attempt=3, max_attempts=3)
    assert await _dead_letter_reasons() == ["Trigger sweep timed out after 0.05s"]


@pytest.mark.asyncio
async def test_sweep_redelivered_past_retry_budget_is_dead_lettered(monkeypatch) -> None:
    calls: list[str | None] = []

    async def _sweep(*, tenant_id=None, now=None):  # type: ignore[override]
        calls.append(tenant_id)

    monkeypatch.setattr(evaluator, "run_trigger_sweep", _sweep)
    with pytest.raises(JobAttemptsExhaustedError):
        await process_sweep_job(TriggerSweepJobPayload(), job_id="trigger-sweep:4", attempt=4, max_attempts=3)
    assert calls == []
    assert await _dead_letter_reasons() == ["Job trigger-sweep:4 exceeded 3 attempts"]
