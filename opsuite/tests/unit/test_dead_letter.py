from __future__ import annotations

import asyncio

from arq import Retry
import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from opsuite.core.errors import (
    ActionApprovalNotFoundError,
    CapabilityExecutionError,
    JobAttemptsExhaustedError,
    JobTimeoutError,
)
from opsuite.domain.models import ActionApproval, DeadLetterJob
from opsuite.persistence.db import SessionLocal
from opsuite.services import dead_letter as dead_letter_module
from opsuite.services.actions import orchestrator
from opsuite.services.capabilities import get_capability_registry
from opsuite.services.dead_letter import (
    build_dead_letter_record,
    handle_job_failure,
    route_to_dead_letter,
    should_dead_letter,
)
from opsuite.services.queue import ActionExecutionJobPayload
from opsuite.services.telemetry import counters_snapshot
from opsuite.tests.utils.seed import create_approval
from opsuite.workers import action_worker
from opsuite.workers.action_worker import process_action_job


def _payload() -> ActionExecutionJobPayload:
    return ActionExecutionJobPayload(
        tenant_id="t-dlq",
        approval_id="appr-1",
        module_slug="crm",
        capability="sync_contact",
        payload={"contactId": 7, "apiToken": "secret"},
    )


async def _dead_letters() -> list[DeadLetterJob]:
    async with SessionLocal() as session:
        return list((await session.execute(select(DeadLetterJob))).scalars().all())


def test_should_dead_letter_on_final_attempt_or_terminal_error() -> None:
    assert should_dead_letter(attempts_made=1, max_attempts=3) is False
    assert should_dead_letter(attempts_made=3, max_attempts=3) is True
    assert should_dead_letter(attempts_made=1, max_attempts=3, exc=CapabilityExecutionError("x")) is False
    assert should_dead_letter(attempts_made=1, max_attempts=3, exc=ActionApprovalNotFoundError()) is True


@pytest.mark.asyncio
async def test_only_final_attempt_is_dead_lettered(monkeypatch) -> None:
    async def _failing(job, *, job_id, queue_name=None, progress=None, registry=None, timeout_s=None):  # type: ignore[override]
        raise CapabilityExecutionError("crm timeout")

    monkeypatch.setattr(orchestrator, "execute_action", _failing)

    with pytest.raises(Retry):
        await process_action_job(_payload(), job_id="action:appr-1", attempt=1, max_attempts=3)
    with pytest.raises(Retry):
        await process_action_job(_payload(), job_id="action:appr-1", attempt=2, max_attempts=3)
    assert await _dead_letters() == []

    with pytest.raises(CapabilityExecutionError):
        await process_action_job(_payload(), job_id="action:appr-1", attempt=3, max_attempts=3)
    rows = await _dead_letters()
    assert len(rows) == 1
    row = rows[0]
    assert row.original_queue == "action-executor"
    assert row.original_job_id == "action:appr-1"
    assert row.tenant_id == "t-dlq"
    assert row.failure_reason == "crm timeout"
    assert row.attempts_made == 3
    assert row.failed_data["approvalId"] == "appr-1"
    assert row.failed_data["payload"]["apiToken"] == "[REDACTED]"
    assert counters_snapshot()["jobs.action-executor.failed"] == 3


@pytest.mark.asyncio
async def test_terminal_error_skips_retries(monkeypatch) -> None:
    async def _missing(job, *, job_id, queue_name=None, progress=None, registry=None, timeout_s=None):  # type: ignore[override]
        raise ActionApprovalNotFoundError()

    monkeypatch.setattr(orchestrator, "execute_action", _missing)
    with pytest.raises(ActionApprovalNotFoundError):
        await process_action_job(_payload(), job_id="action:appr-1", attempt=1, max_attempts=3)
    rows = await _dead_letters()
    assert [row.failure_reason for row in rows] == ["Action approval not found"]


@pytest.mark.asyncio
async def test_dead_letter_write_failure_is_logged_not_raised(monkeypatch) -> None:
    async def _broken_persist(session, record):  # type: ignore[override]
        raise SQLAlchemyError("dead letter table locked")

    monkeypatch.setattr(dead_letter_module, "_persist", _broken_persist)
    record = build_dead_letter_record(
        original_queue="action-executor",
        original_job_id="action:appr-9",
        tenant_id="t-dlq",
        failed_data={},
        failure_reason="boom",
        attempts_made=3,
    )
    assert await route_to_dead_letter(record) is None
    assert counters_snapshot()["dead_letter.write_failed"] == 1


@pytest.mark.asyncio
async def test_unreachable_dead_letter_store_keeps_original_error(monkeypatch) -> None:
    def _refused():  # type: ignore[no-untyped-def]
        raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(dead_letter_module, "SessionLocal", _refused)
    assert await handle_job_failure(
        exc=CapabilityExecutionError("crm timeout"),
        original_queue="action-executor",
        original_job_id="action:appr-1:d1",
        tenant_id="t-dlq",
        failed_data={},
        attempts_made=3,
        max_attempts=3,
    ) is True
    assert counters_snapshot()["dead_letter.write_failed"] == 1

    async def _failing(job, *, job_id, queue_name=None, progress=None, registry=None, timeout_s=None):  # type: ignore[override]
        raise CapabilityExecutionError("crm timeout")

    monkeypatch.setattr(orchestrator, "execute_action", _failing)
    with pytest.raises(CapabilityExecutionError, match="crm timeout"):
        await process_action_job(_payload(), job_id="action:appr-1:d1", attempt=3, max_attempts=3)


def _register_slow_capability() -> None:
    async def _slow(invocation):  # type: ignore[no-untyped-def]
        await asyncio.sleep(5)
        return {"done": True}

    get_capability_registry().register("crm", "slow_sync", _slow)


async def _slow_approval(status: str = "approved") -> tuple[str, ActionExecutionJobPayload]:
    approval_id = await create_approval(
        tenant_id="t-dlq", payload={"moduleSlug": "crm", "capability": "slow_sync"}, status=status
    )
    job = ActionExecutionJobPayload(
        tenant_id="t-dlq", approval_id=approval_id, module_slug="crm", capability="slow_sync", approved_by="u-approver"
    )
    return approval_id, job


async def _approval_status(approval_id: str) -> str:
    async with SessionLocal() as session:
        return (await session.get(ActionApproval, approval_id)).status


@pytest.mark.asyncio
async def test_capability_past_deadline_fails_and_dead_letters_final_attempt(monkeypatch) -> None:
    _register_slow_capability()
    monkeypatch.setattr(action_worker, "job_deadline_s", lambda: 0.05)
    approval_id, job = await _slow_approval()

    with pytest.raises(JobTimeoutError, match="crm.slow_sync timed out"):
        await process_action_job(job, job_id="action:slow:d1", attempt=3, max_attempts=3)

    assert await _approval_status(approval_id) == "failed"
    rows = await _dead_letters()
    assert len(rows) == 1
    assert rows[0].original_job_id == "action:slow:d1"
    assert "timed out" in rows[0].failure_reason


@pytest.mark.asyncio
async def test_job_cancelled_by_queue_timeout_is_not_left_executing() -> None:
    _register_slow_capability()
    approval_id, job = await _slow_approval()
    # arq enforces job_timeout by cancelling the job coroutine.
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            process_action_job(job, job_id="action:slow:d2", attempt=1, max_attempts=3), 0.2
        )
    assert await _approval_status(approval_id) == "failed"
    assert await _dead_letters() == []

    final_id, final_job = await _slow_approval()
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(
            process_action_job(final_job, job_id="action:slow:d3", attempt=3, max_attempts=3), 0.2
        )
    assert await _approval_status(final_id) == "failed"
    rows = await _dead_letters()
    assert [row.original_job_id for row in rows] == ["action:slow:d3"]
    assert rows[0].failure_reason == "Job action:slow:d3 was cancelled on attempt 3"


@pytest.mark.asyncio
async def test_redelivery_past_retry_budget_is_dead_lettered_without_running() -> None:
    calls: list[str] = []

    async def _tracked(invocation):  # type: ignore[no-untyped-def]
        calls.append(invocation.job_id)
        return {}

    get_capability_registry().register("crm", "slow_sync", _tracked)
    approval_id, job = await _slow_approval(status="executing")
    with pytest.raises(JobAttemptsExhaustedError):
        await process_action_job(job, job_id="action:slow:d4", attempt=4, max_attempts=3)

    assert calls == []
    assert await _approval_status(approval_id) == "failed"
    rows = await _dead_letters()
    assert [row.failure_reason for row in rows] == ["Job action:slow:d4 exceeded 3 attempts"]
    assert rows[0].attempts_made == 4
