from __future__ import annotations

import pytest
from sqlalchemy import select

from opsuite.core.errors import (
    ActionApprovalNotFoundError,
    ActionApprovalStateError,
    CapabilityConfigError,
    CapabilityExecutionError,
    CapabilityNotRegisteredError,
)
from opsuite.domain.audit_log import CompletedEntry, ExecutingEntry, FailedEntry
from opsuite.domain.models import ActionApproval, Notification
from opsuite.persistence.db import SessionLocal
from opsuite.services.actions.approvals import get_approval_task, load_audit_log
from opsuite.services.actions.orchestrator import ExecutionProgress, execute_action
from opsuite.services.capabilities import CapabilityInvocation, CapabilityRegistry
from opsuite.services.hashing import compute_payload_hash
from opsuite.services.queue import ActionExecutionJobPayload
from opsuite.services.telemetry import counters_snapshot
from opsuite.tests.utils.seed import create_approval


_PAYLOAD = {"moduleSlug": "crm", "capability": "sync_contact", "contactId": 7}


def _job(approval_id: str, *, tenant_id: str = "t-actions", **overrides) -> ActionExecutionJobPayload:
    data = {
        "tenantId": tenant_id,
        "approvalId": approval_id,
        "moduleSlug": "crm",
        "capability": "sync_contact",
        "approvedBy": "u-approver",
        "createdBy": "u-requester",
    }
    data.update(overrides)
    return ActionExecutionJobPayload.model_validate(data)


def _counting_registry(calls: list[CapabilityInvocation], *, fail_with: Exception | None = None) -> CapabilityRegistry:
    registry = CapabilityRegistry()

    async def _sync_contact(invocation: CapabilityInvocation) -> dict:
        calls.append(invocation)
        if fail_with is not None:
            raise fail_with
        return {"synced": invocation.payload["contactId"]}

    registry.register("crm", "sync_contact", _sync_contact)
    return registry


async def _status(approval_id: str) -> str:
    async with SessionLocal() as session:
        approval = await session.get(ActionApproval, approval_id)
        return approval.status


@pytest.mark.asyncio
async def test_duplicate_delivery_replays_without_second_invocation() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload=dict(_PAYLOAD))
    calls: list[CapabilityInvocation] = []
    registry = _counting_registry(calls)
    job = _job(approval_id, undoPayload={"contactId": 7, "restore": True})

    first = await execute_action(job, job_id="action:1", registry=registry)
    second = await execute_action(job, job_id="action:1", registry=registry)

    assert len(calls) == 1
    assert calls[0].actor_id == "u-approver"
    assert calls[0].task_id is not None
    assert first.success is True and first.skipped is False
    assert first.result == {"synced": 7}
    assert second.success is True and second.skipped is True
    assert second.payload_hash == first.payload_hash == compute_payload_hash(_PAYLOAD, "sync_contact")
    assert second.as_dict()["skipped"] is True
    assert counters_snapshot()["actions.replayed"] == 1

    async with SessionLocal() as session:
        approval = await session.get(ActionApproval, approval_id)
        assert approval.status == "executed"
        assert approval.executed_at is not None
        task = await get_approval_task(session=session, approval_id=approval_id)
        assert task.status == "completed"
        assert task.result == {"synced": 7}
        assert task.queue_name == "action-executor"
        entries = await load_audit_log(session=session, approval_id=approval_id)
        notifications = (
            await session.execute(select(Notification).where(Notification.tenant_id == "t-actions"))
        ).scalars().all()
    assert [entry.event for entry in entries] == ["executing", "completed"]
    completed = entries[-1]
    assert isinstance(completed, CompletedEntry)
    assert completed.payload_hash == first.payload_hash
    assert completed.undo_payload == {"contactId": 7, "restore": True}
    assert completed.module_slug == "crm"
    assert [row.event_type for row in notifications] == ["action.executed"]


@pytest.mark.asyncio
async def test_progress_phases_are_reported_in_order() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload=dict(_PAYLOAD))
    phases: list[ExecutionProgress] = []

    async def _progress(progress: ExecutionProgress) -> None:
        phases.append(progress)

    await execute_action(_job(approval_id), job_id="action:p", progress=_progress, registry=_counting_registry([]))
    assert [item.phase for item in phases] == ["initializing", "validating", "executing", "finalizing", "completed"]
    assert [item.percentage for item in phases] == [5, 25, 55, 85, 100]


@pytest.mark.asyncio
async def test_broken_progress_sink_does_not_fail_execution() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload=dict(_PAYLOAD))

    async def _broken(progress: ExecutionProgress) -> None:
        raise ConnectionError("redis gone")

    result = await execute_action(_job(approval_id), job_id="action:b", progress=_broken, registry=_counting_registry([]))
    assert result.success is True
    assert await _status(approval_id) == "executed"


@pytest.mark.asyncio
async def test_cross_tenant_approval_is_not_found() -> None:
    approval_id = await create_approval(tenant_id="t-owner", payload=dict(_PAYLOAD))
    with pytest.raises(ActionApprovalNotFoundError):
        await execute_action(_job(approval_id, tenant_id="t-intruder"), job_id="action:x", registry=_counting_registry([]))
    assert await _status(approval_id) == "approved"

    with pytest.raises(ActionApprovalNotFoundError):
        await execute_action(_job("appr-missing"), job_id="action:y", registry=_counting_registry([]))


@pytest.mark.asyncio
async def test_unapproved_action_is_rejected_and_left_untouched() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload=dict(_PAYLOAD), status="pending")
    calls: list[CapabilityInvocation] = []
    with pytest.raises(ActionApprovalStateError, match="must be approved"):
        await execute_action(_job(approval_id), job_id="action:s", registry=_counting_registry(calls))
    assert calls == []
    assert await _status(approval_id) == "pending"


@pytest.mark.asyncio
async def test_missing_capability_is_a_config_error() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload={"contactId": 7})
    job = _job(approval_id, moduleSlug=None, capability=None)
    with pytest.raises(CapabilityConfigError, match="missing moduleSlug or capability"):
        await execute_action(job, job_id="action:c", registry=_counting_registry([]))
    assert await _status(approval_id) == "failed"


@pytest.mark.asyncio
async def test_unregistered_capability_fails_the_approval() -> None:
    approval_id = await create_approval(
        tenant_id="t-actions", payload={"moduleSlug": "billing", "capability": "refund"}
    )
    job = _job(approval_id, moduleSlug="billing", capability="refund")
    with pytest.raises(CapabilityNotRegisteredError):
        await execute_action(job, job_id="action:u", registry=_counting_registry([]))
    async with SessionLocal() as session:
        entries = await load_audit_log(session=session, approval_id=approval_id)
    assert isinstance(entries[-1], FailedEntry)
    assert entries[-1].reason == "Capability billing.refund is not registered"


@pytest.mark.asyncio
async def test_capability_failure_is_recorded_and_redelivery_resumes() -> None:
    approval_id = await create_approval(tenant_id="t-actions", payload=dict(_PAYLOAD))
    calls: list[CapabilityInvocation] = []
    job = _job(approval_id)

    with pytest.raises(CapabilityExecutionError, match="crm unavailable"):
        await execute_action(job, job_id="action:r", registry=_counting_registry(calls, fail_with=RuntimeError("crm unavailable")))

    async with SessionLocal() as session:
        approval = await session.get(ActionApproval, approval_id)
        assert approval.status == "failed"
        task = await get_approval_task(session=session, approval_id=approval_id)
        assert task.status == "failed"
        assert task.error == "crm unavailable"
        entries = await load_audit_log(session=session, approval_id=approval_id)
        notifications = (
            await session.execute(select(Notification).where(Notification.event_type == "action.failed"))
        ).scalars().all()
    assert [entry.event for entry in entries] == ["executing", "failed"]
    assert isinstance(entries[0], ExecutingEntry) and entries[0].job_id == "action:r"
    assert entries[1].reason == "crm unavailable"
    assert len(notifications) == 1
    assert notifications[0].payload_json["error"] == "crm unavailable"

    # A different job cannot pick up a failed approval.
    with pytest.raises(ActionApprovalStateError):
        await execute_action(job, job_id="action:other", registry=_counting_registry(calls))

    # The queue retry of the same job resumes it.
    result = await execute_action(job, job_id="action:r", registry=_counting_registry(calls))
    assert result.skipped is False
    assert len(calls) == 2
    assert await _status(approval_id) == "executed"
