from __future__ import annotations

import pytest

from opsuite.core.errors import ActionApprovalNotFoundError, ActionApprovalStateError
from opsuite.domain.audit_log import EnqueuedEntry, FailedEntry, RequestedEntry
from opsuite.persistence.db import SessionLocal
from opsuite.services.actions import approvals as approvals_module
from opsuite.services.actions.approvals import (
    approve_action,
    get_approval_task,
    load_audit_log,
    reject_action,
    submit_action_approval,
)
from opsuite.services.queue import ActionExecutionJobPayload


_PAYLOAD = {
    "moduleSlug": "crm",
    "capability": "sync_contact",
    "contactId": 7,
    "undoPayload": {"contactId": 7, "restore": True},
}


@pytest.mark.asyncio
async def test_approve_creates_task_and_enqueues_job(monkeypatch) -> None:
    enqueued: list[tuple[ActionExecutionJobPayload, str | None]] = []

    async def _enqueue_stub(payload: ActionExecutionJobPayload, *, job_id: str | None = None) -> str:
        enqueued.append((payload, job_id))
        return job_id or "job-generated"

    monkeypatch.setattr(approvals_module, "enqueue_action_execution", _enqueue_stub)
    async with SessionLocal() as session:
        approval = await submit_action_approval(
            session=session,
            tenant_id="t-approve",
            user_id="u-requester",
            source="assistant",
            payload=dict(_PAYLOAD),
            risk_score=35,
        )
        approval_id = approval.id
        result = await approve_action(
            session=session, tenant_id="t-approve", user_id="u-approver", approval_id=approval_id
        )
        assert result.approval.status == "approved"
        assert result.task.status == "pending"
        assert result.task.module_slug == "crm"
        assert result.job_id.startswith(f"action:{approval_id}:")
        entries = await load_audit_log(session=session, approval_id=approval_id)

    assert [entry.event for entry in entries] == ["requested", "approved", "enqueued"]
    assert isinstance(entries[0], RequestedEntry) and entries[0].risk_score == 35
    assert isinstance(entries[2], EnqueuedEntry)
    assert entries[2].task_id == result.task.id
    job, job_id = enqueued[0]
    assert job_id == result.job_id
    assert job.capability == "sync_contact"
    assert job.undo_payload == {"contactId": 7, "restore": True}
    assert job.to_job_data()["approvedBy"] == "u-approver"


@pytest.mark.asyncio
async def test_enqueue_failure_marks_approval_failed(monkeypatch) -> None:
    async def _enqueue_down(payload: ActionExecutionJobPayload, *, job_id: str | None = None) -> str:
        raise ConnectionError("redis refused connection")

    monkeypatch.setattr(approvals_module, "enqueue_action_execution", _enqueue_down)
    async with SessionLocal() as session:
        approval = await submit_action_approval(
            session=session, tenant_id="t-approve", user_id="u-1", source="assistant", payload=dict(_PAYLOAD)
        )
        approval_id = approval.id
        with pytest.raises(ConnectionError):
            await approve_action(session=session, tenant_id="t-approve", user_id="u-2", approval_id=approval_id)
    async with SessionLocal() as session:
        entries = await load_audit_log(session=session, approval_id=approval_id)
        task = await get_approval_task(session=session, approval_id=approval_id)
    assert isinstance(entries[-1], FailedEntry)
    assert entries[-1].reason == "Queue enqueue failed: redis refused connection"
    assert task.status == "failed"


@pytest.mark.asyncio
async def test_reject_and_invalid_transitions() -> None:
    async with SessionLocal() as session:
        approval = await submit_action_approval(
            session=session, tenant_id="t-reject", user_id="u-1", source="assistant", payload={}
        )
        approval_id = approval.id
        rejected = await reject_action(
            session=session, tenant_id="t-reject", user_id="u-2", approval_id=approval_id, comment="too risky"
        )
        assert rejected.status == "rejected"
        with pytest.raises(ActionApprovalStateError):
            await approve_action(session=session, tenant_id="t-reject", user_id="u-2", approval_id=approval_id)
        with pytest.raises(ActionApprovalNotFoundError):
            await reject_action(session=session, tenant_id="t-other", user_id="u-2", approval_id=approval_id)
        entries = await load_audit_log(session=session, approval_id=approval_id)
    assert [entry.event for entry in entries] == ["requested", "rejected"]
    assert entries[1].note == "too risky"
