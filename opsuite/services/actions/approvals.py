from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.errors import ActionApprovalNotFoundError, ActionApprovalStateError
from opsuite.core.timeutils import utc_now
from opsuite.domain.audit_log import (
    ApprovedEntry,
    AuditEntry,
    CompletedEntry,
    EnqueuedEntry,
    FailedEntry,
    RejectedEntry,
    RequestedEntry,
    decode_entry,
    encode_entry,
)
from opsuite.domain.models import ActionApproval, ActionAuditEvent, Task
from opsuite.services.queue import ActionExecutionJobPayload, action_job_id, enqueue_action_execution


logger = logging.getLogger(__name__)

ACTION_TASK_TYPE = "action-execution"


@dataclass(frozen=True)
class ApproveActionResult:
    approval: ActionApproval
    task: Task
    job_id: str


def payload_record(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, dict) else {}


def _string_field(payload: dict[str, Any], key: str) -> str | None:
    value = payload.get(key)
    return value if isinstance(value, str) else None


def extract_module_slug(payload: dict[str, Any]) -> str | None:
    return _string_field(payload, "moduleSlug")


def extract_capability(payload: dict[str, Any]) -> str | None:
    return _string_field(payload, "capability")


def extract_undo_payload(payload: dict[str, Any]) -> dict[str, Any] | None:
    value = payload.get("undoPayload")
    return value if isinstance(value, dict) else None


def entry_to_row(entry: AuditEntry, *, approval_id: str, tenant_id: str) -> ActionAuditEvent:
    encoded = encode_entry(entry)
    return ActionAuditEvent(
        approval_id=approval_id,
        tenant_id=tenant_id,
        event=entry.event,
        actor=entry.actor,
        note=entry.note,
        payload_hash=entry.payload_hash if isinstance(entry, CompletedEntry) else None,
        metadata_json=encoded.get("metadata"),
        occurred_at=entry.at,
    )


def row_to_entry(row: ActionAuditEvent) -> AuditEntry | None:
    occurred_at = row.occurred_at
    return decode_entry(
        {
            "event": row.event,
            "at": occurred_at.isoformat() if occurred_at is not None else None,
            "by": row.actor,
            "note": row.note,
            "metadata": row.metadata_json or {},
        }
    )


def append_audit_entry(session: AsyncSession, *, approval: ActionApproval, entry: AuditEntry) -> None:
    # Insert-only: transitions add rows and never rewrite earlier ones.
    session.add(entry_to_row(entry, approval_id=approval.id, tenant_id=approval.tenant_id))


async def load_audit_log(*, session: AsyncSession, approval_id: str) -> list[AuditEntry]:
    rows = (
        await session.execute(
            select(ActionAuditEvent)
            .where(ActionAuditEvent.approval_id == approval_id)
            .order_by(ActionAuditEvent.id.asc())
        )
    ).scalars().all()
    entries = (row_to_entry(row) for row in rows)
    return [entry for entry in entries if entry is not None]


async def has_completed_entry(*, session: AsyncSession, approval_id: str, payload_hash: str) -> bool:
    existing = await session.scalar(
        select(ActionAuditEvent.id)
        .where(
            ActionAuditEvent.approval_id == approval_id,
            ActionAuditEvent.event == "completed",
            ActionAuditEvent.payload_hash == payload_hash,
        )
        .limit(1)
    )
    return existing is not None


async def get_tenant_approval(*, session: AsyncSession, tenant_id: str, approval_id: str) -> ActionApproval:
    # Cross-tenant lookups are indistinguishable from missing approvals.
    approval = await session.get(ActionApproval, approval_id)
    if approval is None or approval.tenant_id != tenant_id:
        raise ActionApprovalNotFoundError()
    return approval


async def get_approval_task(*, session: AsyncSession, approval_id: str) -> Task | None:
    return (
        await session.execute(select(Task).where(Task.action_approval_id == approval_id))
    ).scalar_one_or_none()


async def submit_action_approval(
    *,
    session: AsyncSession,
    tenant_id: str,
    user_id: str,
    source: str,
    payload: dict[str, Any],
    risk_score: int = 0,
    comment: str | None = None,
) -> ActionApproval:
    approval = ActionApproval(
        id=uuid4().hex,
        tenant_id=tenant_id,
        source=source,
        payload=payload,
        risk_score=risk_score,
        status="pending",
        created_by=user_id,
    )
    session.add(approval)
    await session.flush()
    append_audit_entry(
        session,
        approval=approval,
        entry=RequestedEntry(actor=user_id, note=comment, risk_score=risk_score),
    )
    await session.commit()
    logger.info(
        "action_approval_submitted approval_id=%s tenant_id=%s source=%s risk_score=%s",
        approval.id,
        tenant_id,
        source,
        risk_score,
    )
    return approval


async def approve_action(
    *,
    session: AsyncSession,
    tenant_id: str,
    user_id: str,
    approval_id: str,
    comment: str | None = None,
) -> ApproveActionResult:
    approval = await get_tenant_approval(session=session, tenant_id=tenant_id, approval_id=approval_id)
    if approval.status != "pending":
        raise ActionApprovalStateError("Only pending approvals can be approved")
    now = utc_now()
    approval.status = "approved"
    approval.approved_by = user_id
    approval.approved_at = now
    approval.updated_at = now
    append_audit_entry(session, approval=approval, entry=ApprovedEntry(actor=user_id, note=comment, at=now))

    payload = payload_record(approval.payload)
    module_slug = extract_module_slug(payload)
    task = await get_approval_task(session=session, approval_id=approval_id)
    if task is None:
        task = Task(
            id=uuid4().hex,
            tenant_id=tenant_id,
            user_id=user_id,
            type=ACTION_TASK_TYPE,
            action_approval_id=approval_id,
        )
        session.add(task)
    task.status = "pending"
    task.priority = "normal"
    task.payload = payload
    task.module_slug = module_slug
    task.queue_name = None
    task.job_id = None
    task.error = None
    task.result = None
    await session.commit()

    job_payload = ActionExecutionJobPayload(
        tenant_id=tenant_id,
        approval_id=approval_id,
        source=approval.source,
        payload=payload,
        created_by=approval.created_by,
        approved_by=user_id,
        module_slug=module_slug,
        capability=extract_capability(payload),
        undo_payload=extract_undo_payload(payload),
        risk_score=approval.risk_score,
    )
    try:
        job_id = await enqueue_action_execution(job_payload, job_id=action_job_id(approval_id))
    except Exception as exc:
        # An approval that cannot be queued would otherwise sit in approved forever.
        message = str(exc) or exc.__class__.__name__
        approval.status = "failed"
        approval.updated_at = utc_now()
        append_audit_entry(
            session,
            approval=approval,
            entry=FailedEntry(actor=user_id, note=f"Queue enqueue failed: {message}"),
        )
        task.status = "failed"
        task.error = message
        await session.commit()
        logger.exception("action_enqueue_failed approval_id=%s tenant_id=%s", approval_id, tenant_id)
        raise

    append_audit_entry(
        session,
        approval=approval,
        entry=EnqueuedEntry(actor=user_id, job_id=job_id, task_id=task.id),
    )
    await session.commit()
    return ApproveActionResult(approval=approval, task=task, job_id=job_id)


async def reject_action(
    *,
    session: AsyncSession,
    tenant_id: str,
    user_id: str,
    approval_id: str,
    comment: str | None = None,
) -> ActionApproval:
    approval = await get_tenant_approval(session=session, tenant_id=tenant_id, approval_id=approval_id)
    if approval.status != "pending":
        raise ActionApprovalStateError("Only pending approvals can be rejected")
    approval.status = "rejected"
    approval.updated_at = utc_now()
    append_audit_entry(session, approval=approval, entry=RejectedEntry(actor=user_id, note=comment))
    await session.commit()
    return approval
