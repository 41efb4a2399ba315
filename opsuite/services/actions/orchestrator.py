from __future__ import annotations

from dataclasses import dataclass, field
import asyncio
from datetime import datetime
import logging
import time
from typing import Any, Awaitable, Callable
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.config import get_settings
from opsuite.core.errors import (
    ActionApprovalNotFoundError,
    ActionApprovalStateError,
    CapabilityConfigError,
    JobTimeoutError,
)
from opsuite.core.timeutils import utc_now
from opsuite.domain.audit_log import CompletedEntry, ExecutingEntry, FailedEntry, to_json_value
from opsuite.domain.models import ActionApproval, ActionAuditEvent, Task
from opsuite.persistence.db import SessionLocal
from opsuite.services.actions.approvals import (
    ACTION_TASK_TYPE,
    append_audit_entry,
    extract_capability,
    extract_module_slug,
    get_approval_task,
    has_completed_entry,
    payload_record,
    row_to_entry,
)
from opsuite.services.capabilities import CapabilityInvocation, CapabilityRegistry, get_capability_registry
from opsuite.services.hashing import compute_payload_hash
from opsuite.services.notifications import notify_action_execution_result
from opsuite.services.queue import ActionExecutionJobPayload
from opsuite.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

_EXECUTABLE_STATUSES = ("approved", "executing")


@dataclass(frozen=True)
class ExecutionProgress:
    phase: str
    percentage: int
    message: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"phase": self.phase, "percentage": self.percentage, "message": self.message}
        if self.metadata:
            data["metadata"] = self.metadata
        return data


ProgressCallback = Callable[[ExecutionProgress], Awaitable[None]]


@dataclass(frozen=True)
class ActionExecutionResult:
    success: bool
    executed_at: datetime
    duration_ms: int
    payload_hash: str
    module_slug: str | None = None
    capability: str | None = None
    result: Any = None
    skipped: bool = False

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "executedAt": self.executed_at.isoformat(),
            "durationMs": self.duration_ms,
            "payloadHash": self.payload_hash,
            "moduleSlug": self.module_slug,
            "capability": self.capability,
        }
        if self.skipped:
            data["skipped"] = True
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass(frozen=True)
class _Bootstrap:
    task_id: str | None
    already_executed: bool
    payload: dict[str, Any]
    payload_hash: str
    module_slug: str | None
    capability: str | None


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


async def _report(
    progress: ProgressCallback | None,
    phase: str,
    percentage: int,
    message: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    # Progress is informational; a broken reporter must not fail the action.
    if progress is None:
        return
    try:
        await progress(ExecutionProgress(phase=phase, percentage=percentage, message=message, metadata=metadata or {}))
    except Exception:  # noqa: BLE001 - progress sinks are outside the execution contract
        logger.warning("action_progress_report_failed phase=%s", phase, exc_info=True)


async def _is_own_redelivery(session: AsyncSession, *, approval_id: str, job_id: str) -> bool:
    # A queue retry of the same job may resume an approval its previous attempt marked failed.
    last_row = (
        await session.execute(
            select(ActionAuditEvent)
            .where(ActionAuditEvent.approval_id == approval_id)
            .order_by(ActionAuditEvent.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if last_row is None:
        return False
    entry = row_to_entry(last_row)
    return isinstance(entry, FailedEntry) and entry.job_id == job_id


async def _bootstrap(
    session: AsyncSession,
    *,
    job: ActionExecutionJobPayload,
    job_id: str,
    actor_id: str,
    queue_name: str,
) -> _Bootstrap:
    approval = await session.get(ActionApproval, job.approval_id, with_for_update=True)
    if approval is None or approval.tenant_id != job.tenant_id:
        raise ActionApprovalNotFoundError()

    payload = payload_record(approval.payload)
    capability = job.capability or extract_capability(payload)
    module_slug = job.module_slug or extract_module_slug(payload)
    payload_hash = compute_payload_hash(payload, capability)

    if approval.status == "executed" and await has_completed_entry(
        session=session, approval_id=approval.id, payload_hash=payload_hash
    ):
        task = await get_approval_task(session=session, approval_id=approval.id)
        return _Bootstrap(
            task_id=task.id if task is not None else None,
            already_executed=True,
            payload=payload,
            payload_hash=payload_hash,
            module_slug=module_slug,
            capability=capability,
        )

    resumable = approval.status == "failed" and await _is_own_redelivery(
        session, approval_id=approval.id, job_id=job_id
    )
    if approval.status not in _EXECUTABLE_STATUSES and not resumable:
        raise ActionApprovalStateError("Action must be approved before execution")

    now = utc_now()
    approval.status = "executing"
    approval.updated_at = now
    append_audit_entry(
        session,
        approval=approval,
        entry=ExecutingEntry(
            actor=actor_id,
            at=now,
            job_id=job_id,
            module_slug=module_slug,
            capability=capability,
        ),
    )

    task = await get_approval_task(session=session, approval_id=approval.id)
    if task is None:
        task = Task(
            id=uuid4().hex,
            tenant_id=job.tenant_id,
            user_id=actor_id,
            type=ACTION_TASK_TYPE,
            priority="normal",
            payload=payload,
            module_slug=module_slug,
            action_approval_id=approval.id,
        )
        session.add(task)
    task.status = "running"
    task.queue_name = queue_name
    task.job_id = job_id
    task.error = None
    await session.commit()
    return _Bootstrap(
        task_id=task.id,
        already_executed=False,
        payload=payload,
        payload_hash=payload_hash,
        module_slug=module_slug,
        capability=capability,
    )


async def _complete(
    session: AsyncSession,
    *,
    job: ActionExecutionJobPayload,
    job_id: str,
    actor_id: str,
    bootstrap: _Bootstrap,
    result: Any,
    completed_at: datetime,
    duration_ms: int,
) -> None:
    approval = await session.get(ActionApproval, job.approval_id, with_for_update=True)
    if approval is None or approval.tenant_id != job.tenant_id:
        raise ActionApprovalNotFoundError()
    approval.status = "executed"
    approval.executed_at = completed_at
    approval.updated_at = completed_at
    append_audit_entry(
        session,
        approval=approval,
        entry=CompletedEntry(
            actor=actor_id,
            at=completed_at,
            job_id=job_id,
            duration_ms=duration_ms,
            payload_hash=bootstrap.payload_hash,
            module_slug=bootstrap.module_slug,
            capability=bootstrap.capability,
            undo_payload=job.undo_payload,
        ),
    )
    task = await session.get(Task, bootstrap.task_id) if bootstrap.task_id else None
    if task is not None:
        task.status = "completed"
        task.result = result
        task.executed_at = completed_at
        task.error = None
    await session.commit()


async def _record_failure(
    *,
    job: ActionExecutionJobPayload,
    job_id: str,
    actor_id: str,
    module_slug: str | None,
    capability: str | None,
    message: str,
) -> None:
    # Persist the failure before the queue sees the error; only live executions move to failed.
    try:
        async with SessionLocal() as session:
            approval = await session.get(ActionApproval, job.approval_id, with_for_update=True)
            if (
                approval is None
                or approval.tenant_id != job.tenant_id
                or approval.status not in _EXECUTABLE_STATUSES
            ):
                return
            now = utc_now()
            approval.status = "failed"
            approval.updated_at = now
            append_audit_entry(
                session,
                approval=approval,
                entry=FailedEntry(
                    actor=actor_id,
                    at=now,
                    note=message,
                    job_id=job_id,
                    module_slug=module_slug,
                    capability=capability,
                ),
            )
            task = await get_approval_task(session=session, approval_id=approval.id)
            if task is not None:
                task.status = "failed"
                task.error = message
            await session.commit()
            await notify_action_execution_result(
                session=session,
                tenant_id=job.tenant_id,
                approval_id=job.approval_id,
                success=False,
                module_slug=module_slug,
                capability=capability,
                error=message,
            )
    except Exception:  # noqa: BLE001 - the queue still sees the original error.
        increment_counter("actions.failure_persist_failed")
        logger.exception(
            "action_failure_persist_failed approval_id=%s tenant_id=%s job_id=%s",
            job.approval_id,
            job.tenant_id,
            job_id,
        )


async def abandon_action(job: ActionExecutionJobPayload, *, job_id: str, message: str) -> None:
    # Close out an approval whose job the queue gave up on without running it again.
    increment_counter("actions.abandoned")
    logger.warning(
        "action_execution_abandoned approval_id=%s tenant_id=%s job_id=%s reason=%s",
        job.approval_id,
        job.tenant_id,
        job_id,
        message,
    )
    await _record_failure(
        job=job,
        job_id=job_id,
        actor_id=job.actor_id,
        module_slug=job.module_slug,
        capability=job.capability,
        message=message,
    )


async def execute_action(
    job: ActionExecutionJobPayload,
    *,
    job_id: str,
    queue_name: str | None = None,
    progress: ProgressCallback | None = None,
    registry: CapabilityRegistry | None = None,
    timeout_s: float | None = None,
) -> ActionExecutionResult:
    # Run one approved action at most once per payload hash, recording every transition.
    started = time.monotonic()
    actor_id = job.actor_id
    resolved_queue = queue_name or get_settings().action_executor_queue_name
    capabilities = registry or get_capability_registry()
    bootstrap: _Bootstrap | None = None
    await _report(progress, "initializing", 5, "Preparing action execution")
    try:
        async with SessionLocal() as session:
            bootstrap = await _bootstrap(
                session,
                job=job,
                job_id=job_id,
                actor_id=actor_id,
                queue_name=resolved_queue,
            )

        if bootstrap.already_executed:
            await _report(
                progress,
                "completed",
                100,
                "Action already executed; skipping",
                {"payloadHash": bootstrap.payload_hash},
            )
            increment_counter("actions.replayed")
            logger.info(
                "action_execution_skipped approval_id=%s payload_hash=%s",
                job.approval_id,
                bootstrap.payload_hash,
            )
            return ActionExecutionResult(
                success=True,
                executed_at=utc_now(),
                duration_ms=_elapsed_ms(started),
                payload_hash=bootstrap.payload_hash,
                module_slug=bootstrap.module_slug,
                capability=bootstrap.capability,
                skipped=True,
            )

        capability_metadata = {"moduleSlug": bootstrap.module_slug, "capability": bootstrap.capability}
        await _report(progress, "validating", 25, "Validating module capability", capability_metadata)
        if not bootstrap.module_slug or not bootstrap.capability:
            raise CapabilityConfigError("Action approval is missing moduleSlug or capability")

        await _report(progress, "executing", 55, "Executing module capability", capability_metadata)
        try:
            async with asyncio.timeout(timeout_s):
                raw_result = await capabilities.invoke(
                    CapabilityInvocation(
                        tenant_id=job.tenant_id,
                        approval_id=job.approval_id,
                        actor_id=actor_id,
                        module_slug=bootstrap.module_slug,
                        capability=bootstrap.capability,
                        payload=bootstrap.payload,
                        task_id=bootstrap.task_id,
                        job_id=job_id,
                        payload_hash=bootstrap.payload_hash,
                    )
                )
        except TimeoutError as exc:
            raise JobTimeoutError(
                f"Capability {bootstrap.module_slug}.{bootstrap.capability} timed out after {timeout_s:g}s"
            ) from exc
        result = to_json_value(raw_result)

        await _report(progress, "finalizing", 85, "Persisting execution outcome")
        completed_at = utc_now()
        duration_ms = _elapsed_ms(started)
        async with SessionLocal() as session:
            await _complete(
                session,
                job=job,
                job_id=job_id,
                actor_id=actor_id,
                bootstrap=bootstrap,
                result=result,
                completed_at=completed_at,
                duration_ms=duration_ms,
            )
            await _report(progress, "completed", 100, "Action executed successfully")
            await notify_action_execution_result(
                session=session,
                tenant_id=job.tenant_id,
                approval_id=job.approval_id,
                success=True,
                module_slug=bootstrap.module_slug,
                capability=bootstrap.capability,
                result={"durationMs": duration_ms, "taskId": bootstrap.task_id},
            )
    except asyncio.CancelledError:
        # arq cancels jobs on its own timeout and on shutdown; never leave the approval executing.
        increment_counter("actions.cancelled")
        logger.warning(
            "action_execution_cancelled approval_id=%s tenant_id=%s job_id=%s",
            job.approval_id,
            job.tenant_id,
            job_id,
        )
        await _record_failure(
            job=job,
            job_id=job_id,
            actor_id=actor_id,
            module_slug=bootstrap.module_slug if bootstrap is not None else job.module_slug,
            capability=bootstrap.capability if bootstrap is not None else job.capability,
            message="Action execution was cancelled",
        )
        raise
    except Exception as exc:
        message = str(exc) or exc.__class__.__name__
        increment_counter("actions.failed")
        logger.exception(
            "action_execution_failed approval_id=%s tenant_id=%s job_id=%s",
            job.approval_id,
            job.tenant_id,
            job_id,
        )
        await _record_failure(
            job=job,
            job_id=job_id,
            actor_id=actor_id,
            module_slug=bootstrap.module_slug if bootstrap is not None else job.module_slug,
            capability=bootstrap.capability if bootstrap is not None else job.capability,
            message=message,
        )
        raise

    increment_counter("actions.executed")
    logger.info(
        "action_execution_completed approval_id=%s task_id=%s payload_hash=%s duration_ms=%s",
        job.approval_id,
        bootstrap.task_id,
        bootstrap.payload_hash,
        duration_ms,
    )
    return ActionExecutionResult(
        success=True,
        executed_at=completed_at,
        duration_ms=duration_ms,
        payload_hash=bootstrap.payload_hash,
        module_slug=bootstrap.module_slug,
        capability=bootstrap.capability,
        result=result,
    )
