from __future__ import annotations

import json
import logging
from typing import Any
from uuid import uuid4

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.core.config import get_settings
from opsuite.domain.models import Alert, Notification
from opsuite.services.audit import sanitize_metadata
from opsuite.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

EVENT_ALERT_RAISED = "alert.raised"
EVENT_ACTION_EXECUTED = "action.executed"
EVENT_ACTION_FAILED = "action.failed"


def _webhook_urls() -> list[str]:
    # Parse configured webhook URLs and ignore anything that is not an http(s) target.
    raw = get_settings().notify_webhook_urls_json
    try:
        parsed = json.loads(raw or "[]")
    except ValueError:
        logger.warning("notify_webhook_urls_json is not valid JSON; webhooks disabled")
        return []
    if not isinstance(parsed, list):
        return []
    return [
        str(item).strip()
        for item in parsed
        if isinstance(item, str) and item.strip().startswith(("http://", "https://"))
    ]


def _serialize_payload(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode(
        "utf-8"
    )


async def _deliver(*, destination: str, payload_bytes: bytes, event_type: str, tenant_id: str) -> None:
    timeout_s = max(0.2, get_settings().notify_webhook_timeout_ms / 1000.0)
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        response = await client.post(
            destination,
            content=payload_bytes,
            headers={
                "content-type": "application/json",
                "x-notification-event-type": event_type,
                "x-notification-tenant-id": tenant_id,
            },
        )
        response.raise_for_status()


async def _fan_out_webhooks(*, tenant_id: str, event_type: str, payload: dict[str, Any]) -> int:
    # Deliver to every webhook independently; one failing receiver never blocks the others.
    delivered = 0
    payload_bytes = _serialize_payload({"event_type": event_type, "tenant_id": tenant_id, "data": payload})
    for destination in _webhook_urls():
        try:
            await _deliver(
                destination=destination,
                payload_bytes=payload_bytes,
                event_type=event_type,
                tenant_id=tenant_id,
            )
            delivered += 1
        except httpx.HTTPError as exc:
            increment_counter("notifications.webhook.failed")
            logger.warning(
                "notification_webhook_failed event_type=%s tenant_id=%s destination=%s",
                event_type,
                tenant_id,
                destination,
                exc_info=exc,
            )
    return delivered


async def dispatch_notification(
    *,
    session: AsyncSession,
    tenant_id: str,
    event_type: str,
    payload: dict[str, Any],
) -> Notification | None:
    # Persist the in-app feed row first, then push webhooks; failures are logged and never raised.
    if not get_settings().notifications_enabled:
        return None
    safe_payload = sanitize_metadata(payload)
    row = Notification(
        id=uuid4().hex,
        tenant_id=tenant_id,
        event_type=event_type,
        payload_json=safe_payload,
    )
    try:
        session.add(row)
        await session.commit()
    except SQLAlchemyError as exc:
        await session.rollback()
        increment_counter("notifications.persist.failed")
        logger.warning(
            "notification_persist_failed event_type=%s tenant_id=%s",
            event_type,
            tenant_id,
            exc_info=exc,
        )
        row = None
    await _fan_out_webhooks(tenant_id=tenant_id, event_type=event_type, payload=safe_payload)
    increment_counter(f"notifications.{event_type}")
    return row


async def notify_alert_raised(*, session: AsyncSession, alert: Alert) -> Notification | None:
    return await dispatch_notification(
        session=session,
        tenant_id=alert.tenant_id,
        event_type=EVENT_ALERT_RAISED,
        payload={
            "alertId": alert.id,
            "ruleId": alert.rule_id,
            "type": alert.type,
            "severity": alert.severity,
            "title": alert.title,
            "summary": alert.summary,
        },
    )


async def notify_action_execution_result(
    *,
    session: AsyncSession,
    tenant_id: str,
    approval_id: str,
    success: bool,
    module_slug: str | None,
    capability: str | None,
    error: str | None = None,
    result: Any = None,
) -> Notification | None:
    payload: dict[str, Any] = {
        "approvalId": approval_id,
        "success": success,
        "moduleSlug": module_slug,
        "capability": capability,
    }
    if error is not None:
        payload["error"] = error
    if result is not None:
        payload["result"] = result
    return await dispatch_notification(
        session=session,
        tenant_id=tenant_id,
        event_type=EVENT_ACTION_EXECUTED if success else EVENT_ACTION_FAILED,
        payload=payload,
    )
