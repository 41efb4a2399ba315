from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from opsuite.core.config import get_settings
from opsuite.domain.models import Notification
from opsuite.persistence.db import SessionLocal
from opsuite.services import notifications as notifications_module
from opsuite.services.notifications import notify_action_execution_result
from opsuite.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_webhook_fan_out_isolates_failing_receivers(monkeypatch) -> None:
    monkeypatch.setenv(
        "NOTIFY_WEBHOOK_URLS_JSON",
        json.dumps(["https://hooks.example/a", "ftp://ignored", "https://hooks.example/b"]),
    )
    get_settings.cache_clear()
    delivered: list[tuple[str, dict]] = []

    async def _deliver(*, destination: str, payload_bytes: bytes, event_type: str, tenant_id: str) -> None:
        if destination.endswith("/a"):
            raise httpx.ConnectError("connection refused")
        delivered.append((destination, json.loads(payload_bytes)))

    monkeypatch.setattr(notifications_module, "_deliver", _deliver)
    try:
        async with SessionLocal() as session:
            row = await notify_action_execution_result(
                session=session,
                tenant_id="t-notify",
                approval_id="a-1",
                success=False,
                module_slug="crm",
                capability="sync_contact",
                error="crm unavailable",
            )
        assert row is not None
        assert [destination for destination, _ in delivered] == ["https://hooks.example/b"]
        body = delivered[0][1]
        assert body["event_type"] == "action.failed"
        assert body["data"]["error"] == "crm unavailable"
        assert counters_snapshot()["notifications.webhook.failed"] == 1
        async with SessionLocal() as session:
            rows = (await session.execute(select(Notification))).scalars().all()
        assert [stored.event_type for stored in rows] == ["action.failed"]
    finally:
        get_settings.cache_clear()


@pytest.mark.asyncio
async def test_disabled_notifications_write_nothing(monkeypatch) -> None:
    monkeypatch.setenv("NOTIFICATIONS_ENABLED", "false")
    get_settings.cache_clear()
    try:
        async with SessionLocal() as session:
            row = await notify_action_execution_result(
                session=session,
                tenant_id="t-notify",
                approval_id="a-1",
                success=True,
                module_slug="crm",
                capability="sync_contact",
            )
            assert row is None
            assert (await session.execute(select(Notification))).scalars().all() == []
    finally:
        get_settings.cache_clear()
