from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from opsuite.persistence.db import get_session


TENANT_HEADER = "X-Tenant-Id"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


async def get_optional_tenant_id(x_tenant_id: str | None = Header(default=None)) -> str | None:
    if x_tenant_id is None:
        return None
    cleaned = x_tenant_id.strip()
    if not cleaned:
        raise HTTPException(
            status_code=400,
            detail={"code": "TENANT_INVALID", "message": f"{TENANT_HEADER} is empty"},
        )
    return cleaned
