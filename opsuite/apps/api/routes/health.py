from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from opsuite.apps.api.response import Enveloped, envelope

router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    status: str


# The unversioned probe returns a bare payload; /v1/health is enveloped.
@router.get("/health", response_model=Enveloped[HealthResponse] | HealthResponse)
async def health(request: Request) -> dict:
    payload = HealthResponse(status="ok")
    return envelope(request, payload.model_dump())
