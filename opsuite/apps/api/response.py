from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"

T = TypeVar("T")


class EnvelopeMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class Enveloped(BaseModel, Generic[T]):
    data: T
    meta: EnvelopeMeta


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


def is_versioned(request: Request) -> bool:
    # Only /v1 routes are enveloped; the bare /health probe stays plain for load balancers.
    return request.url.path.startswith(f"/{API_VERSION}/")


def request_id_for(request: Request) -> str:
    # The middleware stamps every request; handlers invoked directly fall back to the header.
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    if not request_id:
        request_id = str(uuid4())
        request.state.request_id = request_id
    return request_id


def _meta(request: Request) -> dict[str, Any]:
    return EnvelopeMeta(request_id=request_id_for(request)).model_dump()


def envelope(request: Request, data: Any) -> Any:
    if not is_versioned(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_envelope(
    request: Request,
    *,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body = ErrorBody(code=code, message=message, details=details)
    return {"error": body.model_dump(exclude_none=True), "meta": _meta(request)}
