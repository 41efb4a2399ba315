from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsuite.apps.api.response import error_envelope, is_versioned
from opsuite.core.errors import (
    ActionApprovalNotFoundError,
    ActionApprovalStateError,
    CapabilityConfigError,
    OpsuiteError,
)
from opsuite.persistence.guards import TenantPredicateError


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Engine errors -> (status, code); first match wins so subclasses must come first.
_ENGINE_ERROR_STATUS: tuple[tuple[type[OpsuiteError], int, str], ...] = (
    (ActionApprovalNotFoundError, 404, "ACTION_APPROVAL_NOT_FOUND"),
    (ActionApprovalStateError, 409, "ACTION_APPROVAL_STATE_CONFLICT"),
    (CapabilityConfigError, 422, "CAPABILITY_CONFIG_INVALID"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _json_error(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    if not is_versioned(request):
        return JSONResponse(content={"detail": message}, status_code=status_code, headers=headers)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Ensure Starlette-raised exceptions are also wrapped consistently for v1 routes.
    if not is_versioned(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_envelope(request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_envelope(
        request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def engine_exception_handler(request: Request, exc: OpsuiteError) -> JSONResponse:
    # Map engine errors onto HTTP semantics; anything unmapped is an internal error.
    for error_type, status_code, code in _ENGINE_ERROR_STATUS:
        if isinstance(exc, error_type):
            return _json_error(request, status_code=status_code, code=code, message=str(exc))
    return _json_error(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


async def tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError) -> JSONResponse:
    return _json_error(request, status_code=400, code="TENANT_REQUIRED", message=exc.message)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    return _json_error(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
