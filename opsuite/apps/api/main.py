from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from opsuite.apps.api.errors import (
    engine_exception_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from opsuite.apps.api.response import API_VERSION
from opsuite.apps.api.routes.health import router as health_router
from opsuite.apps.api.routes.ops import router as ops_router
from opsuite.core.config import get_settings
from opsuite.core.errors import OpsuiteError
from opsuite.core.logging import configure_logging
from opsuite.persistence.guards import TenantPredicateError
from opsuite.services.capabilities import register_default_capabilities
from opsuite.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    register_default_capabilities()
    app = FastAPI(title=f"{get_settings().app_name} API")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        increment_counter(f"http.{response.status_code // 100}xx")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers.setdefault("X-Response-Time-Ms", f"{latency_ms:.1f}")
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(OpsuiteError)
    async def _engine_exception_handler(request: Request, exc: OpsuiteError):
        return await engine_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    app.include_router(health_router)
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
