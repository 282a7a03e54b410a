from __future__ import annotations

from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from edugov.apps.api.errors import (
    edugov_error_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from edugov.apps.api.response import API_VERSION
from edugov.apps.api.routes.ai_moderation import router as ai_moderation_router
from edugov.apps.api.routes.analytics import router as analytics_router
from edugov.apps.api.routes.applications import router as applications_router
from edugov.apps.api.routes.audit import router as audit_router
from edugov.apps.api.routes.bans import router as bans_router
from edugov.apps.api.routes.content import router as content_router
from edugov.apps.api.routes.escalations import router as escalations_router
from edugov.apps.api.routes.flags import router as flags_router
from edugov.apps.api.routes.health import router as health_router
from edugov.apps.api.routes.quotas import router as quotas_router
from edugov.apps.api.routes.users import router as users_router
from edugov.core.config import Settings, get_settings
from edugov.core.errors import EduGovError
from edugov.core.logging import configure_logging
from edugov.persistence.db import Database
from edugov.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(database: Database | None = None, *, settings: Settings | None = None) -> FastAPI:
    """Build the API application.

    A caller-supplied ``database`` (tests, embedding) is used as-is and left
    open; otherwise the lifespan creates one at startup and disposes it at
    shutdown.
    """
    resolved = settings or get_settings()
    configure_logging(resolved.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        # Fail fast on a production deployment without a session secret.
        resolved.resolved_session_secret()
        owned = getattr(app.state, "database", None) is None
        if owned:
            app.state.database = Database(settings=resolved)
        logger.info("api_started env=%s owned_database=%s", resolved.env, owned)
        try:
            yield
        finally:
            if owned:
                await app.state.database.dispose()
                app.state.database = None

    app = FastAPI(title="EduGov Governance API", version=API_VERSION, lifespan=lifespan)
    if database is not None:
        app.state.database = database

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        record_request(path=request.url.path, status_code=response.status_code, latency_ms=latency_ms)
        response.headers.setdefault("X-Request-Id", request_id)
        logger.debug(
            "request_completed request_id=%s method=%s path=%s status=%s latency_ms=%.1f",
            request_id,
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        return response

    @app.exception_handler(EduGovError)
    async def _edugov_error_handler(request: Request, exc: EduGovError):
        return await edugov_error_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(users_router, prefix=f"/{API_VERSION}")
    app.include_router(applications_router, prefix=f"/{API_VERSION}")
    app.include_router(content_router, prefix=f"/{API_VERSION}")
    app.include_router(quotas_router, prefix=f"/{API_VERSION}")
    app.include_router(flags_router, prefix=f"/{API_VERSION}")
    app.include_router(ai_moderation_router, prefix=f"/{API_VERSION}")
    app.include_router(escalations_router, prefix=f"/{API_VERSION}")
    app.include_router(bans_router, prefix=f"/{API_VERSION}")
    app.include_router(analytics_router, prefix=f"/{API_VERSION}")
    app.include_router(audit_router, prefix=f"/{API_VERSION}")

    def custom_openapi() -> dict:
        # Inject bearer auth and version metadata into the OpenAPI schema.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="EduGov Governance API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["BearerAuth"] = {"type": "http", "scheme": "bearer", "bearerFormat": "JWT"}
        public_paths = {f"/{API_VERSION}/health"}
        for path, operations in schema.get("paths", {}).items():
            if path in public_paths:
                continue
            for operation in operations.values():
                operation.setdefault("security", [{"BearerAuth": []}])
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi  # type: ignore[method-assign]

    return app


app = create_app()
