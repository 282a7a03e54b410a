from __future__ import annotations

import logging
from typing import AsyncGenerator, Awaitable, Callable

from fastapi import Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import ForbiddenError, UnauthenticatedError, ValidationError
from edugov.domain.models import User
from edugov.persistence.db import Database
from edugov.services.audit import RequestContext, get_request_context, log_action
from edugov.services.auth.roles import normalize_role
from edugov.services.auth.tokens import decode_session_token
from edugov.services.authz import Action, Principal, decide, enforce


logger = logging.getLogger(__name__)


def get_database(request: Request) -> Database:
    database = getattr(request.app.state, "database", None)
    if database is None:
        raise RuntimeError("Database is not initialized; create the app through create_app()")
    return database


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_database(request).session() as session:
        yield session


def get_context(request: Request) -> RequestContext:
    return get_request_context(request)


def _parse_bearer_token(header_value: str | None) -> str | None:
    # Enforce Bearer token format for session authentication.
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Missing or invalid bearer token")
    return parts[1]


def _principal_from_dev_headers(request: Request) -> Principal | None:
    # Allow identity headers only when explicitly enabled for local dev.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        return None
    try:
        role = normalize_role(request.headers.get("X-Role", "member"))
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    raw_tenant = request.headers.get("X-Tenant-Id")
    try:
        tenant_id = int(raw_tenant) if raw_tenant else None
    except ValueError as exc:
        raise ValidationError("X-Tenant-Id must be an integer") from exc
    return Principal(id=user_id, role=role, tenant_id=tenant_id, auth_method="dev_bypass")


async def get_optional_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal | None:
    """Resolve the caller from a session token (or dev headers when enabled).

    No credentials yields ``None`` so the authorization gate can answer
    "unauthenticated"; a malformed or expired token is rejected outright.
    """
    settings = get_settings()
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if token is None:
        if settings.auth_dev_bypass:
            return _principal_from_dev_headers(request)
        return None
    try:
        claims = decode_session_token(token, settings=settings)
    except ValueError as exc:
        logger.info("auth_token_rejected request_id=%s reason=%s", get_request_context(request).request_id, exc)
        raise UnauthenticatedError("Invalid or expired session token") from exc
    user = await db.get(User, claims.subject_id)
    if user is not None and not user.is_active:
        raise ForbiddenError("Account is deactivated", details={"reason": "inactive"})
    return Principal(id=claims.subject_id, role=claims.role, tenant_id=claims.tenant_id, auth_method="session")


def require_action(action: Action) -> Callable[..., Awaitable[Principal]]:
    # Single dependency factory so every handler shares the same authorization decision.
    async def dependency(
        request: Request,
        principal: Principal | None = Depends(get_optional_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        decision = decide(principal, action)
        if not decision.allowed and principal is not None:
            await log_action(
                db,
                actor_id=principal.id,
                action_type="access_denied",
                target_type="action",
                target_id=action,
                detail=f"Denied {action}: {decision.reason}",
                context=get_request_context(request),
            )
            await db.commit()
        return enforce(principal, action)

    return dependency


class Page:
    """Pagination query parameters shared by list endpoints (page is 1-based)."""

    def __init__(
        self,
        page: int = Query(default=1),
        limit: int = Query(default=50),
    ) -> None:
        max_limit = get_settings().max_page_size
        if page < 1:
            raise ValidationError("page must be >= 1")
        if limit < 1 or limit > max_limit:
            raise ValidationError(f"limit must be between 1 and {max_limit}")
        self.page = page
        self.limit = limit

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def meta(self, count: int, total: int | None = None) -> dict[str, int | None]:
        return {"page": self.page, "limit": self.limit, "count": count, "total": total}
