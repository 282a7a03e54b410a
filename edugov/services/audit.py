from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from edugov.domain.models import AuditEntry, utc_now
from edugov.persistence.guards import soft_dependency


logger = logging.getLogger(__name__)

AUDIT_ACTIONS = frozenset(
    {
        "content_upload",
        "upload_failed",
        "upload_retry",
        "content_approve",
        "content_reject",
        "content_moderation",
        "ai_moderation",
        "escalation_resolve",
        "content_edit",
        "user_ban",
        "user_unban",
        "post_ban",
        "post_unban",
        "user_create",
        "user_update",
        "user_role_change",
        "user_status_change",
        "application_approve",
        "application_reject",
        "quota_update",
        "snapshot_verify",
        "data_export",
        "access_denied",
    }
)

_SENSITIVE_KEY_PATTERNS = ["password", "secret", "token", "authorization", "api_key"]
_REDACTED_VALUE = "[REDACTED]"


@dataclass(frozen=True)
class RequestContext:
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_snapshot(value: Any) -> Any:
    # Recursively scrub credentials and make values JSON-safe for before/after columns.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_snapshot(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_snapshot(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> RequestContext:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return RequestContext()
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    return RequestContext(
        request_id=request_id,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )


async def log_action(
    session: AsyncSession,
    *,
    actor_id: str | None,
    action_type: str,
    target_type: str | None = None,
    target_id: str | int | None = None,
    detail: str | None = None,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    context: RequestContext | None = None,
    created_at: datetime | None = None,
) -> None:
    """Append an audit entry inside the caller's transaction.

    Never raises: the write runs in a savepoint and a failure (including a
    missing audit table) is logged at WARNING while the caller proceeds.
    The caller owns the commit.
    """
    if action_type not in AUDIT_ACTIONS:
        logger.error("audit_action_unknown action_type=%s", action_type)
        return
    ctx = context or RequestContext()
    entry = AuditEntry(
        actor_id=actor_id,
        action_type=action_type,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        detail=detail,
        before_json=sanitize_snapshot(before) if before is not None else None,
        after_json=sanitize_snapshot(after) if after is not None else None,
        ip_address=ctx.ip_address,
        user_agent=ctx.user_agent,
        request_id=ctx.request_id,
        created_at=created_at or utc_now(),
    )
    async with soft_dependency(session, "audit", action_type=action_type, request_id=ctx.request_id):
        session.add(entry)
        await session.flush()


def audit_entry_payload(entry: AuditEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "actor_id": entry.actor_id,
        "action_type": entry.action_type,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "detail": entry.detail,
        "before": entry.before_json,
        "after": entry.after_json,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
        "request_id": entry.request_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
