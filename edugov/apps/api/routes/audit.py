from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.core.errors import ValidationError
from edugov.persistence.repos import audit as audit_repo
from edugov.services.audit import AUDIT_ACTIONS, audit_entry_payload
from edugov.services.authz import Principal


router = APIRouter(prefix="/admin/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@router.get("")
async def list_audit_entries(
    actor_id: str | None = None,
    action_type: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("view_audit")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Filter audit entries with pagination.
    if action_type and action_type not in AUDIT_ACTIONS:
        raise ValidationError(f"Unknown action type: {action_type}")
    entries = await audit_repo.list_entries(
        db,
        actor_id=actor_id,
        action_type=action_type,
        target_type=target_type,
        target_id=target_id,
        created_from=_as_utc(created_from),
        created_to=_as_utc(created_to),
        offset=page.offset,
        limit=page.limit,
    )
    return success_response(
        {"items": [audit_entry_payload(entry) for entry in entries], "pagination": page.meta(len(entries))}
    )
