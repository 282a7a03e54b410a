from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.domain.state import EscalationOutcome
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.moderation.escalations import list_escalations, resolve_escalation, serialize_escalation
from edugov.services.notifications import list_notifications, serialize_notification


router = APIRouter(prefix="/admin", tags=["escalations"], responses=DEFAULT_ERROR_RESPONSES)


class ResolveRequest(BaseModel):
    model_config = {"extra": "forbid"}

    outcome: EscalationOutcome
    resolution: str


@router.get("/escalations")
async def list_escalations_endpoint(
    status: str | None = "pending",
    priority: str | None = None,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("resolve_escalation")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    escalations = await list_escalations(
        db, status=status or None, priority=priority, offset=page.offset, limit=page.limit
    )
    return success_response(
        {
            "items": [serialize_escalation(escalation) for escalation in escalations],
            "pagination": page.meta(len(escalations)),
        }
    )


@router.post("/escalations/{escalation_id}/resolve")
async def resolve_escalation_endpoint(
    escalation_id: int,
    payload: ResolveRequest,
    principal: Principal = Depends(require_action("resolve_escalation")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    escalation = await resolve_escalation(
        db, principal, escalation_id, payload.outcome, resolution=payload.resolution, context=context
    )
    return success_response(serialize_escalation(escalation), message="Escalation resolved")


@router.get("/notifications")
async def list_notifications_endpoint(
    unread_only: bool = False,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("resolve_escalation")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    # Notifications are always the caller's own.
    notifications = await list_notifications(
        db, recipient_id=principal.id, unread_only=unread_only, offset=page.offset, limit=page.limit
    )
    return success_response(
        {
            "items": [serialize_notification(notification) for notification in notifications],
            "pagination": page.meta(len(notifications)),
        }
    )
