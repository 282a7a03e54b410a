from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.domain.state import ModerationAction
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.moderation.ai_review import (
    list_items,
    moderation_stats,
    review_item,
    serialize_item,
    submit_for_review,
)
from edugov.services.moderation.escalations import serialize_escalation


router = APIRouter(prefix="/admin/ai-moderation", tags=["ai-moderation"], responses=DEFAULT_ERROR_RESPONSES)


class ScoreRequest(BaseModel):
    model_config = {"extra": "forbid"}

    content_type: str
    text: str
    content_id: int | None = None
    tenant_id: int | None = None


class ItemReviewRequest(BaseModel):
    model_config = {"extra": "forbid"}

    action: ModerationAction
    notes: str | None = None


@router.get("")
async def list_items_endpoint(
    status: str | None = "pending",
    page: Page = Depends(),
    principal: Principal = Depends(require_action("review_ai")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    items = await list_items(db, status=status or None, offset=page.offset, limit=page.limit)
    return success_response({"items": [serialize_item(item) for item in items], "pagination": page.meta(len(items))})


@router.get("/stats")
async def moderation_stats_endpoint(
    principal: Principal = Depends(require_action("review_ai")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return success_response(await moderation_stats(db))


@router.post("", status_code=201)
async def submit_endpoint(
    payload: ScoreRequest,
    principal: Principal = Depends(require_action("submit_ai_review")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    score, item = await submit_for_review(
        db,
        principal,
        content_type=payload.content_type,
        text=payload.text,
        content_id=payload.content_id,
        tenant_id=payload.tenant_id,
    )
    data = {
        "score": score.score,
        "flags": list(score.flags),
        "needs_review": score.needs_review,
        "is_aligned": score.is_aligned,
        "item": serialize_item(item) if item is not None else None,
    }
    return success_response(data, message="Queued for review" if item is not None else "No review needed")


@router.post("/{item_id}")
async def review_item_endpoint(
    item_id: int,
    payload: ItemReviewRequest,
    principal: Principal = Depends(require_action("review_ai")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    item, escalation = await review_item(db, principal, item_id, payload.action, notes=payload.notes, context=context)
    data = serialize_item(item)
    data["escalation"] = serialize_escalation(escalation) if escalation is not None else None
    return success_response(data, message=f"Item {item.status}")
