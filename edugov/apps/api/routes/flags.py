from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.domain.state import FlagAction
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.moderation.flags import create_flag, flag_stats, list_flags, review_flag, serialize_flag


router = APIRouter(tags=["flags"], responses=DEFAULT_ERROR_RESPONSES)


class FlagRequest(BaseModel):
    model_config = {"extra": "forbid"}

    content_type: str
    content_id: int
    reason: str
    description: str | None = None


class FlagReviewRequest(BaseModel):
    model_config = {"extra": "forbid"}

    action: FlagAction
    notes: str | None = None


@router.post("/flags", status_code=201)
async def create_flag_endpoint(
    payload: FlagRequest,
    principal: Principal = Depends(require_action("file_flag")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    flag = await create_flag(
        db,
        principal,
        content_type=payload.content_type,
        content_id=payload.content_id,
        reason=payload.reason,
        description=payload.description,
    )
    return success_response(serialize_flag(flag), message="Content reported")


@router.get("/admin/flags")
async def list_flags_endpoint(
    status: str | None = "pending",
    content_type: str | None = None,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("review_flag")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    flags = await list_flags(db, status=status or None, content_type=content_type, offset=page.offset, limit=page.limit)
    return success_response({"items": [serialize_flag(flag) for flag in flags], "pagination": page.meta(len(flags))})


@router.get("/admin/flags/stats")
async def flag_stats_endpoint(
    principal: Principal = Depends(require_action("review_flag")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    return success_response(await flag_stats(db))


@router.post("/admin/flags/{flag_id}/review")
async def review_flag_endpoint(
    flag_id: int,
    payload: FlagReviewRequest,
    principal: Principal = Depends(require_action("review_flag")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    flag = await review_flag(db, principal, flag_id, payload.action, notes=payload.notes, context=context)
    return success_response(serialize_flag(flag), message="Flag reviewed")
