from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.moderation.enforcement import (
    ban_post,
    ban_user,
    list_bans,
    serialize_ban,
    unban_post,
    unban_user,
)


router = APIRouter(prefix="/admin/bans", tags=["bans"], responses=DEFAULT_ERROR_RESPONSES)


class BanRequest(BaseModel):
    model_config = {"extra": "forbid"}

    reason: str
    # Omit for a permanent ban.
    duration_seconds: int | None = Field(default=None, gt=0)


@router.get("")
async def list_bans_endpoint(
    target_type: str | None = None,
    active_only: bool = True,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("ban_user")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    bans = await list_bans(db, target_type=target_type, active_only=active_only, offset=page.offset, limit=page.limit)
    return success_response({"items": [serialize_ban(ban) for ban in bans], "pagination": page.meta(len(bans))})


@router.post("/user/{user_id}", status_code=201)
async def ban_user_endpoint(
    user_id: str,
    payload: BanRequest,
    principal: Principal = Depends(require_action("ban_user")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    ban = await ban_user(
        db, principal, user_id, reason=payload.reason, duration_seconds=payload.duration_seconds, context=context
    )
    return success_response(serialize_ban(ban), message="User banned")


@router.delete("/user/{user_id}")
async def unban_user_endpoint(
    user_id: str,
    principal: Principal = Depends(require_action("ban_user")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    ban = await unban_user(db, principal, user_id, context=context)
    if ban is None:
        return success_response(None, message="No active ban")
    return success_response(serialize_ban(ban), message="User unbanned")


@router.post("/post/{post_id}", status_code=201)
async def ban_post_endpoint(
    post_id: int,
    payload: BanRequest,
    principal: Principal = Depends(require_action("ban_post")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    ban = await ban_post(
        db, principal, post_id, reason=payload.reason, duration_seconds=payload.duration_seconds, context=context
    )
    return success_response(serialize_ban(ban), message="Post banned")


@router.delete("/post/{post_id}")
async def unban_post_endpoint(
    post_id: int,
    principal: Principal = Depends(require_action("ban_post")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    ban = await unban_post(db, principal, post_id, context=context)
    if ban is None:
        return success_response(None, message="No active ban")
    return success_response(serialize_ban(ban), message="Post unbanned")
