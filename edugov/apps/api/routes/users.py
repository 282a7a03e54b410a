from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.users import (
    NewUser,
    change_role,
    change_status,
    create_user,
    list_users,
    serialize_user,
    update_user,
)


router = APIRouter(prefix="/admin/users", tags=["users"], responses=DEFAULT_ERROR_RESPONSES)


class CreateUserRequest(BaseModel):
    model_config = {"extra": "forbid"}

    first_name: str
    last_name: str
    email: str
    password: str = Field(repr=False)
    role: str = "member"
    # Tenant id or display name; resolved case-insensitively with aliases.
    tenant: int | str | None = None


class UpdateUserRequest(BaseModel):
    model_config = {"extra": "forbid"}

    first_name: str | None = None
    last_name: str | None = None
    email: str | None = None


class RoleChangeRequest(BaseModel):
    model_config = {"extra": "forbid"}

    role: str


class StatusChangeRequest(BaseModel):
    model_config = {"extra": "forbid"}

    is_active: bool


@router.post("", status_code=201)
async def create_user_endpoint(
    payload: CreateUserRequest,
    principal: Principal = Depends(require_action("manage_users")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    user = await create_user(db, principal, NewUser(**payload.model_dump()), context=context)
    return success_response(serialize_user(user), message="User created")


@router.get("")
async def list_users_endpoint(
    tenant_id: int | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    search: str | None = Query(default=None, max_length=200),
    page: Page = Depends(),
    principal: Principal = Depends(require_action("manage_users")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    users, total = await list_users(
        db,
        tenant_id=tenant_id,
        role=role,
        is_active=is_active,
        search=search,
        offset=page.offset,
        limit=page.limit,
    )
    return success_response({"items": [serialize_user(user) for user in users], "pagination": page.meta(len(users), total)})


@router.patch("/{user_id}")
async def update_user_endpoint(
    user_id: str,
    payload: UpdateUserRequest,
    principal: Principal = Depends(require_action("manage_users")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    user = await update_user(db, principal, user_id, **payload.model_dump(), context=context)
    return success_response(serialize_user(user), message="User updated")


@router.patch("/{user_id}/role")
async def change_role_endpoint(
    user_id: str,
    payload: RoleChangeRequest,
    principal: Principal = Depends(require_action("change_role")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    user = await change_role(db, principal, user_id, payload.role, context=context)
    return success_response(serialize_user(user), message="Role updated")


@router.patch("/{user_id}/status")
async def change_status_endpoint(
    user_id: str,
    payload: StatusChangeRequest,
    principal: Principal = Depends(require_action("manage_users")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    user = await change_status(db, principal, user_id, payload.is_active, context=context)
    return success_response(serialize_user(user), message="Status updated")
