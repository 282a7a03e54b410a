from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.quota import serialize_quota, tenant_quotas, update_quota_limit


router = APIRouter(prefix="/admin/quotas", tags=["quotas"], responses=DEFAULT_ERROR_RESPONSES)


class QuotaUpdateRequest(BaseModel):
    model_config = {"extra": "forbid"}

    limit: int = Field(ge=0)
    tenant: int | str | None = None


@router.get("")
async def list_quotas_endpoint(
    tenant: str | None = None,
    principal: Principal = Depends(require_action("manage_quota")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    snapshots = await tenant_quotas(db, principal, tenant)
    return success_response({"items": [serialize_quota(snapshot) for snapshot in snapshots]})


@router.patch("/{kind}")
async def update_quota_endpoint(
    kind: str,
    payload: QuotaUpdateRequest,
    principal: Principal = Depends(require_action("manage_quota")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    snapshot = await update_quota_limit(
        db,
        principal,
        tenant=payload.tenant,
        kind=kind,
        limit=payload.limit,
        context=context,
    )
    return success_response(serialize_quota(snapshot), message="Quota updated")
