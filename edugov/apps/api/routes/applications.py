from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.applications import (
    apply_for_instructor,
    list_applications,
    review_application,
    serialize_application,
)
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal


router = APIRouter(tags=["applications"], responses=DEFAULT_ERROR_RESPONSES)


class ApplicationRequest(BaseModel):
    model_config = {"extra": "forbid"}

    application_text: str
    qualifications: str | None = None


class ApplicationReviewRequest(BaseModel):
    model_config = {"extra": "forbid"}

    notes: str | None = None


@router.post("/applications", status_code=201)
async def apply_endpoint(
    payload: ApplicationRequest,
    principal: Principal = Depends(require_action("apply_instructor")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    application = await apply_for_instructor(
        db,
        principal,
        application_text=payload.application_text,
        qualifications=payload.qualifications,
    )
    return success_response(serialize_application(application), message="Application submitted")


@router.get("/admin/applications")
async def list_applications_endpoint(
    status: str | None = "pending",
    page: Page = Depends(),
    principal: Principal = Depends(require_action("review_application")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    applications = await list_applications(db, status=status or None, offset=page.offset, limit=page.limit)
    return success_response(
        {
            "items": [serialize_application(application) for application in applications],
            "pagination": page.meta(len(applications)),
        }
    )


@router.post("/admin/applications/{application_id}/approve")
async def approve_application_endpoint(
    application_id: int,
    payload: ApplicationReviewRequest | None = None,
    principal: Principal = Depends(require_action("review_application")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    application = await review_application(
        db,
        principal,
        application_id,
        "approve",
        notes=payload.notes if payload else None,
        context=context,
    )
    return success_response(serialize_application(application), message="Application approved")


@router.post("/admin/applications/{application_id}/reject")
async def reject_application_endpoint(
    application_id: int,
    payload: ApplicationReviewRequest | None = None,
    principal: Principal = Depends(require_action("review_application")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    application = await review_application(
        db,
        principal,
        application_id,
        "reject",
        notes=payload.notes if payload else None,
        context=context,
    )
    return success_response(serialize_application(application), message="Application rejected")
