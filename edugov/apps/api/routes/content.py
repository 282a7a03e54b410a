from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, File, Form, UploadFile
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.apps.api.deps import Page, get_context, get_db, require_action
from edugov.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from edugov.apps.api.response import success_response
from edugov.services.audit import RequestContext
from edugov.services.authz import Principal
from edugov.services.intake import UploadPayload, retry_upload, serialize_upload, submit_upload
from edugov.services.moderation.enforcement import edit_content, serialize_editable
from edugov.services.moderation.review import list_uploads, review_upload


router = APIRouter(prefix="/admin/content", tags=["content"], responses=DEFAULT_ERROR_RESPONSES)


class RejectRequest(BaseModel):
    model_config = {"extra": "forbid"}

    reason: str


def _split_tags(raw: list[str]) -> tuple[str, ...]:
    # Accept repeated form fields and comma-separated values alike.
    tags: list[str] = []
    for value in raw:
        tags.extend(part for part in value.split(","))
    return tuple(tags)


@router.post("", status_code=201)
async def upload_content(
    title: str = Form(...),
    file: UploadFile = File(...),
    description: str | None = Form(default=None),
    tags: list[str] = Form(default=[]),
    category: str | None = Form(default=None),
    tenant: str | None = Form(default=None),
    principal: Principal = Depends(require_action("submit_upload")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    body = await file.read()
    payload = UploadPayload(
        title=title,
        mime_type=file.content_type or "application/octet-stream",
        filename=file.filename or "upload",
        data=body,
        description=description,
        tags=_split_tags(tags),
        category=category,
        tenant=tenant,
    )
    upload = await submit_upload(db, principal, payload, context=context)
    message = "Upload failed; retry is available" if upload.status == "failed" else "Content uploaded"
    return success_response(serialize_upload(upload), message=message)


@router.get("")
async def list_content(
    status: str | None = None,
    tenant_id: int | None = None,
    media_kind: str | None = None,
    page: Page = Depends(),
    principal: Principal = Depends(require_action("review_upload")),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    uploads = await list_uploads(
        db,
        status=status,
        tenant_id=tenant_id,
        media_kind=media_kind,
        offset=page.offset,
        limit=page.limit,
    )
    return success_response(
        {"items": [serialize_upload(upload) for upload in uploads], "pagination": page.meta(len(uploads))}
    )


@router.post("/{upload_id}/approve")
async def approve_content(
    upload_id: str,
    principal: Principal = Depends(require_action("review_upload")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    upload = await review_upload(db, principal, upload_id, "approve", context=context)
    return success_response(serialize_upload(upload), message="Content approved")


@router.post("/{upload_id}/reject")
async def reject_content(
    upload_id: str,
    payload: RejectRequest,
    principal: Principal = Depends(require_action("review_upload")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    upload = await review_upload(db, principal, upload_id, "reject", reason=payload.reason, context=context)
    return success_response(serialize_upload(upload), message="Content rejected")


@router.post("/{upload_id}/retry")
async def retry_content(
    upload_id: str,
    file: UploadFile | None = File(default=None),
    principal: Principal = Depends(require_action("retry_upload")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    data = await file.read() if file is not None else None
    upload = await retry_upload(
        db,
        principal,
        upload_id,
        data=data,
        filename=file.filename if file is not None else None,
        context=context,
    )
    return success_response(serialize_upload(upload), message="Upload queued for retry")


@router.patch("/{content_type}/{content_id}")
async def edit_content_endpoint(
    content_type: str,
    content_id: str,
    patch: dict[str, Any] = Body(...),
    principal: Principal = Depends(require_action("edit_content")),
    db: AsyncSession = Depends(get_db),
    context: RequestContext = Depends(get_context),
) -> dict[str, Any]:
    target = await edit_content(db, principal, content_type, content_id, patch, context=context)
    return success_response(serialize_editable(content_type, target), message="Content updated")
