from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
import logging
import time
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import (
    AlreadyProcessedError,
    ConflictError,
    NotFoundError,
    QuotaExceededError,
    StorageError,
    ValidationError,
)
from edugov.domain.models import Upload, utc_now
from edugov.domain.state import TERMINAL_UPLOAD_STATUSES
from edugov.services import outbox
from edugov.services.anomalies import log_anomaly
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import AuthzTarget, Principal, enforce
from edugov.services.quota import QuotaService, get_quota_service
from edugov.services.storage import BlobStore, get_blob_store
from edugov.services.tenants import resolve_tenant


logger = logging.getLogger(__name__)

MAX_TITLE_CHARS = 200
MAX_DESCRIPTION_CHARS = 2000
MAX_TAGS = 20
MAX_TAG_CHARS = 50
MAX_CATEGORY_CHARS = 100

_DOCUMENT_MIME_TYPES = frozenset(
    {
        "application/pdf",
        "application/msword",
        "application/rtf",
        "application/epub+zip",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
        "application/vnd.oasis.opendocument.text",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
    }
)


@dataclass(frozen=True)
class UploadPayload:
    title: str
    mime_type: str
    filename: str
    data: bytes
    description: str | None = None
    tags: tuple[str, ...] = field(default_factory=tuple)
    category: str | None = None
    tenant: int | str | None = None


def infer_media_kind(mime_type: str) -> str:
    # Media kind follows the MIME major type; office formats count as documents.
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    major = normalized.split("/", 1)[0]
    if major == "video":
        return "video"
    if major == "image":
        return "image"
    if major == "text" or normalized in _DOCUMENT_MIME_TYPES:
        return "document"
    return "other"


def validate_payload(payload: UploadPayload) -> UploadPayload:
    """Normalize and validate an upload before any I/O happens."""
    title = (payload.title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if len(title) > MAX_TITLE_CHARS:
        raise ValidationError(f"Title must be at most {MAX_TITLE_CHARS} characters")
    description = payload.description.strip() if payload.description else None
    if description and len(description) > MAX_DESCRIPTION_CHARS:
        raise ValidationError(f"Description must be at most {MAX_DESCRIPTION_CHARS} characters")
    if len(payload.tags) > MAX_TAGS:
        raise ValidationError(f"At most {MAX_TAGS} tags are allowed")
    tags: list[str] = []
    for tag in payload.tags:
        if not isinstance(tag, str):
            raise ValidationError("Tags must be strings")
        cleaned = tag.strip()
        if not cleaned:
            continue
        if len(cleaned) > MAX_TAG_CHARS:
            raise ValidationError(f"Tags must be at most {MAX_TAG_CHARS} characters")
        tags.append(cleaned)
    category = payload.category.strip() if payload.category else None
    if category and len(category) > MAX_CATEGORY_CHARS:
        raise ValidationError(f"Category must be at most {MAX_CATEGORY_CHARS} characters")
    _validate_bytes(payload.data)
    return UploadPayload(
        title=title,
        mime_type=(payload.mime_type or "application/octet-stream").strip().lower(),
        filename=payload.filename or "upload",
        data=payload.data,
        description=description or None,
        tags=tuple(tags),
        category=category or None,
        tenant=payload.tenant,
    )


def _validate_bytes(data: bytes) -> None:
    if not data:
        raise ValidationError("File is empty")
    max_bytes = get_settings().upload_max_bytes
    if len(data) > max_bytes:
        raise ValidationError(f"File exceeds the {max_bytes} byte limit")


def serialize_upload(upload: Upload) -> dict[str, Any]:
    return {
        "id": upload.id,
        "owner_id": upload.owner_id,
        "tenant_id": upload.tenant_id,
        "media_kind": upload.media_kind,
        "mime_type": upload.mime_type,
        "filename": upload.filename,
        "byte_size": upload.byte_size,
        "blob_handle": upload.blob_handle,
        "title": upload.title,
        "description": upload.description,
        "tags": list(upload.tags or []),
        "category": upload.category,
        "status": upload.status,
        "reviewer_id": upload.reviewer_id,
        "rejection_reason": upload.rejection_reason,
        "error_message": upload.error_message,
        "retry_count": upload.retry_count,
        "created_at": upload.created_at.isoformat() if upload.created_at else None,
        "updated_at": upload.updated_at.isoformat() if upload.updated_at else None,
        "reviewed_at": upload.reviewed_at.isoformat() if upload.reviewed_at else None,
    }


def _upload_event(upload: Upload) -> dict[str, Any]:
    return {"upload_id": upload.id, "status": upload.status, "tenant_id": upload.tenant_id, "title": upload.title}


async def submit_upload(
    session: AsyncSession,
    principal: Principal | None,
    payload: UploadPayload,
    *,
    store: BlobStore | None = None,
    quota: QuotaService | None = None,
    context: RequestContext | None = None,
) -> Upload:
    """Admit, persist and store a new upload.

    The upload row and its quota increment commit together before the blob
    is written. Admin uploads self-publish. Audit and outbox writes are soft
    dependencies and never fail the upload.
    """
    started = time.monotonic()
    payload = validate_payload(payload)
    principal = enforce(principal, "submit_upload")
    quota = quota or get_quota_service()
    store = store or get_blob_store()

    tenant_ref = payload.tenant if payload.tenant not in (None, "") else principal.tenant_id
    tenant = await resolve_tenant(session, tenant_ref)
    tenant_id = tenant.id
    enforce(principal, "submit_upload", AuthzTarget(tenant_id=tenant_id))

    kind = infer_media_kind(payload.mime_type)
    snapshot = await quota.check(session, tenant_id=tenant_id, kind=kind)
    if snapshot.exhausted:
        await session.rollback()
        raise QuotaExceededError(
            f"Upload quota exceeded: {snapshot.usage}/{snapshot.limit} {kind} uploads used this month",
            details={"tenant_id": tenant_id, "media_kind": kind, "limit": snapshot.limit, "usage": snapshot.usage},
        )

    now = quota.now()
    upload = Upload(
        owner_id=principal.id,
        tenant_id=tenant_id,
        media_kind=kind,
        mime_type=payload.mime_type,
        filename=payload.filename,
        byte_size=len(payload.data),
        title=payload.title,
        description=payload.description,
        tags=list(payload.tags),
        category=payload.category,
        status="pending",
        retry_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(upload)
    await session.flush()
    try:
        await quota.increment(session, tenant_id=tenant_id, kind=kind)
    except QuotaExceededError as exc:
        await session.rollback()
        raise QuotaExceededError(
            f"Upload quota exceeded for {kind}: another upload took the last slot",
            details=exc.details,
            race_lost=True,
        ) from exc
    await session.commit()

    try:
        handle = await store.put(
            payload.data,
            tenant_id=tenant_id,
            filename=payload.filename,
            content_type=payload.mime_type,
        )
    except StorageError as exc:
        return await mark_upload_failed(
            session,
            upload.id,
            message=exc.message,
            actor_id=principal.id,
            context=context,
        )

    values: dict[str, Any] = {"blob_handle": handle, "updated_at": utc_now()}
    if principal.is_admin:
        # Admin uploads skip the review queue.
        values.update(status="approved", reviewer_id=principal.id, reviewed_at=values["updated_at"])
    await session.execute(
        update(Upload)
        .where(Upload.id == upload.id, Upload.status == "pending")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await session.refresh(upload)

    elapsed_s = time.monotonic() - started
    slo_s = get_settings().upload_publish_slo_s
    if elapsed_s > slo_s:
        await log_anomaly(
            session,
            anomaly_type="upload_time_exceeded",
            details={"upload_id": upload.id, "elapsed_s": round(elapsed_s, 1), "threshold_s": slo_s},
        )
    await log_action(
        session,
        actor_id=principal.id,
        action_type="content_upload",
        target_type="upload",
        target_id=upload.id,
        detail=f"Uploaded {kind} '{upload.title}'",
        after=serialize_upload(upload),
        context=context,
    )
    await outbox.enqueue(session, kind="upload", subject_id=upload.owner_id, payload=_upload_event(upload))
    await session.commit()
    logger.info(
        "upload_submitted upload_id=%s tenant_id=%s kind=%s status=%s",
        upload.id,
        upload.tenant_id,
        kind,
        upload.status,
    )
    return upload


async def mark_upload_failed(
    session: AsyncSession,
    upload_id: str,
    *,
    message: str,
    actor_id: str | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Upload:
    # Only pending uploads can fail; the quota consumed at creation stays consumed.
    current = now or utc_now()
    upload = await session.get(Upload, upload_id)
    if upload is None:
        raise NotFoundError("Upload not found")
    before = serialize_upload(upload)
    result = await session.execute(
        update(Upload)
        .where(Upload.id == upload_id, Upload.status == "pending")
        .values(status="failed", error_message=message[:1000], updated_at=current)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise ConflictError("Only pending uploads can be marked failed")
    await session.refresh(upload)
    await log_action(
        session,
        actor_id=actor_id,
        action_type="upload_failed",
        target_type="upload",
        target_id=upload.id,
        detail=message,
        before=before,
        after=serialize_upload(upload),
        context=context,
    )
    await outbox.enqueue(session, kind="upload", subject_id=upload.owner_id, payload=_upload_event(upload))
    await session.commit()
    logger.warning("upload_failed upload_id=%s message=%s", upload.id, message)
    return upload


async def retry_upload(
    session: AsyncSession,
    principal: Principal | None,
    upload_id: str,
    *,
    data: bytes | None = None,
    filename: str | None = None,
    store: BlobStore | None = None,
    context: RequestContext | None = None,
) -> Upload:
    """Move a failed upload back to pending without touching the quota.

    New bytes go to a fresh blob handle; the previous handle is left orphaned.
    """
    principal = enforce(principal, "retry_upload")
    if data is not None:
        _validate_bytes(data)
    upload = await session.get(Upload, upload_id)
    if upload is None:
        raise NotFoundError("Upload not found")
    if upload.status in TERMINAL_UPLOAD_STATUSES:
        raise AlreadyProcessedError("Upload already processed")
    if upload.status != "failed":
        raise ConflictError("Only failed uploads can be retried")
    if data is None and not upload.blob_handle:
        raise ValidationError("A file is required to retry this upload")

    before = serialize_upload(upload)
    values: dict[str, Any] = {
        "status": "pending",
        "retry_count": Upload.retry_count + 1,
        "error_message": None,
        "updated_at": utc_now(),
    }
    if data is not None:
        store = store or get_blob_store()
        values["blob_handle"] = await store.put(
            data,
            tenant_id=upload.tenant_id,
            filename=filename or upload.filename,
            content_type=upload.mime_type,
        )
        values["byte_size"] = len(data)
    result = await session.execute(
        update(Upload)
        .where(Upload.id == upload_id, Upload.status == "failed")
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise ConflictError("Upload was retried concurrently")
    await session.refresh(upload)
    await log_action(
        session,
        actor_id=principal.id,
        action_type="upload_retry",
        target_type="upload",
        target_id=upload.id,
        detail=f"Retry #{upload.retry_count}",
        before=before,
        after=serialize_upload(upload),
        context=context,
    )
    await outbox.enqueue(session, kind="upload", subject_id=upload.owner_id, payload=_upload_event(upload))
    await session.commit()
    logger.info("upload_retried upload_id=%s retry_count=%s", upload.id, upload.retry_count)
    return upload
