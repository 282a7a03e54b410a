from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import AlreadyProcessedError, ConflictError, NotFoundError, ValidationError
from edugov.domain.models import Upload, utc_now
from edugov.domain.state import TERMINAL_UPLOAD_STATUSES, UploadDecision, values_of
from edugov.services import outbox
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce
from edugov.services.intake import serialize_upload


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UploadTransition:
    status: str
    audit_action: str
    requires_reason: bool
    requires_blob: bool


_TRANSITIONS: dict[str, UploadTransition] = {
    "approve": UploadTransition(
        status="approved", audit_action="content_approve", requires_reason=False, requires_blob=True
    ),
    "reject": UploadTransition(
        status="rejected", audit_action="content_reject", requires_reason=True, requires_blob=False
    ),
}
# Every reviewer decision must have exactly one transition.
assert set(_TRANSITIONS) == values_of(UploadDecision)


async def review_upload(
    session: AsyncSession,
    principal: Principal | None,
    upload_id: str,
    decision: UploadDecision,
    *,
    reason: str | None = None,
    context: RequestContext | None = None,
) -> Upload:
    """Approve or reject a pending upload.

    The transition is a conditional UPDATE on ``status = 'pending'``; when two
    reviewers race, the loser matches no row and gets "already processed"
    with no audit entry and no outbox event. Approval also requires the blob
    to be stored, so an upload still being written cannot be published.
    """
    principal = enforce(principal, "review_upload")
    transition = _TRANSITIONS.get(decision)
    if transition is None:
        raise ValidationError(f"Invalid action: {decision}")
    cleaned_reason = (reason or "").strip() or None
    if transition.requires_reason and not cleaned_reason:
        raise ValidationError("Rejection reason is required")

    upload = await session.get(Upload, upload_id)
    if upload is None:
        raise NotFoundError("Upload not found")
    before = serialize_upload(upload)
    now = utc_now()
    conditions = [Upload.id == upload_id, Upload.status == "pending"]
    if transition.requires_blob:
        conditions.append(Upload.blob_handle.is_not(None))
    result = await session.execute(
        update(Upload)
        .where(*conditions)
        .values(
            status=transition.status,
            reviewer_id=principal.id,
            reviewed_at=now,
            rejection_reason=cleaned_reason if transition.status == "rejected" else None,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        current = await session.get(Upload, upload_id, populate_existing=True)
        if current is None:
            raise NotFoundError("Upload not found")
        status = current.status
        if status in TERMINAL_UPLOAD_STATUSES:
            raise AlreadyProcessedError("Upload already processed", details={"status": status})
        if status == "pending":
            raise ConflictError(
                "Upload content is still being stored", details={"status": status, "reason": "blob_pending"}
            )
        raise ConflictError(f"Upload is not pending (status={status})", details={"status": status})

    await session.refresh(upload)
    after = serialize_upload(upload)
    await log_action(
        session,
        actor_id=principal.id,
        action_type=transition.audit_action,
        target_type="upload",
        target_id=upload.id,
        detail=cleaned_reason or f"Upload {transition.status}",
        before=before,
        after=after,
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="upload",
        subject_id=upload.owner_id,
        payload={
            "upload_id": upload.id,
            "status": upload.status,
            "previous_status": before["status"],
            "reason": cleaned_reason,
        },
    )
    await session.commit()
    logger.info("upload_reviewed upload_id=%s status=%s reviewer_id=%s", upload.id, upload.status, principal.id)
    return upload


async def list_uploads(
    session: AsyncSession,
    *,
    status: str | None = None,
    tenant_id: int | None = None,
    media_kind: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Upload]:
    # Review queue reads oldest-first so nothing starves.
    stmt = select(Upload)
    if status:
        stmt = stmt.where(Upload.status == status)
    if tenant_id is not None:
        stmt = stmt.where(Upload.tenant_id == tenant_id)
    if media_kind:
        stmt = stmt.where(Upload.media_kind == media_kind)
    stmt = stmt.order_by(Upload.created_at.asc(), Upload.id.asc()).offset(offset).limit(limit)
    return list((await session.execute(stmt)).scalars().all())
