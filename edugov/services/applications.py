from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import AlreadyProcessedError, ConflictError, NotFoundError, ValidationError
from edugov.domain.models import InstructorApplication, User, utc_now
from edugov.domain.state import ApplicationDecision, ApplicationStatus, values_of
from edugov.services import outbox
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce


logger = logging.getLogger(__name__)

MAX_APPLICATION_CHARS = 5000

_DECISIONS = {
    "approve": ("approved", "application_approve"),
    "reject": ("rejected", "application_reject"),
}
assert set(_DECISIONS) == values_of(ApplicationDecision)


def serialize_application(application: InstructorApplication) -> dict[str, Any]:
    return {
        "id": application.id,
        "user_id": application.user_id,
        "application_text": application.application_text,
        "qualifications": application.qualifications,
        "status": application.status,
        "reviewer_id": application.reviewer_id,
        "review_notes": application.review_notes,
        "created_at": application.created_at.isoformat() if application.created_at else None,
        "reviewed_at": application.reviewed_at.isoformat() if application.reviewed_at else None,
    }


async def apply_for_instructor(
    session: AsyncSession,
    principal: Principal | None,
    *,
    application_text: str,
    qualifications: str | None = None,
) -> InstructorApplication:
    principal = enforce(principal, "apply_instructor")
    if principal.role != "member":
        raise ValidationError("Only members can apply to become instructors")
    text = (application_text or "").strip()
    if not text:
        raise ValidationError("Application text is required")
    if len(text) > MAX_APPLICATION_CHARS:
        raise ValidationError(f"Application text must be at most {MAX_APPLICATION_CHARS} characters")
    pending = (
        await session.execute(
            select(InstructorApplication.id).where(
                InstructorApplication.user_id == principal.id,
                InstructorApplication.status == "pending",
            )
        )
    ).first()
    if pending is not None:
        raise ConflictError("An application is already pending", details={"application_id": pending[0]})
    application = InstructorApplication(
        user_id=principal.id,
        application_text=text,
        qualifications=(qualifications or "").strip() or None,
        status="pending",
    )
    session.add(application)
    await session.commit()
    logger.info("instructor_application_submitted application_id=%s user_id=%s", application.id, principal.id)
    return application


async def list_applications(
    session: AsyncSession,
    *,
    status: str | None = "pending",
    offset: int = 0,
    limit: int = 50,
) -> list[InstructorApplication]:
    if status is not None and status not in values_of(ApplicationStatus):
        raise ValidationError(f"Invalid status: {status}")
    stmt = select(InstructorApplication)
    if status:
        stmt = stmt.where(InstructorApplication.status == status)
    stmt = stmt.order_by(InstructorApplication.created_at.asc(), InstructorApplication.id.asc())
    return list((await session.execute(stmt.offset(offset).limit(limit))).scalars().all())


async def review_application(
    session: AsyncSession,
    principal: Principal | None,
    application_id: int,
    decision: ApplicationDecision,
    *,
    notes: str | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> InstructorApplication:
    """Approve or reject a pending instructor application.

    Approval promotes the applicant to instructor in the same transaction.
    """
    principal = enforce(principal, "review_application")
    resolved = _DECISIONS.get(decision)
    if resolved is None:
        raise ValidationError(f"Invalid decision: {decision}")
    status, audit_action = resolved
    cleaned_notes = (notes or "").strip() or None

    application = await session.get(InstructorApplication, application_id)
    if application is None:
        raise NotFoundError("Application not found")
    before = serialize_application(application)
    reviewed_at = now or utc_now()
    result = await session.execute(
        update(InstructorApplication)
        .where(InstructorApplication.id == application_id, InstructorApplication.status == "pending")
        .values(status=status, reviewer_id=principal.id, review_notes=cleaned_notes, reviewed_at=reviewed_at)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise AlreadyProcessedError("Application already reviewed")
    await session.refresh(application)

    if status == "approved":
        # Admins keep their role; only members are promoted.
        await session.execute(
            update(User)
            .where(User.id == application.user_id, User.role == "member")
            .values(role="instructor", updated_at=reviewed_at)
            .execution_options(synchronize_session=False)
        )
    await log_action(
        session,
        actor_id=principal.id,
        action_type=audit_action,
        target_type="instructor_application",
        target_id=application.id,
        detail=cleaned_notes or f"Application {status}",
        before=before,
        after=serialize_application(application),
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="user",
        subject_id=application.user_id,
        payload={"application_id": application.id, "status": status},
    )
    await session.commit()
    logger.info("instructor_application_reviewed application_id=%s status=%s", application.id, status)
    return application
