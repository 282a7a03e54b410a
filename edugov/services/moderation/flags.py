from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import AlreadyProcessedError, NotFoundError, ValidationError
from edugov.domain.models import Flag, MemberWarning, utc_now
from edugov.domain.state import FlagAction, FlagTargetType, values_of
from edugov.persistence.guards import rows_or_empty, scalar_or_default
from edugov.services import outbox
from edugov.services.anomalies import log_anomaly
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import Principal, enforce
from edugov.services.moderation.targets import TargetRef, hide_target, load_target, target_author_id
from edugov.services.telemetry import record_flag_review


logger = logging.getLogger(__name__)

FLAG_REASONS = frozenset({"spam", "inappropriate", "harassment", "misinformation", "off_topic", "other"})


@dataclass(frozen=True)
class FlagResolution:
    status: str
    action_taken: str


FlagHandler = Callable[[AsyncSession, Flag, object | None, Principal, str | None], Awaitable[FlagResolution]]


async def _dismiss(
    session: AsyncSession, flag: Flag, target: object | None, principal: Principal, notes: str | None
) -> FlagResolution:
    return FlagResolution(status="dismissed", action_taken="dismissed")


async def _remove(
    session: AsyncSession, flag: Flag, target: object | None, principal: Principal, notes: str | None
) -> FlagResolution:
    if target is None or not hide_target(target, reason=notes or flag.reason):
        return FlagResolution(status="action_taken", action_taken="no_op")
    return FlagResolution(status="action_taken", action_taken="removed")


async def _warn(
    session: AsyncSession, flag: Flag, target: object | None, principal: Principal, notes: str | None
) -> FlagResolution:
    author_id = target_author_id(target) if target is not None else None
    if author_id is None:
        return FlagResolution(status="action_taken", action_taken="no_op")
    session.add(MemberWarning(user_id=author_id, moderator_id=principal.id, reason=notes or flag.reason, flag_id=flag.id))
    return FlagResolution(status="action_taken", action_taken="warned")


_HANDLERS: dict[str, FlagHandler] = {
    "dismiss": _dismiss,
    "remove": _remove,
    "warn": _warn,
}
assert set(_HANDLERS) == values_of(FlagAction)


def serialize_flag(flag: Flag) -> dict[str, Any]:
    return {
        "id": flag.id,
        "content_type": flag.content_type,
        "content_id": flag.content_id,
        "reporter_id": flag.reporter_id,
        "reason": flag.reason,
        "description": flag.description,
        "status": flag.status,
        "reviewer_id": flag.reviewer_id,
        "review_notes": flag.review_notes,
        "action_taken": flag.action_taken,
        "review_seconds": flag.review_seconds,
        "created_at": flag.created_at.isoformat() if flag.created_at else None,
        "reviewed_at": flag.reviewed_at.isoformat() if flag.reviewed_at else None,
    }


async def create_flag(
    session: AsyncSession,
    principal: Principal | None,
    *,
    content_type: str,
    content_id: int,
    reason: str,
    description: str | None = None,
    now: datetime | None = None,
) -> Flag:
    principal = enforce(principal, "file_flag")
    if content_type not in values_of(FlagTargetType):
        raise ValidationError(f"Unsupported content type: {content_type}")
    normalized_reason = (reason or "").strip().lower()
    if normalized_reason not in FLAG_REASONS:
        raise ValidationError(f"Invalid reason: {reason}")
    target = await load_target(session, TargetRef(content_type, content_id))
    if target is None:
        raise NotFoundError("Reported content not found")
    flag = Flag(
        content_type=content_type,
        content_id=content_id,
        reporter_id=principal.id,
        reason=normalized_reason,
        description=(description or "").strip() or None,
        status="pending",
        created_at=now or utc_now(),
    )
    session.add(flag)
    await session.commit()
    logger.info("flag_created flag_id=%s content_type=%s content_id=%s", flag.id, content_type, content_id)
    return flag


async def review_flag(
    session: AsyncSession,
    principal: Principal | None,
    flag_id: int,
    action: FlagAction,
    *,
    notes: str | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Flag:
    """Resolve a pending flag with dismiss, remove or warn.

    The flag is claimed with a conditional UPDATE before any content effect,
    so concurrent reviewers cannot both act; the loser gets a conflict.
    A vanished target still closes the flag with action ``no_op``.
    """
    principal = enforce(principal, "review_flag")
    handler = _HANDLERS.get(action)
    if handler is None:
        raise ValidationError(f"Invalid action: {action}")
    cleaned_notes = (notes or "").strip() or None
    settings = get_settings()

    flag = await session.get(Flag, flag_id)
    if flag is None:
        raise NotFoundError("Flag not found")
    if flag.status != "pending":
        raise AlreadyProcessedError("Flag already processed", details={"status": flag.status})
    before = serialize_flag(flag)
    target = await load_target(session, TargetRef(flag.content_type, flag.content_id))
    resolution = await handler(session, flag, target, principal, cleaned_notes)

    reviewed_at = now or utc_now()
    review_seconds = max(0, int((reviewed_at - flag.created_at).total_seconds()))
    result = await session.execute(
        update(Flag)
        .where(Flag.id == flag_id, Flag.status == "pending")
        .values(
            status=resolution.status,
            action_taken=resolution.action_taken,
            reviewer_id=principal.id,
            review_notes=cleaned_notes,
            reviewed_at=reviewed_at,
            review_seconds=review_seconds,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        # Another reviewer won; discard our content effects with the transaction.
        await session.rollback()
        raise AlreadyProcessedError("Flag already processed")
    await session.refresh(flag)

    record_flag_review(review_seconds=review_seconds, slo_seconds=settings.flag_review_slo_s)
    if review_seconds > settings.flag_review_slo_s:
        await log_anomaly(
            session,
            anomaly_type="review_time_exceeded",
            details={"flag_id": flag.id, "review_seconds": review_seconds, "slo_seconds": settings.flag_review_slo_s},
            now=reviewed_at,
        )
    await log_action(
        session,
        actor_id=principal.id,
        action_type="content_moderation",
        target_type=flag.content_type,
        target_id=flag.content_id,
        detail=f"Flag {flag.id} resolved: {resolution.action_taken}",
        before=before,
        after=serialize_flag(flag),
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="moderation",
        subject_id=flag.reporter_id,
        payload={"flag_id": flag.id, "status": flag.status, "action_taken": flag.action_taken},
    )
    await session.commit()
    logger.info(
        "flag_reviewed flag_id=%s action=%s outcome=%s review_seconds=%s",
        flag.id,
        action,
        resolution.action_taken,
        review_seconds,
    )
    return flag


async def list_flags(
    session: AsyncSession,
    *,
    status: str | None = None,
    content_type: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[Flag]:
    # A missing flags table is an empty queue.
    stmt = select(Flag)
    if status:
        stmt = stmt.where(Flag.status == status)
    if content_type:
        stmt = stmt.where(Flag.content_type == content_type)
    stmt = stmt.order_by(Flag.created_at.asc(), Flag.id.asc()).offset(offset).limit(limit)
    rows = await rows_or_empty(session, stmt, source="flags")
    return [row[0] for row in rows]


async def count_pending_older_than(session: AsyncSession, cutoff: datetime) -> int:
    stmt = select(func.count()).select_from(Flag).where(Flag.status == "pending", Flag.created_at <= cutoff)
    return int(await scalar_or_default(session, stmt, default=0, source="flags"))


async def flag_stats(session: AsyncSession) -> dict[str, Any]:
    by_status = await rows_or_empty(
        session, select(Flag.status, func.count()).group_by(Flag.status), source="flags"
    )
    by_reason = await rows_or_empty(
        session, select(Flag.reason, func.count()).group_by(Flag.reason), source="flags"
    )
    avg_review = await scalar_or_default(
        session,
        select(func.avg(Flag.review_seconds)).where(Flag.review_seconds.is_not(None)),
        default=None,
        source="flags",
    )
    return {
        "by_status": {str(status): int(count) for status, count in by_status},
        "by_reason": {str(reason): int(count) for reason, count in by_reason},
        "avg_review_seconds": float(avg_review) if avg_review is not None else None,
    }
