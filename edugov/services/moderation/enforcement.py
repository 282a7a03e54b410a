from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.errors import ConflictError, NotFoundError, ValidationError
from edugov.domain.models import Ban, ForumPost, User, utc_now
from edugov.domain.state import BanTargetType, EditableContentType, values_of
from edugov.persistence.guards import rows_or_empty
from edugov.services import outbox
from edugov.services.audit import RequestContext, log_action
from edugov.services.authz import AuthzTarget, Principal, enforce
from edugov.services.moderation.targets import TargetRef, load_target, target_author_id


logger = logging.getLogger(__name__)


def _text(max_length: int, *, required: bool) -> Callable[[str, Any], Any]:
    def validate(name: str, value: Any) -> Any:
        if value is None and not required:
            return None
        if not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")
        cleaned = value.strip()
        if required and not cleaned:
            raise ValidationError(f"{name} must not be empty")
        if len(cleaned) > max_length:
            raise ValidationError(f"{name} must be at most {max_length} characters")
        return cleaned or None

    return validate


def _tags(name: str, value: Any) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(tag, str) for tag in value):
        raise ValidationError(f"{name} must be a list of strings")
    if len(value) > 20:
        raise ValidationError(f"{name} must contain at most 20 entries")
    cleaned = [tag.strip() for tag in value if tag.strip()]
    if any(len(tag) > 50 for tag in cleaned):
        raise ValidationError(f"each entry in {name} must be at most 50 characters")
    return cleaned


def _flag(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValidationError(f"{name} must be a boolean")
    return value


# Per-type allowlist of editable fields and their validators.
EDITABLE_FIELDS: dict[str, dict[str, Callable[[str, Any], Any]]] = {
    "upload": {
        "title": _text(200, required=True),
        "description": _text(2000, required=False),
        "tags": _tags,
        "category": _text(100, required=False),
    },
    "forum_post": {
        "title": _text(300, required=False),
        "content": _text(20_000, required=True),
    },
    "resource": {
        "title": _text(300, required=True),
        "description": _text(5000, required=False),
        "is_public": _flag,
    },
    "course": {
        "title": _text(300, required=True),
        "description": _text(5000, required=False),
    },
}
assert set(EDITABLE_FIELDS) == values_of(EditableContentType)


def _coerce_content_id(content_type: str, content_id: str) -> str | int:
    # Uploads use opaque string ids; collaborator tables use integers.
    if content_type == "upload":
        return content_id
    try:
        return int(content_id)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid content id: {content_id}") from exc


async def edit_content(
    session: AsyncSession,
    principal: Principal | None,
    content_type: str,
    content_id: str,
    patch: dict[str, Any],
    *,
    context: RequestContext | None = None,
) -> object:
    """Apply an admin edit to descriptive fields of a content row.

    Approved and rejected uploads stay terminal; only the allowlisted
    descriptive fields change.
    """
    principal = enforce(principal, "edit_content")
    allowed = EDITABLE_FIELDS.get(content_type)
    if allowed is None:
        raise ValidationError(f"Unsupported content type: {content_type}")
    if not patch:
        raise ValidationError("No fields to update")
    unknown = sorted(set(patch) - set(allowed))
    if unknown:
        raise ValidationError(f"Fields not editable: {', '.join(unknown)}", details={"fields": unknown})
    changes = {name: allowed[name](name, value) for name, value in patch.items()}

    target = await load_target(session, TargetRef(content_type, _coerce_content_id(content_type, content_id)))
    if target is None:
        raise NotFoundError("Content not found")
    before = {name: getattr(target, name) for name in changes}
    for name, value in changes.items():
        setattr(target, name, value)
    target.updated_at = utc_now()
    await log_action(
        session,
        actor_id=principal.id,
        action_type="content_edit",
        target_type=content_type,
        target_id=content_id,
        detail=f"Edited {', '.join(sorted(changes))}",
        before=before,
        after=changes,
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="content",
        subject_id=target_author_id(target) or principal.id,
        payload={"content_type": content_type, "content_id": str(content_id), "fields": sorted(changes)},
    )
    await session.commit()
    logger.info("content_edited content_type=%s content_id=%s fields=%s", content_type, content_id, sorted(changes))
    return target


def serialize_editable(content_type: str, target: object) -> dict[str, Any]:
    # Only the allowlisted fields; collaborator rows carry columns the core does not own.
    payload: dict[str, Any] = {"content_type": content_type, "id": getattr(target, "id", None)}
    for name in EDITABLE_FIELDS.get(content_type, {}):
        value = getattr(target, name, None)
        payload[name] = list(value) if isinstance(value, (list, tuple)) else value
    return payload


def serialize_ban(ban: Ban) -> dict[str, Any]:
    return {
        "id": ban.id,
        "target_type": ban.target_type,
        "target_id": ban.target_id,
        "reason": ban.reason,
        "moderator_id": ban.moderator_id,
        "expires_at": ban.expires_at.isoformat() if ban.expires_at else None,
        "active": ban.active,
        "created_at": ban.created_at.isoformat() if ban.created_at else None,
        "lifted_at": ban.lifted_at.isoformat() if ban.lifted_at else None,
        "lifted_by": ban.lifted_by,
    }


@dataclass(frozen=True)
class BanEffect:
    audit_ban: str
    audit_unban: str


_EFFECTS: dict[str, BanEffect] = {
    "user": BanEffect(audit_ban="user_ban", audit_unban="user_unban"),
    "post": BanEffect(audit_ban="post_ban", audit_unban="post_unban"),
}
assert set(_EFFECTS) == values_of(BanTargetType)


async def _set_banned(session: AsyncSession, target_type: str, target_id: str, banned: bool) -> None:
    if target_type == "user":
        await session.execute(
            update(User).where(User.id == target_id).values(is_active=not banned, updated_at=utc_now())
        )
        return
    post = await load_target(session, TargetRef("forum_post", int(target_id)))
    if isinstance(post, ForumPost):
        post.is_banned = banned
        post.updated_at = utc_now()


async def _lift(
    session: AsyncSession,
    ban: Ban,
    *,
    lifted_by: str | None,
    now: datetime,
    context: RequestContext | None,
    detail: str,
) -> bool:
    # Conditional on active so concurrent lifts record exactly one unban.
    result = await session.execute(
        update(Ban)
        .where(Ban.id == ban.id, Ban.active.is_(True))
        .values(active=False, lifted_at=now, lifted_by=lifted_by)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        return False
    await session.refresh(ban)
    await _set_banned(session, ban.target_type, ban.target_id, False)
    await log_action(
        session,
        actor_id=lifted_by,
        action_type=_EFFECTS[ban.target_type].audit_unban,
        target_type=ban.target_type,
        target_id=ban.target_id,
        detail=detail,
        before={"active": True},
        after=serialize_ban(ban),
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="ban",
        subject_id=ban.target_id if ban.target_type == "user" else lifted_by or "system",
        payload={"ban_id": ban.id, "target_type": ban.target_type, "target_id": ban.target_id, "active": False},
    )
    return True


async def expire_bans(session: AsyncSession, *, now: datetime | None = None) -> int:
    """Lift every active ban whose expiry has passed; returns how many were lifted."""
    current = now or utc_now()
    stmt = select(Ban).where(Ban.active.is_(True), Ban.expires_at.is_not(None), Ban.expires_at <= current)
    rows = await rows_or_empty(session, stmt.order_by(Ban.id), source="bans")
    lifted = 0
    for (ban,) in rows:
        if await _lift(session, ban, lifted_by=None, now=current, context=None, detail="Ban expired"):
            lifted += 1
    if lifted:
        await session.commit()
        logger.info("bans_expired count=%s", lifted)
    return lifted


async def active_ban(
    session: AsyncSession, target_type: str, target_id: str, *, now: datetime | None = None
) -> Ban | None:
    # Expired bans are lifted here lazily before answering.
    current = now or utc_now()
    stmt = (
        select(Ban)
        .where(Ban.target_type == target_type, Ban.target_id == target_id, Ban.active.is_(True))
        .order_by(Ban.id.desc())
    )
    for ban in (await session.execute(stmt)).scalars().all():
        if ban.expires_at is not None and ban.expires_at <= current:
            await _lift(session, ban, lifted_by=None, now=current, context=None, detail="Ban expired")
            await session.commit()
            continue
        return ban
    return None


async def _ban(
    session: AsyncSession,
    principal: Principal,
    target_type: str,
    target_id: str,
    *,
    reason: str,
    duration_seconds: int | None,
    context: RequestContext | None,
    now: datetime | None,
) -> Ban:
    cleaned_reason = (reason or "").strip()
    if not cleaned_reason:
        raise ValidationError("Ban reason is required")
    if duration_seconds is not None and duration_seconds <= 0:
        raise ValidationError("duration_seconds must be positive")
    current = now or utc_now()
    existing = await active_ban(session, target_type, target_id, now=current)
    if existing is not None:
        raise ConflictError(f"{target_type.capitalize()} is already banned", details={"ban_id": existing.id})
    ban = Ban(
        target_type=target_type,
        target_id=target_id,
        reason=cleaned_reason,
        moderator_id=principal.id,
        expires_at=current + timedelta(seconds=duration_seconds) if duration_seconds else None,
        active=True,
        created_at=current,
    )
    try:
        async with session.begin_nested():
            session.add(ban)
    except IntegrityError as exc:
        # A concurrent ban of the same target committed first.
        await session.rollback()
        raise ConflictError(f"{target_type.capitalize()} is already banned") from exc
    await _set_banned(session, target_type, target_id, True)
    await log_action(
        session,
        actor_id=principal.id,
        action_type=_EFFECTS[target_type].audit_ban,
        target_type=target_type,
        target_id=target_id,
        detail=cleaned_reason,
        after=serialize_ban(ban),
        context=context,
    )
    await outbox.enqueue(
        session,
        kind="ban",
        subject_id=target_id if target_type == "user" else principal.id,
        payload={"ban_id": ban.id, "target_type": target_type, "target_id": target_id, "active": True},
    )
    await session.commit()
    logger.info(
        "ban_created ban_id=%s target_type=%s target_id=%s expires_at=%s",
        ban.id,
        target_type,
        target_id,
        ban.expires_at,
    )
    return ban


async def ban_user(
    session: AsyncSession,
    principal: Principal | None,
    user_id: str,
    *,
    reason: str,
    duration_seconds: int | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Ban:
    principal = enforce(principal, "ban_user", AuthzTarget(principal_id=user_id))
    if await session.get(User, user_id) is None:
        raise NotFoundError("User not found")
    return await _ban(
        session,
        principal,
        "user",
        user_id,
        reason=reason,
        duration_seconds=duration_seconds,
        context=context,
        now=now,
    )


async def unban_user(
    session: AsyncSession,
    principal: Principal | None,
    user_id: str,
    *,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Ban | None:
    # Unbanning a user with no active ban is a no-op.
    principal = enforce(principal, "ban_user")
    current = now or utc_now()
    ban = await active_ban(session, "user", user_id, now=current)
    if ban is None:
        return None
    await _lift(session, ban, lifted_by=principal.id, now=current, context=context, detail="Ban lifted")
    await session.commit()
    return ban


async def ban_post(
    session: AsyncSession,
    principal: Principal | None,
    post_id: int,
    *,
    reason: str,
    duration_seconds: int | None = None,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Ban:
    principal = enforce(principal, "ban_post")
    if await load_target(session, TargetRef("forum_post", post_id)) is None:
        raise NotFoundError("Post not found")
    return await _ban(
        session,
        principal,
        "post",
        str(post_id),
        reason=reason,
        duration_seconds=duration_seconds,
        context=context,
        now=now,
    )


async def unban_post(
    session: AsyncSession,
    principal: Principal | None,
    post_id: int,
    *,
    context: RequestContext | None = None,
    now: datetime | None = None,
) -> Ban | None:
    principal = enforce(principal, "ban_post")
    current = now or utc_now()
    ban = await active_ban(session, "post", str(post_id), now=current)
    if ban is None:
        return None
    await _lift(session, ban, lifted_by=principal.id, now=current, context=context, detail="Ban lifted")
    await session.commit()
    return ban


async def list_bans(
    session: AsyncSession,
    *,
    target_type: str | None = None,
    active_only: bool = True,
    offset: int = 0,
    limit: int = 50,
    now: datetime | None = None,
) -> list[Ban]:
    if target_type is not None and target_type not in values_of(BanTargetType):
        raise ValidationError(f"Invalid target type: {target_type}")
    await expire_bans(session, now=now)
    stmt = select(Ban)
    if target_type:
        stmt = stmt.where(Ban.target_type == target_type)
    if active_only:
        stmt = stmt.where(Ban.active.is_(True))
    stmt = stmt.order_by(Ban.created_at.desc(), Ban.id.desc()).offset(offset).limit(limit)
    rows = await rows_or_empty(session, stmt, source="bans")
    return [row[0] for row in rows]
