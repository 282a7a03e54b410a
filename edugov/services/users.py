from __future__ import annotations

from dataclasses import dataclass
import logging
import re
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import ConflictError, NotFoundError, ValidationError
from edugov.domain.models import User, utc_now
from edugov.domain.state import ROLES
from edugov.services import outbox
from edugov.services.audit import RequestContext, log_action
from edugov.services.auth.passwords import hash_password
from edugov.services.authz import AuthzTarget, Principal, enforce
from edugov.services.tenants import resolve_tenant


logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
MAX_NAME_CHARS = 100


@dataclass(frozen=True)
class NewUser:
    first_name: str
    last_name: str
    email: str
    password: str
    role: str = "member"
    tenant: int | str | None = None


def serialize_user(user: User) -> dict[str, Any]:
    # Never expose the password hash, not even to admins.
    return {
        "id": user.id,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "email": user.email,
        "role": user.role,
        "tenant_id": user.tenant_id,
        "is_active": user.is_active,
        "last_login_at": user.last_login_at.isoformat() if user.last_login_at else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _clean_name(field: str, value: str | None) -> str:
    cleaned = (value or "").strip()
    if not cleaned:
        raise ValidationError(f"{field} is required")
    if len(cleaned) > MAX_NAME_CHARS:
        raise ValidationError(f"{field} must be at most {MAX_NAME_CHARS} characters")
    return cleaned


def _clean_email(value: str | None) -> str:
    cleaned = (value or "").strip().lower()
    if not _EMAIL_RE.match(cleaned):
        raise ValidationError("Invalid email format")
    return cleaned


def _clean_role(value: str) -> str:
    cleaned = (value or "").strip().lower()
    if cleaned not in ROLES:
        raise ValidationError(f"Invalid role: {value}", details={"allowed": list(ROLES)})
    return cleaned


async def _email_taken(session: AsyncSession, email: str, *, exclude_id: str | None = None) -> bool:
    stmt = select(User.id).where(func.lower(User.email) == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    return (await session.execute(stmt.limit(1))).first() is not None


async def _load_user(session: AsyncSession, user_id: str) -> User:
    user = await session.get(User, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def create_user(
    session: AsyncSession,
    principal: Principal | None,
    payload: NewUser,
    *,
    context: RequestContext | None = None,
) -> User:
    principal = enforce(principal, "manage_users")
    settings = get_settings()
    first_name = _clean_name("first_name", payload.first_name)
    last_name = _clean_name("last_name", payload.last_name)
    email = _clean_email(payload.email)
    role = _clean_role(payload.role)
    if len(payload.password or "") < settings.password_min_length:
        raise ValidationError(f"Password must be at least {settings.password_min_length} characters")
    tenant_id = None
    if payload.tenant is not None and str(payload.tenant).strip():
        tenant_id = (await resolve_tenant(session, payload.tenant)).id
    if await _email_taken(session, email):
        raise ConflictError("User with this email already exists")

    user = User(
        first_name=first_name,
        last_name=last_name,
        email=email,
        password_hash=hash_password(payload.password),
        role=role,
        tenant_id=tenant_id,
        is_active=True,
    )
    session.add(user)
    try:
        await session.flush()
    except IntegrityError as exc:
        # Lost a race with a concurrent create for the same email.
        await session.rollback()
        raise ConflictError("User with this email already exists") from exc
    await log_action(
        session,
        actor_id=principal.id,
        action_type="user_create",
        target_type="user",
        target_id=user.id,
        detail=f"Created {role} {email}",
        after=serialize_user(user),
        context=context,
    )
    await session.commit()
    logger.info("user_created user_id=%s role=%s tenant_id=%s", user.id, role, tenant_id)
    return user


async def list_users(
    session: AsyncSession,
    *,
    tenant_id: int | None = None,
    role: str | None = None,
    is_active: bool | None = None,
    search: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[User], int]:
    # Newest first; the total count ignores pagination.
    filters = []
    if tenant_id is not None:
        filters.append(User.tenant_id == tenant_id)
    if role:
        filters.append(User.role == _clean_role(role))
    if is_active is not None:
        filters.append(User.is_active.is_(is_active))
    if search and search.strip():
        pattern = f"%{search.strip().lower()}%"
        filters.append(
            or_(
                func.lower(User.first_name).like(pattern),
                func.lower(User.last_name).like(pattern),
                func.lower(User.email).like(pattern),
            )
        )
    total = (await session.execute(select(func.count()).select_from(User).where(*filters))).scalar_one()
    rows = (
        await session.execute(
            select(User).where(*filters).order_by(User.created_at.desc(), User.id.desc()).offset(offset).limit(limit)
        )
    ).scalars().all()
    return list(rows), int(total)


async def update_user(
    session: AsyncSession,
    principal: Principal | None,
    user_id: str,
    *,
    first_name: str | None = None,
    last_name: str | None = None,
    email: str | None = None,
    context: RequestContext | None = None,
) -> User:
    principal = enforce(principal, "manage_users")
    changes: dict[str, str] = {}
    if first_name is not None:
        changes["first_name"] = _clean_name("first_name", first_name)
    if last_name is not None:
        changes["last_name"] = _clean_name("last_name", last_name)
    if email is not None:
        changes["email"] = _clean_email(email)
    if not changes:
        raise ValidationError("No fields to update")
    user = await _load_user(session, user_id)
    if "email" in changes and await _email_taken(session, changes["email"], exclude_id=user.id):
        raise ConflictError("User with this email already exists")
    before = serialize_user(user)
    for name, value in changes.items():
        setattr(user, name, value)
    user.updated_at = utc_now()
    await log_action(
        session,
        actor_id=principal.id,
        action_type="user_update",
        target_type="user",
        target_id=user.id,
        detail=f"Updated {', '.join(sorted(changes))}",
        before=before,
        after=serialize_user(user),
        context=context,
    )
    await session.commit()
    return user


async def change_role(
    session: AsyncSession,
    principal: Principal | None,
    user_id: str,
    role: str,
    *,
    context: RequestContext | None = None,
) -> User:
    principal = enforce(principal, "change_role", AuthzTarget(principal_id=user_id))
    new_role = _clean_role(role)
    user = await _load_user(session, user_id)
    before = serialize_user(user)
    if user.role == new_role:
        return user
    user.role = new_role
    user.updated_at = utc_now()
    await log_action(
        session,
        actor_id=principal.id,
        action_type="user_role_change",
        target_type="user",
        target_id=user.id,
        detail=f"Role changed from {before['role']} to {new_role}",
        before=before,
        after=serialize_user(user),
        context=context,
    )
    await outbox.enqueue(session, kind="user", subject_id=user.id, payload={"role": new_role})
    await session.commit()
    logger.info("user_role_changed user_id=%s from=%s to=%s", user.id, before["role"], new_role)
    return user


async def change_status(
    session: AsyncSession,
    principal: Principal | None,
    user_id: str,
    is_active: bool,
    *,
    context: RequestContext | None = None,
) -> User:
    # Self-deactivation is denied; reactivating yourself is a harmless no-op.
    if is_active:
        principal = enforce(principal, "manage_users")
    else:
        principal = enforce(principal, "deactivate_user", AuthzTarget(principal_id=user_id))
    user = await _load_user(session, user_id)
    before = serialize_user(user)
    if user.is_active == is_active:
        return user
    user.is_active = is_active
    user.updated_at = utc_now()
    await log_action(
        session,
        actor_id=principal.id,
        action_type="user_status_change",
        target_type="user",
        target_id=user.id,
        detail="Activated" if is_active else "Deactivated",
        before=before,
        after=serialize_user(user),
        context=context,
    )
    await outbox.enqueue(session, kind="user", subject_id=user.id, payload={"is_active": is_active})
    await session.commit()
    logger.info("user_status_changed user_id=%s is_active=%s", user.id, is_active)
    return user
