from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.domain.models import ModeratorNotification, User, utc_now
from edugov.persistence.guards import rows_or_empty, soft_dependency
from edugov.services import outbox


logger = logging.getLogger(__name__)


async def active_admin_ids(session: AsyncSession, *, tenant_id: int | None = None) -> list[str]:
    # Tenant-less admins see every tenant's notifications.
    stmt = select(User.id).where(User.role == "admin", User.is_active.is_(True))
    if tenant_id is not None:
        stmt = stmt.where((User.tenant_id == tenant_id) | (User.tenant_id.is_(None)))
    rows = await rows_or_empty(session, stmt.order_by(User.id), source="users")
    return [row[0] for row in rows]


async def notify_admins(
    session: AsyncSession,
    *,
    kind: str,
    message: str,
    related_type: str | None = None,
    related_id: int | None = None,
    tenant_id: int | None = None,
    payload: dict[str, Any] | None = None,
) -> int:
    """Fan a moderator notification out to active admins.

    Each recipient also gets an outbox event. Failures are logged and the
    caller's transaction continues.
    """
    recipients = await active_admin_ids(session, tenant_id=tenant_id)
    created = 0
    for recipient_id in recipients:
        async with soft_dependency(session, "moderator_notifications", kind=kind, recipient_id=recipient_id):
            session.add(
                ModeratorNotification(
                    recipient_id=recipient_id,
                    kind=kind,
                    related_type=related_type,
                    related_id=related_id,
                    message=message,
                    is_read=False,
                )
            )
            await session.flush()
            created += 1
        await outbox.enqueue(
            session,
            kind=kind,
            subject_id=recipient_id,
            payload={"message": message, "related_type": related_type, "related_id": related_id, **(payload or {})},
        )
    return created


async def mark_related_read(
    session: AsyncSession,
    *,
    related_type: str,
    related_id: int,
    now: datetime | None = None,
) -> None:
    async with soft_dependency(session, "moderator_notifications", related_type=related_type, related_id=related_id):
        await session.execute(
            update(ModeratorNotification)
            .where(
                ModeratorNotification.related_type == related_type,
                ModeratorNotification.related_id == related_id,
                ModeratorNotification.is_read.is_(False),
            )
            .values(is_read=True, read_at=now or utc_now())
            .execution_options(synchronize_session=False)
        )


async def list_notifications(
    session: AsyncSession,
    *,
    recipient_id: str,
    unread_only: bool = False,
    offset: int = 0,
    limit: int = 50,
) -> list[ModeratorNotification]:
    stmt = select(ModeratorNotification).where(ModeratorNotification.recipient_id == recipient_id)
    if unread_only:
        stmt = stmt.where(ModeratorNotification.is_read.is_(False))
    stmt = stmt.order_by(ModeratorNotification.created_at.desc(), ModeratorNotification.id.desc())
    rows = await rows_or_empty(session, stmt.offset(offset).limit(limit), source="moderator_notifications")
    return [row[0] for row in rows]


def serialize_notification(notification: ModeratorNotification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "recipient_id": notification.recipient_id,
        "kind": notification.kind,
        "related_type": notification.related_type,
        "related_id": notification.related_id,
        "message": notification.message,
        "is_read": notification.is_read,
        "read_at": notification.read_at.isoformat() if notification.read_at else None,
        "created_at": notification.created_at.isoformat() if notification.created_at else None,
    }
