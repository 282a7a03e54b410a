from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.domain.models import AuditEntry
from edugov.persistence.guards import is_missing_table_error


async def list_entries(
    session: AsyncSession,
    *,
    actor_id: str | None = None,
    action_type: str | None = None,
    target_type: str | None = None,
    target_id: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEntry]:
    # Newest first; id breaks ties between entries written in the same instant.
    stmt = select(AuditEntry)
    if actor_id:
        stmt = stmt.where(AuditEntry.actor_id == actor_id)
    if action_type:
        stmt = stmt.where(AuditEntry.action_type == action_type)
    if target_type:
        stmt = stmt.where(AuditEntry.target_type == target_type)
    if target_id:
        stmt = stmt.where(AuditEntry.target_id == target_id)
    if created_from:
        stmt = stmt.where(AuditEntry.created_at >= created_from)
    if created_to:
        stmt = stmt.where(AuditEntry.created_at <= created_to)

    stmt = stmt.order_by(AuditEntry.created_at.desc(), AuditEntry.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as exc:
        # An absent audit table reads as an empty log.
        if is_missing_table_error(exc):
            await session.rollback()
            return []
        raise
    return list(result.scalars().all())
