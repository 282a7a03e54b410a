"""Access to collaborator-owned content that moderation acts upon."""

from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.domain.models import Course, ForumPost, Resource, Upload, utc_now
from edugov.persistence.guards import is_missing_table_error


logger = logging.getLogger(__name__)

_TARGET_MODELS = {
    "forum_post": ForumPost,
    "resource": Resource,
    "course": Course,
    "upload": Upload,
}


@dataclass(frozen=True)
class TargetRef:
    content_type: str
    content_id: int | str | None


def targets_content(content_type: str) -> bool:
    return content_type in _TARGET_MODELS


async def load_target(session: AsyncSession, ref: TargetRef) -> object | None:
    # Missing rows and missing collaborator tables both read as "target gone".
    model = _TARGET_MODELS.get(ref.content_type)
    if model is None or ref.content_id is None:
        return None
    try:
        async with session.begin_nested():
            return await session.get(model, ref.content_id)
    except SQLAlchemyError as exc:
        if not is_missing_table_error(exc):
            raise
        logger.warning("moderation_target_table_missing content_type=%s", ref.content_type)
        return None


def target_author_id(target: object) -> str | None:
    # forum_posts.author_id is the canonical author column.
    if isinstance(target, ForumPost):
        return target.author_id
    if isinstance(target, Resource):
        return target.created_by
    if isinstance(target, Upload):
        return target.owner_id
    return None


def hide_target(target: object, *, reason: str | None) -> bool:
    """Hide content from learners; returns False when the type has no hide effect."""
    now = utc_now()
    if isinstance(target, ForumPost):
        target.is_moderated = True
        target.moderation_reason = reason
        target.updated_at = now
        return True
    if isinstance(target, Resource):
        target.is_public = False
        target.updated_at = now
        return True
    return False
