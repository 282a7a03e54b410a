from __future__ import annotations

import pytest
from sqlalchemy import select

from edugov.domain.models import ModeratedItem, OutboxEvent
from edugov.services.moderation.ai_review import review_item
from edugov.services.moderation.enforcement import edit_content
from edugov.tests.utils.auth import principal_for
from edugov.tests.utils.seed import create_forum_post, create_tenant, create_user


async def _queue_item(database, *, content_id: int) -> int:
    async with database.session() as session:
        item = ModeratedItem(content_type="forum_post", content_id=content_id, content_text="flagged words", score=3)
        session.add(item)
        await session.commit()
        return item.id


async def _events(database, kind: str) -> list[OutboxEvent]:
    async with database.session() as session:
        stmt = select(OutboxEvent).where(OutboxEvent.kind == kind).order_by(OutboxEvent.id)
        return list((await session.execute(stmt)).scalars().all())


@pytest.mark.asyncio
async def test_ai_review_outcome_is_published_to_content_author(database) -> None:
    tenant_id = await create_tenant(database)
    author_id = await create_user(database, tenant_id=tenant_id)
    post_id = await create_forum_post(database, author_id=author_id)
    item_id = await _queue_item(database, content_id=post_id)
    admin = principal_for("admin-1", "admin")

    async with database.session() as session:
        item, escalation = await review_item(session, admin, item_id, "reject", notes="off topic")
    assert escalation is None

    events = await _events(database, "moderation")
    assert len(events) == 1
    assert events[0].subject_id == author_id
    assert events[0].payload == {"moderated_item_id": item_id, "status": "rejected", "action_taken": "rejected"}


@pytest.mark.asyncio
async def test_ai_review_of_deleted_content_is_published_to_reviewer(database) -> None:
    item_id = await _queue_item(database, content_id=987654)
    admin = principal_for("admin-1", "admin")

    async with database.session() as session:
        item, _ = await review_item(session, admin, item_id, "escalate")
    assert (item.status, item.action_taken) == ("rejected", "no_op")

    events = await _events(database, "moderation")
    assert [(event.subject_id, event.payload["action_taken"]) for event in events] == [("admin-1", "no_op")]


@pytest.mark.asyncio
async def test_content_edit_is_published_to_content_author(database) -> None:
    tenant_id = await create_tenant(database)
    author_id = await create_user(database, tenant_id=tenant_id)
    post_id = await create_forum_post(database, author_id=author_id)
    admin = principal_for("admin-1", "admin")

    async with database.session() as session:
        await edit_content(session, admin, "forum_post", str(post_id), {"content": "Edited body", "title": "Renamed"})

    events = await _events(database, "content")
    assert len(events) == 1
    assert events[0].subject_id == author_id
    assert events[0].payload == {"content_type": "forum_post", "content_id": str(post_id), "fields": ["content", "title"]}
