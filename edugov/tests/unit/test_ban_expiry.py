from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from edugov.core.errors import ConflictError, ForbiddenError
from edugov.domain.models import AuditEntry, Ban, ForumPost, User
from edugov.services.moderation import enforcement
from edugov.services.moderation.enforcement import active_ban, ban_post, ban_user, expire_bans, unban_user
from edugov.tests.utils.auth import principal_for
from edugov.tests.utils.seed import create_forum_post, create_tenant, create_user


T0 = datetime(2026, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_timed_user_ban_expires_and_reactivates(database) -> None:
    tenant_id = await create_tenant(database)
    user_id = await create_user(database, tenant_id=tenant_id)
    admin = principal_for("admin-1", "admin")

    async with database.session() as session:
        ban = await ban_user(session, admin, user_id, reason="spam", duration_seconds=3600, now=T0)
    assert ban.expires_at == T0 + timedelta(hours=1)

    async with database.session() as session:
        assert (await session.get(User, user_id)).is_active is False
        assert await expire_bans(session, now=T0 + timedelta(minutes=30)) == 0

    async with database.session() as session:
        assert await expire_bans(session, now=T0 + timedelta(hours=2)) == 1

    async with database.session() as session:
        assert (await session.get(User, user_id)).is_active is True
        assert await active_ban(session, "user", user_id, now=T0 + timedelta(hours=2)) is None
        actions = (await session.execute(select(AuditEntry.action_type).order_by(AuditEntry.id))).scalars().all()
    assert actions == ["user_ban", "user_unban"]


@pytest.mark.asyncio
async def test_duplicate_ban_and_self_ban_are_rejected(database) -> None:
    user_id = await create_user(database)
    admin = principal_for("admin-1", "admin")

    async with database.session() as session:
        await ban_user(session, admin, user_id, reason="abuse")
    with pytest.raises(ConflictError):
        async with database.session() as session:
            await ban_user(session, admin, user_id, reason="again")
    with pytest.raises(ForbiddenError):
        async with database.session() as session:
            await ban_user(session, principal_for(user_id, "admin"), user_id, reason="self")

    async with database.session() as session:
        lifted = await unban_user(session, admin, user_id)
    assert lifted is not None and lifted.active is False
    async with database.session() as session:
        assert await unban_user(session, admin, user_id) is None


@pytest.mark.asyncio
async def test_post_ban_marks_post(database) -> None:
    author = await create_user(database)
    post_id = await create_forum_post(database, author_id=author)
    async with database.session() as session:
        await ban_post(session, principal_for("admin-1", "admin"), post_id, reason="off topic")
    async with database.session() as session:
        assert (await session.get(ForumPost, post_id)).is_banned is True


@pytest.mark.asyncio
async def test_concurrent_ban_loses_at_insert_time(database, monkeypatch) -> None:
    user_id = await create_user(database)
    admin = principal_for("admin-1", "admin")
    async with database.session() as session:
        await ban_user(session, admin, user_id, reason="abuse")

    # A second moderator read "no active ban" before the first one committed.
    async def stale_read(*args, **kwargs):
        return None

    monkeypatch.setattr(enforcement, "active_ban", stale_read)
    with pytest.raises(ConflictError):
        async with database.session() as session:
            await ban_user(session, principal_for("admin-2", "admin"), user_id, reason="abuse too")

    async with database.session() as session:
        active = (
            await session.execute(select(Ban).where(Ban.target_id == user_id, Ban.active.is_(True)))
        ).scalars().all()
        assert [ban.moderator_id for ban in active] == ["admin-1"]
        assert (await session.get(User, user_id)).is_active is False
