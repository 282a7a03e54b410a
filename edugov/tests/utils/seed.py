from __future__ import annotations

from datetime import datetime
from uuid import uuid4

from edugov.domain.models import ForumPost, Resource, Tenant, TenantAlias, Upload, User, utc_now
from edugov.persistence.db import Database


async def create_tenant(database: Database, name: str | None = None, *, aliases: tuple[str, ...] = ()) -> int:
    async with database.session() as session:
        tenant = Tenant(name=name or f"Tenant {uuid4().hex[:8]}", is_active=True)
        session.add(tenant)
        await session.flush()
        for alias in aliases:
            session.add(TenantAlias(alias=alias.lower(), tenant_id=tenant.id))
        await session.commit()
        return tenant.id


async def create_user(
    database: Database,
    *,
    role: str = "member",
    tenant_id: int | None = None,
    is_active: bool = True,
    created_at: datetime | None = None,
    last_login_at: datetime | None = None,
) -> str:
    user_id = uuid4().hex
    async with database.session() as session:
        session.add(
            User(
                id=user_id,
                first_name="Test",
                last_name=role.title(),
                email=f"{user_id}@example.org",
                role=role,
                tenant_id=tenant_id,
                is_active=is_active,
                created_at=created_at or utc_now(),
                last_login_at=last_login_at,
            )
        )
        await session.commit()
    return user_id


async def create_forum_post(
    database: Database,
    *,
    author_id: str,
    content: str = "Hello forum",
    created_at: datetime | None = None,
) -> int:
    async with database.session() as session:
        post = ForumPost(author_id=author_id, title="Post", content=content, created_at=created_at or utc_now())
        session.add(post)
        await session.commit()
        return post.id


async def create_resource(database: Database, *, created_by: str | None = None) -> int:
    async with database.session() as session:
        resource = Resource(created_by=created_by, title="Resource", description="Notes", is_public=True)
        session.add(resource)
        await session.commit()
        return resource.id


async def create_upload(
    database: Database,
    *,
    owner_id: str,
    tenant_id: int,
    status: str = "pending",
    created_at: datetime | None = None,
    reviewed_at: datetime | None = None,
) -> str:
    # Direct insert that bypasses intake and the quota ledger.
    now = created_at or utc_now()
    async with database.session() as session:
        upload = Upload(
            owner_id=owner_id,
            tenant_id=tenant_id,
            media_kind="document",
            mime_type="application/pdf",
            filename="notes.pdf",
            byte_size=10,
            blob_handle=f"{tenant_id}/seeded.pdf" if status != "failed" else None,
            title="Seeded upload",
            tags=[],
            status=status,
            reviewer_id="seed-reviewer" if status in {"approved", "rejected"} else None,
            retry_count=0,
            created_at=now,
            updated_at=now,
            reviewed_at=reviewed_at,
        )
        session.add(upload)
        await session.commit()
        return upload.id
