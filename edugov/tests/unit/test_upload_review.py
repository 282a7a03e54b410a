from __future__ import annotations

import pytest
from sqlalchemy import update

from edugov.core.errors import ConflictError
from edugov.domain.models import Upload
from edugov.services.moderation.review import review_upload
from edugov.tests.utils.auth import principal_for
from edugov.tests.utils.seed import create_tenant, create_upload, create_user


async def _upload_without_blob(database) -> str:
    tenant_id = await create_tenant(database)
    owner_id = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner_id, tenant_id=tenant_id)
    async with database.session() as session:
        await session.execute(update(Upload).where(Upload.id == upload_id).values(blob_handle=None))
        await session.commit()
    return upload_id


@pytest.mark.asyncio
async def test_upload_cannot_be_approved_before_its_blob_is_stored(database) -> None:
    upload_id = await _upload_without_blob(database)
    admin = principal_for("admin-1", "admin")

    with pytest.raises(ConflictError) as excinfo:
        async with database.session() as session:
            await review_upload(session, admin, upload_id, "approve")
    assert excinfo.value.details == {"status": "pending", "reason": "blob_pending"}

    async with database.session() as session:
        stored = await session.get(Upload, upload_id)
        assert (stored.status, stored.reviewer_id) == ("pending", None)

    async with database.session() as session:
        await session.execute(update(Upload).where(Upload.id == upload_id).values(blob_handle="1/late.pdf"))
        await session.commit()
    async with database.session() as session:
        approved = await review_upload(session, admin, upload_id, "approve")
    assert approved.status == "approved"


@pytest.mark.asyncio
async def test_upload_without_blob_can_still_be_rejected(database) -> None:
    upload_id = await _upload_without_blob(database)
    async with database.session() as session:
        rejected = await review_upload(session, principal_for("admin-1", "admin"), upload_id, "reject", reason="spam")
    assert rejected.status == "rejected"
    assert rejected.rejection_reason == "spam"
