from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from edugov.core.errors import StorageError
from edugov.domain.models import AuditEntry, OutboxEvent, Upload
from edugov.services.storage import set_blob_store
from edugov.tests.utils.auth import auth_headers
from edugov.tests.utils.seed import create_tenant, create_upload, create_user


PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def _image(name: str = "icon.png") -> dict:
    return {"file": (name, PNG, "image/png")}


async def _count(database, model, *conditions) -> int:
    # Count rows directly to check side effects without going through the API.
    async with database.session() as session:
        stmt = select(func.count()).select_from(model).where(*conditions)
        return int((await session.execute(stmt)).scalar_one())


class FailingStore:
    async def put(self, data: bytes, *, tenant_id: int, filename: str, content_type: str) -> str:
        raise StorageError("blob store unavailable")


@pytest.mark.asyncio
async def test_admin_upload_by_tenant_alias_is_published(client, database) -> None:
    tenant_id = await create_tenant(database, "Toronto", aliases=("Toronto Chapter",))
    headers = auth_headers("admin-1", "admin")

    response = await client.post(
        "/v1/admin/content",
        data={"title": "Chapter icon", "tenant": "toronto chapter", "tags": "icons, branding"},
        files=_image(),
        headers=headers,
    )
    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    upload = body["data"]
    assert upload["status"] == "approved"
    assert upload["tenant_id"] == tenant_id
    assert upload["media_kind"] == "image"
    assert upload["tags"] == ["icons", "branding"]
    assert upload["blob_handle"]
    assert response.headers["X-Request-Id"]

    quotas = await client.get("/v1/admin/quotas", params={"tenant": "Toronto"}, headers=headers)
    image = next(item for item in quotas.json()["data"]["items"] if item["media_kind"] == "image")
    assert image["usage"] == 1

    assert await _count(database, AuditEntry, AuditEntry.action_type == "content_upload") == 1
    assert await _count(database, OutboxEvent, OutboxEvent.kind == "upload") == 1


@pytest.mark.asyncio
async def test_upload_rejected_when_quota_exhausted(client, database) -> None:
    tenant_id = await create_tenant(database, "Ottawa")
    admin = auth_headers("admin-1", "admin")
    instructor = auth_headers("instructor-1", "instructor", tenant_id)

    response = await client.patch(
        "/v1/admin/quotas/image", json={"limit": 1, "tenant": tenant_id}, headers=admin
    )
    assert response.status_code == 200
    assert response.json()["data"]["limit"] == 1

    first = await client.post("/v1/admin/content", data={"title": "One"}, files=_image(), headers=instructor)
    assert first.status_code == 201
    assert first.json()["data"]["status"] == "pending"

    second = await client.post("/v1/admin/content", data={"title": "Two"}, files=_image(), headers=instructor)
    assert second.status_code == 400
    body = second.json()
    assert body["code"] == "QUOTA_EXCEEDED"
    assert "quota exceeded" in body["message"].lower()
    assert body["data"] is None
    assert await _count(database, Upload) == 1


@pytest.mark.asyncio
async def test_concurrent_approvals_have_one_winner(client, database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner, tenant_id=tenant_id)

    responses = await asyncio.gather(
        client.post(f"/v1/admin/content/{upload_id}/approve", headers=auth_headers("admin-1", "admin")),
        client.post(f"/v1/admin/content/{upload_id}/approve", headers=auth_headers("admin-2", "admin")),
    )
    codes = sorted(response.status_code for response in responses)
    assert codes == [200, 409]
    loser = next(response for response in responses if response.status_code == 409)
    assert loser.json()["code"] == "ALREADY_PROCESSED"
    assert await _count(database, AuditEntry, AuditEntry.action_type == "content_approve") == 1
    assert await _count(database, OutboxEvent, OutboxEvent.kind == "upload") == 1


@pytest.mark.asyncio
async def test_reject_requires_reason_and_is_terminal(client, database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner, tenant_id=tenant_id)
    headers = auth_headers("admin-1", "admin")

    blank = await client.post(f"/v1/admin/content/{upload_id}/reject", json={"reason": "  "}, headers=headers)
    assert blank.status_code == 400

    rejected = await client.post(
        f"/v1/admin/content/{upload_id}/reject", json={"reason": "Poor audio"}, headers=headers
    )
    assert rejected.status_code == 200
    assert rejected.json()["data"]["rejection_reason"] == "Poor audio"

    again = await client.post(f"/v1/admin/content/{upload_id}/approve", headers=headers)
    assert again.status_code == 409

    listed = await client.get("/v1/admin/content", params={"status": "rejected"}, headers=headers)
    assert [item["id"] for item in listed.json()["data"]["items"]] == [upload_id]


@pytest.mark.asyncio
async def test_storage_failure_marks_upload_failed_and_retry_requeues(client, database) -> None:
    tenant_id = await create_tenant(database)
    headers = auth_headers("admin-1", "admin")
    set_blob_store(FailingStore())

    response = await client.post(
        "/v1/admin/content", data={"title": "Doomed", "tenant": str(tenant_id)}, files=_image(), headers=headers
    )
    assert response.status_code == 201
    failed = response.json()
    assert failed["message"] == "Upload failed; retry is available"
    assert failed["data"]["status"] == "failed"
    assert failed["data"]["error_message"] == "blob store unavailable"

    set_blob_store(None)
    retried = await client.post(
        f"/v1/admin/content/{failed['data']['id']}/retry", files=_image("retry.png"), headers=headers
    )
    assert retried.status_code == 200
    assert retried.json()["data"]["status"] == "pending"
    assert retried.json()["data"]["retry_count"] == 1
    # The original attempt already consumed the quota slot.
    quotas = await client.get("/v1/admin/quotas", params={"tenant": tenant_id}, headers=headers)
    image = next(item for item in quotas.json()["data"]["items"] if item["media_kind"] == "image")
    assert image["usage"] == 1


@pytest.mark.asyncio
async def test_retry_of_pending_upload_conflicts(client, database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner, tenant_id=tenant_id)
    response = await client.post(f"/v1/admin/content/{upload_id}/retry", headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 409


@pytest.mark.asyncio
async def test_upload_access_rules(client, database) -> None:
    home = await create_tenant(database)
    other = await create_tenant(database)

    anonymous = await client.post("/v1/admin/content", data={"title": "x"}, files=_image())
    assert anonymous.status_code == 401
    assert anonymous.json()["code"] == "AUTH_UNAUTHORIZED"

    member = await client.post(
        "/v1/admin/content", data={"title": "x"}, files=_image(), headers=auth_headers("m-1", "member", home)
    )
    assert member.status_code == 403
    assert member.json()["details"]["reason"] == "role"

    cross_tenant = await client.post(
        "/v1/admin/content",
        data={"title": "x", "tenant": str(other)},
        files=_image(),
        headers=auth_headers("i-1", "instructor", home),
    )
    assert cross_tenant.status_code == 403
    assert cross_tenant.json()["details"]["reason"] == "tenant_mismatch"

    unknown = await client.post(
        "/v1/admin/content",
        data={"title": "x", "tenant": "Atlantis"},
        files=_image(),
        headers=auth_headers("admin-1", "admin"),
    )
    assert unknown.status_code == 400
    assert await _count(database, AuditEntry, AuditEntry.action_type == "access_denied") == 1


@pytest.mark.asyncio
async def test_admin_edits_descriptive_fields_only(client, database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner, tenant_id=tenant_id, status="approved")
    headers = auth_headers("admin-1", "admin")

    edited = await client.patch(
        f"/v1/admin/content/upload/{upload_id}",
        json={"title": "  Renamed  ", "tags": ["a", "b"]},
        headers=headers,
    )
    assert edited.status_code == 200
    assert edited.json()["data"]["title"] == "Renamed"
    assert edited.json()["data"]["tags"] == ["a", "b"]

    forbidden_field = await client.patch(
        f"/v1/admin/content/upload/{upload_id}", json={"status": "pending"}, headers=headers
    )
    assert forbidden_field.status_code == 400

    async with database.session() as session:
        upload = await session.get(Upload, upload_id)
        assert upload.status == "approved"
