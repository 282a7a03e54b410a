from __future__ import annotations

import pytest
from sqlalchemy import select

from edugov.domain.models import User
from edugov.services.auth.passwords import verify_password
from edugov.tests.utils.auth import auth_headers
from edugov.tests.utils.seed import create_tenant, create_user


@pytest.mark.asyncio
async def test_health_is_public(client) -> None:
    response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"] == {"status": "ok", "database": "ok"}


@pytest.mark.asyncio
async def test_missing_or_malformed_credentials(client) -> None:
    missing = await client.get("/v1/admin/users")
    assert missing.status_code == 401
    assert missing.headers["WWW-Authenticate"] == "Bearer"

    malformed = await client.get("/v1/admin/users", headers={"Authorization": "Token abc"})
    assert malformed.status_code == 401

    forged = await client.get("/v1/admin/users", headers={"Authorization": "Bearer not-a-jwt"})
    assert forged.status_code == 401
    assert forged.json()["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_user_lifecycle(client, database) -> None:
    await create_tenant(database, "Toronto")
    admin = auth_headers("admin-1", "admin")

    created = await client.post(
        "/v1/admin/users",
        json={
            "first_name": "Abeba",
            "last_name": "Tesfaye",
            "email": "Abeba@Example.org",
            "password": "long-enough-pw",
            "role": "instructor",
            "tenant": "toronto",
        },
        headers=admin,
    )
    assert created.status_code == 201
    user = created.json()["data"]
    assert user["email"] == "abeba@example.org"
    assert user["role"] == "instructor"
    assert "password_hash" not in user

    async with database.session() as session:
        row = await session.get(User, user["id"])
        assert verify_password("long-enough-pw", row.password_hash)

    duplicate = await client.post(
        "/v1/admin/users",
        json={"first_name": "A", "last_name": "B", "email": "abeba@example.org", "password": "long-enough-pw"},
        headers=admin,
    )
    assert duplicate.status_code == 409

    short = await client.post(
        "/v1/admin/users",
        json={"first_name": "A", "last_name": "B", "email": "c@example.org", "password": "short"},
        headers=admin,
    )
    assert short.status_code == 400

    updated = await client.patch(f"/v1/admin/users/{user['id']}", json={"last_name": "Bekele"}, headers=admin)
    assert updated.json()["data"]["last_name"] == "Bekele"

    role = await client.patch(f"/v1/admin/users/{user['id']}/role", json={"role": "admin"}, headers=admin)
    assert role.json()["data"]["role"] == "admin"

    status = await client.patch(f"/v1/admin/users/{user['id']}/status", json={"is_active": False}, headers=admin)
    assert status.json()["data"]["is_active"] is False

    listed = await client.get("/v1/admin/users", params={"search": "bekele"}, headers=admin)
    data = listed.json()["data"]
    assert [item["id"] for item in data["items"]] == [user["id"]]
    assert data["pagination"]["total"] == 1


@pytest.mark.asyncio
async def test_admin_cannot_change_own_role_or_deactivate_self(client, database) -> None:
    admin_id = await create_user(database, role="admin")
    headers = auth_headers(admin_id, "admin")

    role = await client.patch(f"/v1/admin/users/{admin_id}/role", json={"role": "member"}, headers=headers)
    assert role.status_code == 403
    assert role.json()["details"]["reason"] == "self_target"

    status = await client.patch(f"/v1/admin/users/{admin_id}/status", json={"is_active": False}, headers=headers)
    assert status.status_code == 403

    async with database.session() as session:
        row = await session.get(User, admin_id)
        assert (row.role, row.is_active) == ("admin", True)


@pytest.mark.asyncio
async def test_non_admin_cannot_manage_users(client, database) -> None:
    tenant_id = await create_tenant(database)
    response = await client.get("/v1/admin/users", headers=auth_headers("i-1", "instructor", tenant_id))
    assert response.status_code == 403
    assert response.json()["code"] == "AUTH_FORBIDDEN"


@pytest.mark.asyncio
async def test_instructor_application_approval_promotes_member(client, database) -> None:
    member_id = await create_user(database, role="member")
    member = auth_headers(member_id, "member")
    admin = auth_headers("admin-1", "admin")

    applied = await client.post(
        "/v1/applications",
        json={"application_text": "I have taught Sunday school for ten years.", "qualifications": "Diploma"},
        headers=member,
    )
    assert applied.status_code == 201
    application_id = applied.json()["data"]["id"]

    duplicate = await client.post("/v1/applications", json={"application_text": "Again"}, headers=member)
    assert duplicate.status_code == 409

    queue = await client.get("/v1/admin/applications", headers=admin)
    assert [item["id"] for item in queue.json()["data"]["items"]] == [application_id]

    approved = await client.post(
        f"/v1/admin/applications/{application_id}/approve", json={"notes": "Welcome"}, headers=admin
    )
    assert approved.status_code == 200
    assert approved.json()["data"]["status"] == "approved"

    again = await client.post(f"/v1/admin/applications/{application_id}/reject", headers=admin)
    assert again.status_code == 409

    async with database.session() as session:
        role = (await session.execute(select(User.role).where(User.id == member_id))).scalar_one()
    assert role == "instructor"


@pytest.mark.asyncio
async def test_quota_listing_and_update_are_audited(client, database) -> None:
    tenant_id = await create_tenant(database, "Ottawa")
    admin = auth_headers("admin-1", "admin")

    listed = await client.get("/v1/admin/quotas", params={"tenant": "ottawa"}, headers=admin)
    items = {item["media_kind"]: item for item in listed.json()["data"]["items"]}
    assert set(items) == {"video", "document", "image", "other"}
    assert items["video"]["limit"] == 50
    assert items["video"]["usage"] == 0

    updated = await client.patch("/v1/admin/quotas/video", json={"limit": 0, "tenant": "Ottawa"}, headers=admin)
    assert updated.json()["data"]["unlimited"] is True

    bad_kind = await client.patch("/v1/admin/quotas/audio", json={"limit": 5, "tenant": tenant_id}, headers=admin)
    assert bad_kind.status_code == 400
    negative = await client.patch("/v1/admin/quotas/video", json={"limit": -1, "tenant": tenant_id}, headers=admin)
    assert negative.status_code == 400

    audit = await client.get("/v1/admin/audit", params={"action_type": "quota_update"}, headers=admin)
    entries = audit.json()["data"]["items"]
    assert [entry["target_id"] for entry in entries] == [f"{tenant_id}:video"]
    assert entries[0]["before"]["limit"] == 50
    assert entries[0]["after"]["limit"] == 0


@pytest.mark.asyncio
async def test_audit_log_filters_and_redaction(client, database) -> None:
    admin = auth_headers("admin-1", "admin")
    await client.post(
        "/v1/admin/users",
        json={"first_name": "A", "last_name": "B", "email": "a@example.org", "password": "long-enough-pw"},
        headers={**admin, "X-Request-Id": "req-123", "User-Agent": "pytest-agent"},
    )

    response = await client.get("/v1/admin/audit", params={"actor_id": "admin-1"}, headers=admin)
    assert response.status_code == 200
    entry = response.json()["data"]["items"][0]
    assert entry["action_type"] == "user_create"
    assert entry["request_id"] == "req-123"
    assert entry["user_agent"] == "pytest-agent"
    assert "password" not in entry["after"]

    unknown = await client.get("/v1/admin/audit", params={"action_type": "nonsense"}, headers=admin)
    assert unknown.status_code == 400

    denied = await client.get("/v1/admin/audit", headers=auth_headers("m-1", "member"))
    assert denied.status_code == 403


@pytest.mark.asyncio
@pytest.mark.parametrize("params", [{"page": 0}, {"limit": 0}, {"limit": 1000}])
async def test_pagination_bounds_are_validated(client, params) -> None:
    response = await client.get("/v1/admin/audit", params=params, headers=auth_headers("admin-1", "admin"))
    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
