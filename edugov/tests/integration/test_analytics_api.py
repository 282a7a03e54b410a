from __future__ import annotations

from datetime import timedelta

import pytest

from edugov.domain.models import LessonProgress, utc_now
from edugov.services.moderation.flags import create_flag
from edugov.tests.utils.auth import auth_headers, principal_for
from edugov.tests.utils.seed import create_forum_post, create_tenant, create_upload, create_user


def _admin() -> dict[str, str]:
    # Built per call so the token is signed with the per-test secret.
    return auth_headers("admin-1", "admin")


async def _seed_stale_flag(database, *, hours_old: int = 3) -> int:
    author = await create_user(database)
    post_id = await create_forum_post(database, author_id=author)
    async with database.session() as session:
        flag = await create_flag(
            session,
            principal_for("reporter-1", "member"),
            content_type="forum_post",
            content_id=post_id,
            reason="spam",
            now=utc_now() - timedelta(hours=hours_old),
        )
        return flag.id


@pytest.mark.asyncio
async def test_dashboard_snapshot_is_reused_and_verifies_accurately(client, database) -> None:
    tenant_id = await create_tenant(database, "Toronto")
    owner = await create_user(database, role="instructor", tenant_id=tenant_id, last_login_at=utc_now())
    await create_user(database, tenant_id=tenant_id)
    await create_upload(database, owner_id=owner, tenant_id=tenant_id, status="approved", reviewed_at=utc_now())
    await create_upload(database, owner_id=owner, tenant_id=tenant_id)
    await create_forum_post(database, author_id=owner)

    first = await client.get("/v1/admin/analytics", headers=_admin())
    assert first.status_code == 200
    snapshot = first.json()["data"]
    metrics = snapshot["metrics"]
    assert metrics["users"]["total"] == 2
    assert metrics["users"]["active"] == 1
    assert metrics["content"]["new"] == 2
    assert metrics["content"]["approval_rate"] == 0.5
    assert metrics["engagement"]["forum_posts"] == 1
    assert snapshot["tenant_comparison"][str(tenant_id)]["name"] == "Toronto"
    assert len(snapshot["trends"]["upload_trend"]) == 7
    assert snapshot["trends"]["upload_trend"][-1]["value"] == 2

    second = await client.get("/v1/admin/analytics", headers=_admin())
    assert second.json()["data"]["id"] == snapshot["id"]

    accuracy = await client.get(f"/v1/admin/accuracy/{snapshot['id']}", headers=_admin())
    assert accuracy.status_code == 200
    assert accuracy.json()["data"]["accuracy"] == 1.0
    assert accuracy.json()["data"]["passed"] is True

    missing = await client.get("/v1/admin/accuracy/9999", headers=_admin())
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_tenant_engagement_score(client, database) -> None:
    tenant_id = await create_tenant(database)
    now = utc_now()
    users = []
    for index in range(10):
        last_login = now - timedelta(days=1) if index < 7 else None
        users.append(await create_user(database, tenant_id=tenant_id, last_login_at=last_login))
    for user_id in users[:3]:
        await create_forum_post(database, author_id=user_id)
    async with database.session() as session:
        for lesson_id, user_id in enumerate(users[:5]):
            session.add(LessonProgress(user_id=user_id, lesson_id=lesson_id, completed=True, updated_at=now))
        await session.commit()

    response = await client.get("/v1/admin/analytics", headers=_admin())
    tenant = response.json()["data"]["tenant_comparison"][str(tenant_id)]
    assert tenant["total_users"] == 10
    assert tenant["active_users"] == 7
    assert tenant["engagement_score"] == 0.5


@pytest.mark.asyncio
async def test_alerts_for_stale_flags_and_quota_pressure(client, database) -> None:
    tenant_id = await create_tenant(database)
    await _seed_stale_flag(database)
    await client.patch("/v1/admin/quotas/image", json={"limit": 1, "tenant": tenant_id}, headers=_admin())
    await client.post(
        "/v1/admin/content",
        data={"title": "Icon", "tenant": str(tenant_id)},
        files={"file": ("icon.png", b"\x89PNG-data", "image/png")},
        headers=_admin(),
    )

    response = await client.get("/v1/admin/analytics", headers=_admin())
    alerts = {alert["type"]: alert for alert in response.json()["data"]["alerts"]}
    assert alerts["pending_flags"]["count"] == 1
    assert alerts["quota_warning"]["media_kind"] == "image"
    assert alerts["quota_warning"]["tenant_id"] == tenant_id


@pytest.mark.asyncio
async def test_late_flag_review_logs_anomaly(client, database) -> None:
    flag_id = await _seed_stale_flag(database, hours_old=5)
    reviewed = await client.post(f"/v1/admin/flags/{flag_id}/review", json={"action": "dismiss"}, headers=_admin())
    assert reviewed.json()["data"]["review_seconds"] >= 5 * 3600

    anomalies = await client.get("/v1/admin/anomalies", params={"severity": "high"}, headers=_admin())
    items = anomalies.json()["data"]["items"]
    assert [item["anomaly_type"] for item in items] == ["review_time_exceeded"]
    assert items[0]["details"]["flag_id"] == flag_id

    bad = await client.get("/v1/admin/anomalies", params={"severity": "critical"}, headers=_admin())
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_retention_metrics(client, database) -> None:
    now = utc_now()
    await create_user(database, created_at=now - timedelta(days=3), last_login_at=now - timedelta(hours=1))
    await create_user(database, created_at=now - timedelta(days=3))
    await create_user(database, created_at=now - timedelta(days=60), last_login_at=now)

    response = await client.get("/v1/admin/retention", params={"timeframe": "7days"}, headers=_admin())
    assert response.json()["data"] == {
        "timeframe": "7days",
        "new_users": 2,
        "retained_users": 1,
        "retention_rate": 0.5,
    }
    bad = await client.get("/v1/admin/retention", params={"timeframe": "1year"}, headers=_admin())
    assert bad.status_code == 400


@pytest.mark.asyncio
async def test_export_is_bounded_and_audited(client, database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    await create_upload(database, owner_id=owner, tenant_id=tenant_id)
    await create_upload(database, owner_id=owner, tenant_id=tenant_id, created_at=utc_now() - timedelta(days=90))

    response = await client.get("/v1/admin/export", params={"dataset": "uploads"}, headers=_admin())
    assert response.status_code == 200
    body = response.json()
    assert body["data"]["metadata"]["record_count"] == 1
    assert body["message"] == "Exported 1 records"

    audit = await client.get("/v1/admin/audit", params={"action_type": "data_export"}, headers=_admin())
    assert len(audit.json()["data"]["items"]) == 1

    unknown = await client.get("/v1/admin/export", params={"dataset": "passwords"}, headers=_admin())
    assert unknown.status_code == 400
    inverted = await client.get(
        "/v1/admin/export",
        params={"dataset": "flags", "start": "2026-02-01T00:00:00", "end": "2026-01-01T00:00:00"},
        headers=_admin(),
    )
    assert inverted.status_code == 400


@pytest.mark.asyncio
async def test_analytics_requires_admin(client, database) -> None:
    tenant_id = await create_tenant(database)
    response = await client.get("/v1/admin/analytics", headers=auth_headers("i-1", "instructor", tenant_id))
    assert response.status_code == 403
