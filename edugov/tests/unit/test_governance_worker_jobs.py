from __future__ import annotations

import asyncio
import contextlib

import pytest
from sqlalchemy import select

from edugov.core.config import get_settings
from edugov.core.errors import ConflictError
from edugov.domain.models import Anomaly
from edugov.services.outbox import enqueue
from edugov.tests.utils.seed import create_tenant, create_upload, create_user
from edugov.workers.governance_worker import _loop, deliver_outbox, fail_upload, refresh_snapshot


async def _enqueue(database, count: int) -> None:
    async with database.session() as session:
        for index in range(count):
            await enqueue(session, kind="user", subject_id=f"user-{index}", payload={"index": index})
        await session.commit()


@pytest.mark.asyncio
async def test_deliver_outbox_uses_log_sink_without_webhook(database) -> None:
    await _enqueue(database, 2)
    stats = await deliver_outbox({"database": database})
    assert stats["delivered"] == 2
    assert stats["failed"] == 0


@pytest.mark.asyncio
async def test_unreachable_webhook_dead_letters_and_logs_anomaly(database, monkeypatch) -> None:
    monkeypatch.setenv("OUTBOX_DELIVERY_URL", "http://127.0.0.1:9/hooks/outbox")
    monkeypatch.setenv("OUTBOX_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("OUTBOX_DELIVERY_TIMEOUT_S", "0.5")
    get_settings.cache_clear()
    await _enqueue(database, 1)

    stats = await deliver_outbox({"database": database})
    assert stats["failed"] == 1

    async with database.session() as session:
        anomalies = (await session.execute(select(Anomaly))).scalars().all()
    assert [(anomaly.anomaly_type, anomaly.severity) for anomaly in anomalies] == [
        ("outbox_delivery_failed", "medium")
    ]


@pytest.mark.asyncio
async def test_refresh_snapshot_only_regenerates_stale(database) -> None:
    ctx = {"database": database}
    first = await refresh_snapshot(ctx)
    second = await refresh_snapshot(ctx)
    assert first is not None
    assert first == second


@pytest.mark.asyncio
async def test_fail_upload_job_only_fails_pending_uploads(database) -> None:
    tenant_id = await create_tenant(database)
    owner = await create_user(database, role="instructor", tenant_id=tenant_id)
    upload_id = await create_upload(database, owner_id=owner, tenant_id=tenant_id)
    ctx = {"database": database}

    assert await fail_upload(ctx, upload_id, "transcode failed") == "failed"
    with pytest.raises(ConflictError):
        await fail_upload(ctx, upload_id, "again")


@pytest.mark.asyncio
async def test_periodic_loop_survives_unexpected_errors() -> None:
    calls: list[int] = []
    recovered = asyncio.Event()

    async def job() -> None:
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("receiver returned garbage")
        recovered.set()

    task = asyncio.create_task(_loop("test", 1, job))
    try:
        await asyncio.wait_for(recovered.wait(), timeout=5)
    finally:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
    assert calls == [0, 1]
