from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq.connections import RedisSettings

from edugov.core.config import get_settings
from edugov.core.logging import configure_logging
from edugov.domain.models import utc_now
from edugov.persistence.db import Database
from edugov.services.analytics import generate_snapshot, is_stale, latest_snapshot
from edugov.services.anomalies import log_anomaly
from edugov.services.intake import mark_upload_failed
from edugov.services.moderation.enforcement import expire_bans
from edugov.services.outbox import requeue_failed, run_delivery_cycle


logger = logging.getLogger(__name__)


def _database(ctx: dict[str, Any]) -> Database:
    database = ctx.get("database")
    if database is None:
        database = Database()
        ctx["database"] = database
    return database


async def deliver_outbox(ctx: dict[str, Any]) -> dict[str, int]:
    # One delivery pass; permanent failures surface as an anomaly for admins.
    async with _database(ctx).session() as session:
        stats = await run_delivery_cycle(session)
        if stats["failed"]:
            await log_anomaly(
                session,
                anomaly_type="outbox_delivery_failed",
                details={"failed": stats["failed"], "scanned": stats["scanned"]},
            )
            await session.commit()
    return stats


async def expire_bans_job(ctx: dict[str, Any]) -> int:
    async with _database(ctx).session() as session:
        return await expire_bans(session)


async def refresh_snapshot(ctx: dict[str, Any], kind: str = "daily") -> int | None:
    # Regenerate only when the latest snapshot has gone stale.
    async with _database(ctx).session() as session:
        current = utc_now()
        snapshot = await latest_snapshot(session, kind)
        if snapshot is not None and not is_stale(snapshot, current):
            return snapshot.id
        snapshot = await generate_snapshot(session, kind=kind, now=current)
        return snapshot.id


async def fail_upload(ctx: dict[str, Any], upload_id: str, message: str) -> str:
    # Storage pipelines report asynchronous failures through this job.
    async with _database(ctx).session() as session:
        upload = await mark_upload_failed(session, upload_id, message=message)
    return upload.status


async def requeue_outbox_event(ctx: dict[str, Any], event_id: int) -> str:
    async with _database(ctx).session() as session:
        event = await requeue_failed(session, event_id)
    return event.status


async def _loop(name: str, interval_s: int, job: Callable[[], Awaitable[Any]]) -> None:
    # Keep each loop alive after a failed pass; the next tick retries.
    interval_s = max(1, int(interval_s))
    while True:
        try:
            await job()
        except Exception:  # noqa: BLE001 - keep loop alive while surfacing errors in logs.
            logger.exception("worker_loop_failed loop=%s", name)
        await asyncio.sleep(interval_s)


async def _startup(ctx: dict[str, Any]) -> None:
    # Start periodic loops with the worker so delivery continues when API traffic is idle.
    settings = get_settings()
    configure_logging(settings.log_level)
    ctx["database"] = Database(settings=settings)
    ctx["loop_tasks"] = [
        asyncio.create_task(_loop("outbox", settings.worker_outbox_interval_s, lambda: deliver_outbox(ctx))),
        asyncio.create_task(_loop("ban_expiry", settings.worker_ban_expiry_interval_s, lambda: expire_bans_job(ctx))),
        asyncio.create_task(_loop("snapshot", settings.worker_snapshot_interval_s, lambda: refresh_snapshot(ctx))),
    ]
    logger.info("governance_worker_started loops=%s", len(ctx["loop_tasks"]))


async def _shutdown(ctx: dict[str, Any]) -> None:
    # Cancel loops before disposing the engine they use.
    for task in ctx.get("loop_tasks", []):
        task.cancel()
    database = ctx.get("database")
    if database is not None:
        await database.dispose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = "edugov:governance"
    functions = [deliver_outbox, expire_bans_job, refresh_snapshot, fail_upload, requeue_outbox_event]
    on_startup = _startup
    on_shutdown = _shutdown
