from __future__ import annotations

from datetime import datetime, timedelta
import json
import logging
from typing import Any, Awaitable, Callable

import httpx
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from edugov.core.config import get_settings
from edugov.core.errors import ConflictError, NotFoundError
from edugov.domain.models import OutboxEvent, utc_now
from edugov.persistence.guards import is_missing_table_error, soft_dependency
from edugov.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

Deliverer = Callable[[dict[str, Any]], Awaitable[None]]


class DeliveryFailed(Exception):
    """Downstream consumer did not accept an outbox event."""


async def enqueue(
    session: AsyncSession,
    *,
    kind: str,
    subject_id: str,
    payload: dict[str, Any],
    now: datetime | None = None,
) -> None:
    """Add an event to the outbox inside the caller's transaction.

    A failing write is logged and swallowed so the state change that
    produced the event still commits.
    """
    created = now or utc_now()
    event = OutboxEvent(
        kind=kind,
        subject_id=str(subject_id),
        payload=payload,
        status="pending",
        attempt_count=0,
        next_attempt_at=created,
        created_at=created,
    )
    async with soft_dependency(session, "outbox", kind=kind, subject_id=subject_id):
        session.add(event)
        await session.flush()


def event_payload(event: OutboxEvent) -> dict[str, Any]:
    return {
        "id": event.id,
        "kind": event.kind,
        "subject_id": event.subject_id,
        "payload": event.payload,
        "created_at": event.created_at.isoformat() if event.created_at else None,
        "attempt": event.attempt_count + 1,
    }


def retry_delay(attempt_count: int) -> timedelta:
    # Linear backoff: the nth failed attempt waits n * OUTBOX_RETRY_DELAY_S.
    settings = get_settings()
    return timedelta(seconds=max(1, settings.outbox_retry_delay_s) * max(1, attempt_count))


class HttpDeliverer:
    """POST each event as JSON to a single webhook."""

    def __init__(self, url: str, *, timeout_s: float | None = None) -> None:
        self.url = url
        self.timeout_s = timeout_s or get_settings().outbox_delivery_timeout_s

    async def __call__(self, event: dict[str, Any]) -> None:
        body = json.dumps(event, sort_keys=True, separators=(",", ":")).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-Outbox-Event-Id": str(event["id"])}
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                response = await client.post(self.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            raise DeliveryFailed(f"transport error: {exc}") from exc
        if response.status_code >= 400:
            raise DeliveryFailed(f"receiver returned {response.status_code}")


async def log_deliverer(event: dict[str, Any]) -> None:
    # Local/dev sink when no webhook is configured.
    logger.info(
        "outbox_event_delivered kind=%s subject_id=%s event_id=%s",
        event["kind"],
        event["subject_id"],
        event["id"],
    )


def default_deliverer() -> Deliverer:
    url = get_settings().outbox_delivery_url
    if url:
        return HttpDeliverer(url)
    return log_deliverer


async def run_delivery_cycle(
    session: AsyncSession,
    *,
    deliverer: Deliverer | None = None,
    now: datetime | None = None,
    limit: int | None = None,
) -> dict[str, int]:
    """Deliver due pending events, preserving order within each subject.

    Events are scanned in id order. A subject stops for this cycle at its
    first event that is not yet due or fails, so a later event never
    overtakes an earlier one for the same subject. A dead-lettered event
    holds back everything after it for its subject until it is requeued.
    Delivery is at-least-once: a crash between delivery and the status
    commit redelivers.
    """
    settings = get_settings()
    send = deliverer or default_deliverer()
    current = now or utc_now()
    batch = limit or settings.outbox_batch_size
    stats = {"scanned": 0, "delivered": 0, "retried": 0, "failed": 0, "held": 0}
    try:
        dead_letter_heads = {
            subject_id: first_id
            for subject_id, first_id in (
                await session.execute(
                    select(OutboxEvent.subject_id, func.min(OutboxEvent.id))
                    .where(OutboxEvent.status == "failed")
                    .group_by(OutboxEvent.subject_id)
                )
            ).all()
        }
        events = (
            await session.execute(
                select(OutboxEvent)
                .where(OutboxEvent.status == "pending")
                .order_by(OutboxEvent.id.asc())
                .limit(batch)
            )
        ).scalars().all()
    except SQLAlchemyError as exc:
        if is_missing_table_error(exc):
            await session.rollback()
            logger.warning("outbox_table_missing")
            return stats
        raise
    await session.commit()

    blocked: set[str] = set()
    for event in events:
        stats["scanned"] += 1
        if event.subject_id in blocked:
            continue
        head = dead_letter_heads.get(event.subject_id)
        if head is not None and head < event.id:
            blocked.add(event.subject_id)
            stats["held"] += 1
            continue
        if event.next_attempt_at > current:
            blocked.add(event.subject_id)
            continue
        try:
            await send(event_payload(event))
        except DeliveryFailed as exc:
            blocked.add(event.subject_id)
            event.attempt_count += 1
            event.last_error = str(exc)[:1000]
            if event.attempt_count >= settings.outbox_max_attempts:
                event.status = "failed"
                stats["failed"] += 1
                increment_counter("outbox_failed_total")
                logger.error(
                    "outbox_event_failed event_id=%s kind=%s attempts=%s",
                    event.id,
                    event.kind,
                    event.attempt_count,
                )
            else:
                event.next_attempt_at = current + retry_delay(event.attempt_count)
                stats["retried"] += 1
                logger.warning(
                    "outbox_delivery_retry event_id=%s attempt=%s error=%s",
                    event.id,
                    event.attempt_count,
                    exc,
                )
            await session.commit()
            continue

        result = await session.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event.id, OutboxEvent.status == "pending")
            .values(status="delivered", delivered_at=current, attempt_count=OutboxEvent.attempt_count + 1)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        if result.rowcount:
            stats["delivered"] += 1
            increment_counter("outbox_delivered_total")
    return stats


async def requeue_failed(session: AsyncSession, event_id: int, *, now: datetime | None = None) -> OutboxEvent:
    # Return a dead-lettered event to the queue; attempts restart from zero.
    event = await session.get(OutboxEvent, event_id)
    if event is None:
        raise NotFoundError("Outbox event not found")
    if event.status != "failed":
        raise ConflictError("Only failed events can be requeued")
    event.status = "pending"
    event.attempt_count = 0
    event.next_attempt_at = now or utc_now()
    event.last_error = None
    await session.commit()
    return event
