from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from sqlalchemy import select

from edugov.core.errors import ConflictError
from edugov.domain.models import OutboxEvent
from edugov.services.outbox import DeliveryFailed, enqueue, requeue_failed, run_delivery_cycle


T0 = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


class RecordingDeliverer:
    def __init__(self, *, fail_ids: set[int] | None = None) -> None:
        self.fail_ids = fail_ids or set()
        self.delivered: list[tuple[str, Any]] = []

    async def __call__(self, event: dict[str, Any]) -> None:
        if event["id"] in self.fail_ids:
            raise DeliveryFailed("receiver unavailable")
        self.delivered.append((event["subject_id"], event["payload"]["seq"]))


async def _seed_events(database, subjects: list[str]) -> list[int]:
    async with database.session() as session:
        for seq, subject in enumerate(subjects):
            await enqueue(session, kind="upload", subject_id=subject, payload={"seq": seq}, now=T0)
        await session.commit()
        rows = (await session.execute(select(OutboxEvent.id).order_by(OutboxEvent.id))).scalars().all()
    return list(rows)


async def _statuses(database) -> dict[int, tuple[str, int]]:
    async with database.session() as session:
        events = (await session.execute(select(OutboxEvent))).scalars().all()
        return {event.id: (event.status, event.attempt_count) for event in events}


@pytest.mark.asyncio
async def test_failed_event_blocks_later_events_for_same_subject(database) -> None:
    ids = await _seed_events(database, ["alice", "alice", "bob"])
    deliverer = RecordingDeliverer(fail_ids={ids[0]})

    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=deliverer, now=T0)
    assert stats == {"scanned": 3, "delivered": 1, "retried": 1, "failed": 0, "held": 0}
    assert deliverer.delivered == [("bob", 2)]

    # Not yet due: alice stays blocked.
    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=RecordingDeliverer(), now=T0 + timedelta(seconds=1))
    assert stats["delivered"] == 0

    recovered = RecordingDeliverer()
    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=recovered, now=T0 + timedelta(seconds=10))
    assert stats["delivered"] == 2
    assert recovered.delivered == [("alice", 0), ("alice", 1)]
    statuses = await _statuses(database)
    assert statuses[ids[0]] == ("delivered", 2)
    assert all(status == "delivered" for status, _ in statuses.values())


@pytest.mark.asyncio
async def test_event_is_dead_lettered_after_max_attempts_and_can_be_requeued(database) -> None:
    ids = await _seed_events(database, ["carol"])
    failing = RecordingDeliverer(fail_ids={ids[0]})

    now = T0
    for expected_attempts in (1, 2, 3):
        async with database.session() as session:
            await run_delivery_cycle(session, deliverer=failing, now=now)
        status, attempts = (await _statuses(database))[ids[0]]
        assert attempts == expected_attempts
        now += timedelta(minutes=1)
    assert status == "failed"

    async with database.session() as session:
        event = await requeue_failed(session, ids[0], now=now)
    assert event.status == "pending"
    assert event.attempt_count == 0

    with pytest.raises(ConflictError):
        async with database.session() as session:
            await requeue_failed(session, ids[0])

    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=RecordingDeliverer(), now=now)
    assert stats["delivered"] == 1


@pytest.mark.asyncio
async def test_dead_lettered_event_holds_back_later_events_for_its_subject(database) -> None:
    ids = await _seed_events(database, ["alice", "alice", "bob"])
    failing = RecordingDeliverer(fail_ids={ids[0]})

    now = T0
    for _ in range(3):
        async with database.session() as session:
            await run_delivery_cycle(session, deliverer=failing, now=now)
        now += timedelta(minutes=1)
    assert failing.delivered == [("bob", 2)]
    assert (await _statuses(database))[ids[0]] == ("failed", 3)

    # The receiver is healthy again, but alice's second event must wait for the first.
    healthy = RecordingDeliverer()
    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=healthy, now=now)
    assert healthy.delivered == []
    assert stats["held"] == 1
    assert (await _statuses(database))[ids[1]] == ("pending", 0)

    async with database.session() as session:
        await requeue_failed(session, ids[0], now=now)
    async with database.session() as session:
        stats = await run_delivery_cycle(session, deliverer=healthy, now=now)
    assert healthy.delivered == [("alice", 0), ("alice", 1)]
    assert stats["delivered"] == 2
