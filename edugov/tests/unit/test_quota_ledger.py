from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import pytest

from edugov.core.errors import QuotaExceededError, ValidationError
from edugov.domain.models import QuotaRow
from edugov.services.quota import QuotaService
from edugov.tests.utils.seed import create_tenant


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.mark.asyncio
async def test_increment_until_exhausted_then_month_rollover(database) -> None:
    tenant_id = await create_tenant(database)
    clock = _Clock(datetime(2026, 1, 31, 23, 0, tzinfo=timezone.utc))
    service = QuotaService(time_provider=clock)

    async with database.session() as session:
        await service.set_limit(session, tenant_id=tenant_id, kind="video", limit=2)
        await session.commit()
        first = await service.increment(session, tenant_id=tenant_id, kind="video")
        second = await service.increment(session, tenant_id=tenant_id, kind="video")
        await session.commit()
        assert (first.usage, second.usage) == (1, 2)
        assert second.exhausted

        with pytest.raises(QuotaExceededError) as excinfo:
            await service.increment(session, tenant_id=tenant_id, kind="video")
        assert excinfo.value.status_code == 400
        await session.rollback()

        # February opens a fresh row at the default limit.
        clock.now = datetime(2026, 2, 1, 0, 5, tzinfo=timezone.utc)
        rolled = await service.increment(session, tenant_id=tenant_id, kind="video")
        await session.commit()
        assert rolled.usage == 1
        assert rolled.limit == 50
        assert rolled.period_start == datetime(2026, 2, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_zero_limit_is_unlimited(database) -> None:
    tenant_id = await create_tenant(database)
    service = QuotaService()
    async with database.session() as session:
        await service.set_limit(session, tenant_id=tenant_id, kind="image", limit=0)
        for _ in range(3):
            snapshot = await service.increment(session, tenant_id=tenant_id, kind="image")
        await session.commit()
    assert snapshot.unlimited
    assert snapshot.usage == 3
    assert snapshot.remaining is None


@pytest.mark.asyncio
async def test_unknown_kind_and_negative_limit_are_rejected(database) -> None:
    tenant_id = await create_tenant(database)
    service = QuotaService()
    async with database.session() as session:
        with pytest.raises(ValidationError):
            await service.check(session, tenant_id=tenant_id, kind="audio")
        with pytest.raises(ValidationError):
            await service.set_limit(session, tenant_id=tenant_id, kind="video", limit=-1)


@pytest.mark.asyncio
async def test_missing_quota_table_reports_unlimited(database) -> None:
    tenant_id = await create_tenant(database)
    async with database.engine.begin() as conn:
        await conn.run_sync(QuotaRow.__table__.drop)

    service = QuotaService()
    async with database.session() as session:
        checked = await service.check(session, tenant_id=tenant_id, kind="document")
        incremented = await service.increment(session, tenant_id=tenant_id, kind="document")
    assert checked.unlimited
    assert incremented.unlimited


@pytest.mark.asyncio
async def test_concurrent_increments_at_last_slot_admit_exactly_one(database) -> None:
    tenant_id = await create_tenant(database)
    service = QuotaService()
    async with database.session() as session:
        await service.set_limit(session, tenant_id=tenant_id, kind="video", limit=1)
        await session.commit()

    async def attempt() -> str:
        async with database.session() as session:
            try:
                await service.increment(session, tenant_id=tenant_id, kind="video")
            except QuotaExceededError:
                await session.rollback()
                return "exceeded"
            await session.commit()
            return "ok"

    outcomes = await asyncio.gather(attempt(), attempt())
    assert sorted(outcomes) == ["exceeded", "ok"]

    async with database.session() as session:
        snapshot = await service.check(session, tenant_id=tenant_id, kind="video")
    assert snapshot.usage == 1
