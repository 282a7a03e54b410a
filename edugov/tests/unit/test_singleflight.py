from __future__ import annotations

import asyncio

import pytest

from edugov.services.singleflight import SingleFlight


@pytest.mark.asyncio
async def test_concurrent_callers_share_one_execution() -> None:
    flight: SingleFlight[int] = SingleFlight()
    calls = 0
    gate = asyncio.Event()

    async def work() -> int:
        nonlocal calls
        calls += 1
        await gate.wait()
        return 42

    tasks = [asyncio.create_task(flight.do("daily", work)) for _ in range(5)]
    await asyncio.sleep(0)
    assert flight.in_flight("daily")
    gate.set()
    results = await asyncio.gather(*tasks)
    assert results == [42] * 5
    assert calls == 1
    assert not flight.in_flight("daily")


@pytest.mark.asyncio
async def test_leader_failure_propagates_to_followers_and_clears_key() -> None:
    flight: SingleFlight[int] = SingleFlight()
    gate = asyncio.Event()

    async def failing() -> int:
        await gate.wait()
        raise RuntimeError("boom")

    leader = asyncio.create_task(flight.do("weekly", failing))
    await asyncio.sleep(0)
    follower = asyncio.create_task(flight.do("weekly", failing))
    await asyncio.sleep(0)
    gate.set()
    for task in (leader, follower):
        with pytest.raises(RuntimeError):
            await task

    async def ok() -> int:
        return 1

    assert await flight.do("weekly", ok) == 1
