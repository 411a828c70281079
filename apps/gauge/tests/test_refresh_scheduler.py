import asyncio

import pytest

from services.refresh_scheduler import RefreshScheduler


@pytest.mark.anyio
async def test_scheduler_runs_until_stopped():
    ran = asyncio.Event()
    calls = []

    async def refresh():
        calls.append(1)
        if len(calls) >= 2:
            ran.set()

    scheduler = RefreshScheduler(refresh, interval_seconds=0.01)
    await scheduler.start()
    await asyncio.wait_for(ran.wait(), timeout=1.0)
    await scheduler.stop()

    assert not scheduler.running
    assert scheduler.runs >= 2


@pytest.mark.anyio
async def test_scheduler_survives_failed_refresh():
    attempts = []

    async def refresh():
        attempts.append(1)
        raise RuntimeError("upstream down")

    scheduler = RefreshScheduler(refresh, interval_seconds=0.01)
    await scheduler.start()
    await asyncio.sleep(0.05)
    await scheduler.stop()

    assert len(attempts) >= 2


@pytest.mark.anyio
async def test_zero_interval_disables_scheduler():
    async def refresh():
        raise AssertionError("should not run")

    scheduler = RefreshScheduler(refresh, interval_seconds=0)
    await scheduler.start()
    assert not scheduler.enabled
    assert not scheduler.running
    await scheduler.stop()
