import asyncio
import random

import pytest

from nearhelp.core.errors import StoreUnavailable, Unauthenticated
from nearhelp.services.refresh_scheduler import RefreshScheduler


async def _noop():
    return None


def _scheduler(heartbeat=_noop, poll=_noop, **kwargs):
    kwargs.setdefault("heartbeat_interval", 0.01)
    kwargs.setdefault("poll_interval", 0.01)
    kwargs.setdefault("jitter", 0)
    kwargs.setdefault("timeout", 1)
    return RefreshScheduler(heartbeat, poll, **kwargs)


def test_backoff_doubles_and_caps() -> None:
    s = _scheduler(max_backoff=4)
    assert s.next_delay(10, 0) == 10
    assert s.next_delay(10, 1) == 20
    assert s.next_delay(10, 2) == 40
    assert s.next_delay(10, 5) == 40


def test_jitter_stays_within_ratio() -> None:
    s = _scheduler(jitter=0.1, rng=random.Random(7))
    delays = [s.next_delay(10, 0) for _ in range(200)]
    assert all(9 <= d <= 11 for d in delays)
    assert len(set(delays)) > 1


@pytest.mark.asyncio
async def test_both_loops_run_until_stopped() -> None:
    s = _scheduler()
    s.start()
    await asyncio.sleep(0.1)
    assert s.running
    await s.stop()

    assert not s.running
    assert s.runs["heartbeat"] > 0
    assert s.runs["poll"] > 0
    # stopping twice is fine
    await s.stop()


@pytest.mark.asyncio
async def test_poll_runs_immediately_heartbeat_waits() -> None:
    async with _scheduler(heartbeat_interval=10, poll_interval=10) as s:
        await asyncio.sleep(0.02)
        assert s.runs["poll"] == 1
        assert s.runs["heartbeat"] == 0


@pytest.mark.asyncio
async def test_trigger_poll_skips_the_wait() -> None:
    async with _scheduler(heartbeat_interval=10, poll_interval=10) as s:
        await asyncio.sleep(0.02)
        s.trigger_poll()
        await asyncio.sleep(0.02)
        assert s.runs["poll"] == 2


@pytest.mark.asyncio
async def test_transient_failures_back_off_and_recover() -> None:
    outcomes = {"fail": True}

    async def poll():
        if outcomes["fail"]:
            raise StoreUnavailable("down")

    async with _scheduler(poll=poll, heartbeat_interval=10, max_backoff=2) as s:
        await asyncio.sleep(0.1)
        assert s.failures["poll"] >= 2
        assert s.running

        outcomes["fail"] = False
        await asyncio.sleep(0.1)
        assert s.failures["poll"] == 0


@pytest.mark.asyncio
async def test_slow_action_counts_as_failure() -> None:
    async def slow_poll():
        await asyncio.sleep(1)

    async with _scheduler(poll=slow_poll, heartbeat_interval=10, timeout=0.01) as s:
        await asyncio.sleep(0.1)
        assert s.failures["poll"] >= 1


@pytest.mark.asyncio
async def test_unauthenticated_stops_everything() -> None:
    fatal = []

    async def poll():
        raise Unauthenticated("token expired")

    s = _scheduler(poll=poll, on_fatal=fatal.append)
    s.start()
    await asyncio.sleep(0.1)

    assert len(fatal) == 1
    assert isinstance(fatal[0], Unauthenticated)
    assert not s.running
    await s.stop()


@pytest.mark.asyncio
async def test_cannot_start_twice() -> None:
    async with _scheduler() as s:
        with pytest.raises(RuntimeError):
            s.start()
