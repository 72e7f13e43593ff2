"""Session-scoped wiring: built on sign-in, torn down on sign-out."""

import asyncio

import pytest

from nearhelp.services.change_bus import InProcessChangeBus
from nearhelp.services.geo import Coordinates
from nearhelp.services.liveness import StatusFlag, utcnow
from nearhelp.services.position_store import InMemoryPositionStore
from nearhelp.services.presence_tracker import PresenceState, PresenceTracker
from nearhelp.services.proximity import ProximityQueryEngine
from nearhelp.services.runtime import build_runtime
from nearhelp.services.session_context import SessionContext

CENTER = Coordinates(28.5355, 77.3910)
X = Coordinates(28.5400, 77.3950)

FAST = {"heartbeat_interval": 0.01, "poll_interval": 0.01, "jitter": 0}


async def _wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wiring():
    store = InMemoryPositionStore()
    bus = InProcessChangeBus()
    tracker = PresenceTracker(store, bus, leave_retry_delay=0)
    engine = ProximityQueryEngine(store)
    return store, bus, tracker, engine


@pytest.mark.asyncio
async def test_start_joins_and_observes_neighbours(wiring) -> None:
    store, bus, tracker, engine = wiring
    await store.upsert("x", X, StatusFlag.online, utcnow())

    ctx = SessionContext("me", tracker, engine, bus=bus, radius_km=10, scheduler_options=FAST)
    await ctx.start(CENTER, display_name="Me")
    try:
        assert ctx.active
        assert tracker.state("me") is PresenceState.present
        await _wait_for(lambda: ctx.snapshot is not None and ctx.snapshot.has_data)
        # the caller never sees itself
        assert [e.entity_id for e in ctx.snapshot.entities] == ["x"]
        assert ctx.snapshot.online_count == 1
    finally:
        await ctx.close()


@pytest.mark.asyncio
async def test_hung_store_marks_the_stream_stale(flaky_store) -> None:
    await flaky_store.upsert("x", X, StatusFlag.online, utcnow())
    bus = InProcessChangeBus()
    tracker = PresenceTracker(flaky_store, bus, leave_retry_delay=0)
    ctx = SessionContext(
        "me",
        tracker,
        ProximityQueryEngine(flaky_store),
        bus=bus,
        scheduler_options={"heartbeat_interval": 10, "poll_interval": 0.02, "jitter": 0},
        query_timeout=0.05,
    )
    await ctx.start(CENTER)
    try:
        await _wait_for(lambda: ctx.snapshot.has_data and not ctx.snapshot.is_stale)

        flaky_store.hanging = True
        await _wait_for(lambda: ctx.snapshot.is_stale, timeout=2)
        assert [e.entity_id for e in ctx.snapshot.entities] == ["x"]
        assert "timed out" in ctx.snapshot.last_error
        await _wait_for(lambda: ctx.scheduler.failures["poll"] >= 1, timeout=2)
    finally:
        flaky_store.hanging = False
        await ctx.close()


def test_scheduler_timeout_must_outlast_the_query(wiring) -> None:
    _, _, tracker, engine = wiring
    with pytest.raises(ValueError):
        SessionContext("me", tracker, engine, scheduler_options={"timeout": 0.05}, query_timeout=0.1)


@pytest.mark.asyncio
async def test_close_tears_everything_down(wiring) -> None:
    store, bus, tracker, engine = wiring
    ctx = SessionContext("me", tracker, engine, bus=bus, scheduler_options=FAST)
    await ctx.start(CENTER)

    await ctx.close(sign_out=True)
    assert not ctx.active
    assert not ctx.scheduler.running
    assert tracker.state("me") is PresenceState.absent
    assert bus.subscriber_count() == 0
    rec = await store.get_by_id("me")
    assert rec.status is StatusFlag.offline
    assert rec.is_active is False

    # idempotent
    await ctx.close()


@pytest.mark.asyncio
async def test_update_position_moves_observer(wiring) -> None:
    store, bus, tracker, engine = wiring
    ctx = SessionContext("me", tracker, engine, bus=bus, scheduler_options=FAST)
    await ctx.start(CENTER)
    try:
        moved_to = Coordinates(28.5370, 77.3925)
        await ctx.update_position(moved_to, radius_km=3)
        assert ctx.observer.center == moved_to
        assert ctx.radius_km == 3
        assert tracker.session_keys("me") == [ctx.session_key]
    finally:
        await ctx.close()


@pytest.mark.asyncio
async def test_update_before_start_is_rejected(wiring) -> None:
    _, _, tracker, engine = wiring
    ctx = SessionContext("me", tracker, engine)
    with pytest.raises(RuntimeError):
        await ctx.update_position(CENTER)


@pytest.mark.asyncio
async def test_heartbeat_rejoins_after_membership_loss(wiring) -> None:
    _, bus, tracker, engine = wiring
    ctx = SessionContext("me", tracker, engine, bus=bus, scheduler_options={"heartbeat_interval": 10, "poll_interval": 10})
    await ctx.start(CENTER)
    try:
        await tracker.leave("me", ctx.session_key)
        assert tracker.state("me") is PresenceState.absent

        await ctx._heartbeat()
        assert tracker.state("me") is PresenceState.present
    finally:
        await ctx.close()


@pytest.mark.asyncio
async def test_two_sessions_keep_entity_present_until_both_close(wiring) -> None:
    store, bus, tracker, engine = wiring
    phone = SessionContext("me", tracker, engine, bus=bus, scheduler_options=FAST)
    laptop = SessionContext("me", tracker, engine, bus=bus, scheduler_options=FAST)
    await phone.start(CENTER)
    await laptop.start(CENTER)

    await phone.close()
    assert tracker.state("me") is PresenceState.present
    await laptop.close()
    assert tracker.state("me") is PresenceState.absent


@pytest.mark.asyncio
async def test_runtime_sign_out_closes_every_session() -> None:
    runtime = build_runtime(store=InMemoryPositionStore())
    runtime.start(sweep_interval=0.01)
    try:
        first = runtime.open_session("me", 10, **FAST)
        second = runtime.open_session("me", 10, **FAST)
        other = runtime.open_session("you", 10, **FAST)
        for ctx in (first, second, other):
            await ctx.start(CENTER)

        assert await runtime.sign_out("me") == 2
        assert runtime.tracker.state("me") is PresenceState.absent
        assert runtime.tracker.state("you") is PresenceState.present
        assert list(runtime.sessions) == [other.session_key]
    finally:
        await runtime.stop()

    assert runtime.sessions == {}
    assert runtime.tracker.state("you") is PresenceState.absent


@pytest.mark.asyncio
async def test_runtime_http_observer_is_reused_per_entity() -> None:
    runtime = build_runtime(store=InMemoryPositionStore())
    a = runtime.http_observer("me", CENTER, 10)
    b = runtime.http_observer("me", X, 5)
    assert a is b
    assert b.center == X
    runtime.forget("me")
    assert runtime.http_observer("me", CENTER, 10) is not a
