from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Callable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from nearhelp.core.errors import InvalidCoordinate, StoreUnavailable
from nearhelp.core.presence_config import OBSERVER_DEBOUNCE_SECONDS, STORE_TIMEOUT_SECONDS
from nearhelp.services.change_bus import TOPIC_POSITIONS, TOPIC_PRESENCE, ChangeBus, ChangeEvent, Subscription
from nearhelp.services.geo import Coordinates, within_radius
from nearhelp.services.liveness import utcnow
from nearhelp.services.proximity import NearbyEntity, ProximityQueryEngine, count_online


@dataclass(frozen=True)
class NearbySnapshot:
    entities: Tuple[NearbyEntity, ...]
    online_count: int
    total_count: int
    # True when the list is last-known-good (or there has never been a good one)
    is_stale: bool
    refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def has_data(self) -> bool:
        return self.refreshed_at is not None


@dataclass(frozen=True)
class OnlineCount:
    value: int
    total: int
    is_stale: bool


EMPTY_SNAPSHOT = NearbySnapshot(entities=(), online_count=0, total_count=0, is_stale=True)


def _snapshot(entries: Sequence[NearbyEntity], is_stale: bool, refreshed_at: Optional[datetime], error: Optional[str] = None) -> NearbySnapshot:
    return NearbySnapshot(
        entities=tuple(entries),
        online_count=count_online(entries),
        total_count=len(entries),
        is_stale=is_stale,
        refreshed_at=refreshed_at,
        last_error=error,
    )


class NearbyObserver:
    """
    Live nearby list for one query point. Refreshed by poll ticks and by
    change-bus events; whichever comes first. A failed refresh keeps the
    previous list (re-classified against the current time) and flags it
    stale, so a network blip never shows up as "nobody nearby".
    """

    def __init__(
        self,
        engine: ProximityQueryEngine,
        center: Coordinates,
        radius_km: float,
        exclude_id: Optional[str] = None,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = STORE_TIMEOUT_SECONDS,
        debounce: float = OBSERVER_DEBOUNCE_SECONDS,
    ):
        self.engine = engine
        self.center = center
        self.radius_km = radius_km
        self.exclude_id = exclude_id
        self.clock = clock
        self.timeout = timeout
        self.debounce = debounce
        self._snapshot = EMPTY_SNAPSHOT
        self._refresh_lock = asyncio.Lock()
        self._listeners: Set[asyncio.Queue] = set()
        self._subscriptions: List[Subscription] = []
        self._watchers: List[asyncio.Task] = []

    @property
    def snapshot(self) -> NearbySnapshot:
        return self._snapshot

    @property
    def online_count(self) -> OnlineCount:
        snap = self._snapshot
        return OnlineCount(value=snap.online_count, total=snap.total_count, is_stale=snap.is_stale)

    def move(self, center: Coordinates, radius_km: Optional[float] = None) -> None:
        self.center = center
        if radius_km is not None:
            self.radius_km = radius_km

    async def refresh(self, now: Optional[datetime] = None) -> NearbySnapshot:
        async with self._refresh_lock:
            now = now or self.clock()
            try:
                entries = await asyncio.wait_for(
                    self.engine.nearby_entities(self.center, self.radius_km, now, self.exclude_id),
                    timeout=self.timeout,
                )
            except (StoreUnavailable, asyncio.TimeoutError) as exc:
                reason = str(exc) or f"nearby query timed out after {self.timeout}s"
                previous = self._snapshot
                kept = self.engine.reclassify(previous.entities, now)
                snap = _snapshot(kept, True, previous.refreshed_at, reason)
                logger.warning(
                    f"[observer] refresh failed, serving last known | center={self.center.label()} | "
                    f"kept={len(kept)} | {reason}"
                )
            else:
                snap = _snapshot(entries, False, now)
            self._publish(snap)
            return snap

    def _publish(self, snap: NearbySnapshot) -> None:
        self._snapshot = snap
        for queue in list(self._listeners):
            # slow consumers only ever need the newest snapshot
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snap)

    async def updates(self) -> AsyncIterator[NearbySnapshot]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1)
        self._listeners.add(queue)
        try:
            while True:
                snap = await queue.get()
                if snap is None:
                    return
                yield snap
        finally:
            self._listeners.discard(queue)

    async def online_counts(self) -> AsyncIterator[OnlineCount]:
        async for snap in self.updates():
            yield OnlineCount(value=snap.online_count, total=snap.total_count, is_stale=snap.is_stale)

    # ------------------------------------------------------------------
    # Change bus
    # ------------------------------------------------------------------

    def attach(self, bus: ChangeBus, topics: Sequence[str] = (TOPIC_POSITIONS, TOPIC_PRESENCE)) -> None:
        for topic in topics:
            sub = bus.subscribe(topic)
            self._subscriptions.append(sub)
            self._watchers.append(asyncio.create_task(self._watch(sub), name=f"observer:{topic}"))

    def _affects_list(self, event: ChangeEvent) -> bool:
        """
        An event matters if it concerns someone already listed (they may have
        moved out or gone offline) or lands inside the current radius.
        """
        if event.entity_id == self.exclude_id:
            return False
        if any(e.entity_id == event.entity_id for e in self._snapshot.entities):
            return True
        lat, lng = event.metadata.get("lat"), event.metadata.get("lng")
        if lat is None or lng is None:
            return False
        try:
            point = Coordinates(float(lat), float(lng))
        except (InvalidCoordinate, TypeError, ValueError):
            return False
        return within_radius(self.center, point, self.radius_km)

    async def _watch(self, sub: Subscription) -> None:
        async for event in sub:
            if not self._affects_list(event):
                continue
            if self.debounce:
                await asyncio.sleep(self.debounce)
            # collapse a burst of events into one query
            sub.drain()
            logger.debug(f"[observer] change | topic={sub.topic} | entity={event.entity_id} | kind={event.change_kind.value}")
            await self.refresh()

    async def close(self) -> None:
        for sub in self._subscriptions:
            sub.close()
        for task in self._watchers:
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
        self._subscriptions.clear()
        self._watchers.clear()
        for queue in list(self._listeners):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)


def observe_nearby_entities(
    engine: ProximityQueryEngine,
    center: Coordinates,
    radius_km: float,
    bus: Optional[ChangeBus] = None,
    exclude_id: Optional[str] = None,
) -> NearbyObserver:
    observer = NearbyObserver(engine, center, radius_km, exclude_id=exclude_id)
    if bus is not None:
        observer.attach(bus)
    return observer


def observe_online_count(
    engine: ProximityQueryEngine,
    center: Coordinates,
    radius_km: float,
    bus: Optional[ChangeBus] = None,
    exclude_id: Optional[str] = None,
) -> Tuple[NearbyObserver, AsyncIterator[OnlineCount]]:
    """Count view over the same observer, so the count can't disagree with the list."""
    observer = observe_nearby_entities(engine, center, radius_km, bus, exclude_id)
    return observer, observer.online_counts()
