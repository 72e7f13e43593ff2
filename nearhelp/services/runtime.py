from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, Optional

from loguru import logger

from nearhelp.core.config import POSITION_STORE_BACKEND
from nearhelp.core.presence_config import DEFAULT_RADIUS_KM, SWEEP_INTERVAL_SECONDS
from nearhelp.services.change_bus import ChangeBus, InProcessChangeBus
from nearhelp.services.geo import Coordinates
from nearhelp.services.observers import NearbyObserver
from nearhelp.services.position_store import PositionStore, build_position_store
from nearhelp.services.presence_tracker import PresenceTracker
from nearhelp.services.proximity import ProximityQueryEngine
from nearhelp.services.session_context import SessionContext

# last-known-good caches for plain HTTP callers
MAX_HTTP_OBSERVERS = 10_000


@dataclass
class PresenceRuntime:
    store: PositionStore
    bus: ChangeBus
    tracker: PresenceTracker
    engine: ProximityQueryEngine
    sessions: Dict[str, SessionContext] = field(default_factory=dict)
    http_observers: "OrderedDict[str, NearbyObserver]" = field(default_factory=OrderedDict)
    _maintenance: Optional[asyncio.Task] = None

    def start(self, sweep_interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        self._maintenance = asyncio.create_task(self.tracker.run(sweep_interval), name="presence-maintenance")

    async def stop(self) -> None:
        for ctx in list(self.sessions.values()):
            await self.close_session(ctx)
        if self._maintenance is not None:
            self._maintenance.cancel()
            await asyncio.gather(self._maintenance, return_exceptions=True)
            self._maintenance = None
        self.http_observers.clear()

    # --- streaming sessions ---

    def open_session(self, entity_id: str, radius_km: float = DEFAULT_RADIUS_KM, **scheduler_options) -> SessionContext:
        ctx = SessionContext(
            entity_id,
            self.tracker,
            self.engine,
            bus=self.bus,
            radius_km=radius_km,
            scheduler_options=scheduler_options or None,
        )
        self.sessions[ctx.session_key] = ctx
        return ctx

    async def close_session(self, ctx: SessionContext, sign_out: bool = False) -> None:
        self.sessions.pop(ctx.session_key, None)
        await ctx.close(sign_out=sign_out)

    async def sign_out(self, entity_id: str) -> int:
        """Tear down every live session of an entity. Returns how many were closed."""
        closing = [c for c in self.sessions.values() if c.entity_id == entity_id]
        for ctx in closing:
            await self.close_session(ctx, sign_out=True)
        self.http_observers.pop(entity_id, None)
        return len(closing)

    # --- request/response callers ---

    def http_observer(self, entity_id: str, center: Coordinates, radius_km: float) -> NearbyObserver:
        observer = self.http_observers.get(entity_id)
        if observer is None:
            observer = NearbyObserver(self.engine, center, radius_km, exclude_id=entity_id, clock=self.tracker.clock)
            self.http_observers[entity_id] = observer
            while len(self.http_observers) > MAX_HTTP_OBSERVERS:
                self.http_observers.popitem(last=False)
        else:
            observer.move(center, radius_km)
            self.http_observers.move_to_end(entity_id)
        return observer

    def forget(self, entity_id: str) -> None:
        self.http_observers.pop(entity_id, None)


def build_runtime(store: Optional[PositionStore] = None, bus: Optional[ChangeBus] = None) -> PresenceRuntime:
    store = store or build_position_store(POSITION_STORE_BACKEND)
    bus = bus or InProcessChangeBus()
    tracker = PresenceTracker(store, bus)
    engine = ProximityQueryEngine(store)
    logger.info(f"[runtime] presence runtime ready | store={store.__class__.__name__}")
    return PresenceRuntime(store=store, bus=bus, tracker=tracker, engine=engine)
