from __future__ import annotations

import uuid
from typing import Any, Dict, Optional

from loguru import logger

from nearhelp.core.errors import NotPresent, StoreUnavailable
from nearhelp.core.presence_config import DEFAULT_RADIUS_KM, STORE_TIMEOUT_SECONDS, TICK_TIMEOUT_SECONDS
from nearhelp.services.change_bus import ChangeBus
from nearhelp.services.geo import Coordinates
from nearhelp.services.observers import NearbyObserver, NearbySnapshot
from nearhelp.services.presence_tracker import PresenceTracker
from nearhelp.services.proximity import ProximityQueryEngine
from nearhelp.services.refresh_scheduler import RefreshScheduler


class SessionContext:
    """
    Everything one signed-in client needs, built on sign-in and torn down on
    sign-out: its presence membership, its nearby observer and the timers
    that keep both fresh. Nothing outlives close().
    """

    def __init__(
        self,
        entity_id: str,
        tracker: PresenceTracker,
        engine: ProximityQueryEngine,
        bus: Optional[ChangeBus] = None,
        session_key: Optional[str] = None,
        radius_km: float = DEFAULT_RADIUS_KM,
        scheduler_options: Optional[Dict[str, Any]] = None,
        query_timeout: float = STORE_TIMEOUT_SECONDS,
    ):
        self.entity_id = entity_id
        self.session_key = session_key or f"{entity_id}:{uuid.uuid4().hex[:8]}"
        self.tracker = tracker
        self.engine = engine
        self.bus = bus
        self.radius_km = radius_km
        self.coordinates: Optional[Coordinates] = None
        self.observer: Optional[NearbyObserver] = None
        self.scheduler: Optional[RefreshScheduler] = None
        self.query_timeout = query_timeout
        self._scheduler_options = {"timeout": max(TICK_TIMEOUT_SECONDS, 2 * query_timeout), **(scheduler_options or {})}
        if self._scheduler_options["timeout"] <= query_timeout:
            raise ValueError("scheduler timeout must be longer than the nearby query timeout")
        self._display_name: Optional[str] = None
        self._closed = False

    @property
    def active(self) -> bool:
        return self.scheduler is not None and not self._closed

    async def start(
        self,
        coordinates: Coordinates,
        display_name: Optional[str] = None,
        place_label: Optional[str] = None,
    ) -> None:
        if self._closed:
            raise RuntimeError(f"session {self.session_key} already closed")
        if self.scheduler is not None:
            raise RuntimeError(f"session {self.session_key} already started")

        self.coordinates = coordinates
        self._display_name = display_name
        await self.tracker.join(
            self.entity_id,
            coordinates,
            session_key=self.session_key,
            display_name=display_name,
            place_label=place_label,
        )

        self.observer = NearbyObserver(
            self.engine,
            coordinates,
            self.radius_km,
            exclude_id=self.entity_id,
            clock=self.tracker.clock,
            timeout=self.query_timeout,
        )
        if self.bus is not None:
            self.observer.attach(self.bus)

        self.scheduler = RefreshScheduler(
            heartbeat=self._heartbeat,
            poll=self._poll,
            name=self.session_key,
            **self._scheduler_options,
        )
        self.scheduler.start()
        logger.info(f"[session] started | {self.session_key} | radius={self.radius_km}km")

    async def _heartbeat(self) -> None:
        try:
            await self.tracker.heartbeat(self.entity_id, self.coordinates, self.session_key)
        except NotPresent:
            # membership expired under us (e.g. the process was suspended); rejoin
            logger.info(f"[session] membership lost, rejoining | {self.session_key}")
            await self.tracker.join(
                self.entity_id,
                self.coordinates,
                session_key=self.session_key,
                display_name=self._display_name,
            )

    async def _poll(self) -> NearbySnapshot:
        snap = await self.observer.refresh()
        if snap.is_stale:
            # already published as last-known-good; raising only backs the poll loop off
            raise StoreUnavailable(snap.last_error or "nearby refresh failed")
        return snap

    async def update_position(self, coordinates: Coordinates, radius_km: Optional[float] = None) -> bool:
        """New fix from the client. Returns True if it was written right away."""
        if not self.active:
            raise RuntimeError(f"session {self.session_key} is not active")
        self.coordinates = coordinates
        if radius_km is not None:
            self.radius_km = radius_km
        self.observer.move(coordinates, radius_km)
        wrote = await self.tracker.heartbeat(self.entity_id, coordinates, self.session_key)
        self.scheduler.trigger_poll()
        return wrote

    @property
    def snapshot(self) -> Optional[NearbySnapshot]:
        return self.observer.snapshot if self.observer else None

    async def close(self, sign_out: bool = False) -> None:
        if self._closed:
            return
        self._closed = True

        if self.scheduler is not None:
            await self.scheduler.stop()
        if self.observer is not None:
            await self.observer.close()
        if self.coordinates is not None:
            await self.tracker.leave(self.entity_id, self.session_key, sign_out=sign_out)
        logger.info(f"[session] closed | {self.session_key} | sign_out={sign_out}")

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()
