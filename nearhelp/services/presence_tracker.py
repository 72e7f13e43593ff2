from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import AsyncIterator, Callable, Dict, List, Optional, Tuple

from loguru import logger

from nearhelp.core.errors import InvalidTransition, NotPresent, StaleWrite, StoreUnavailable
from nearhelp.core.presence_config import (
    LEAVE_ATTEMPTS,
    LEAVE_RETRY_DELAY_SECONDS,
    SWEEP_INTERVAL_SECONDS,
)
from nearhelp.schemas.enums import ChangeKind
from nearhelp.services.change_bus import TOPIC_POSITIONS, ChangeBus, ChangeEvent
from nearhelp.services.geo import Coordinates
from nearhelp.services.liveness import T_HEARTBEAT, T_STALE, StatusFlag, utcnow
from nearhelp.services.position_store import PositionStore


class PresenceState(str, Enum):
    absent = "absent"
    joining = "joining"
    present = "present"


_ALLOWED = {
    (PresenceState.absent, PresenceState.joining),
    (PresenceState.joining, PresenceState.present),
    (PresenceState.joining, PresenceState.absent),
    (PresenceState.present, PresenceState.present),
    (PresenceState.present, PresenceState.absent),
}


@dataclass
class Membership:
    session_key: str
    coordinates: Coordinates
    last_seen: datetime


@dataclass
class EntityPresence:
    entity_id: str
    state: PresenceState = PresenceState.absent
    sessions: Dict[str, Membership] = field(default_factory=dict)
    display_name: Optional[str] = None
    place_label: Optional[str] = None
    last_write_at: Optional[datetime] = None
    # latest coalesced heartbeat, written once the window closes
    pending: Optional[Coordinates] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)


# smallest step that still orders two writes made on the same clock reading
_TICK = timedelta(microseconds=1)


class PresenceTracker:
    """
    Who is connected right now, and the online flag in the position store.

    Per entity: absent -> joining -> present (-> present on heartbeats)
    -> absent on leave or when every session misses heartbeats for
    `session_timeout`. Operations on one entity are serialized by that
    entity's lock; different entities never wait on each other. State for an
    entity is dropped as soon as it goes absent, except the timestamp of its
    last write: every write for an entity is stamped strictly after the
    previous one, so a late offline write can never tie with a rejoin.
    """

    def __init__(
        self,
        store: PositionStore,
        bus: Optional[ChangeBus] = None,
        clock: Callable[[], datetime] = utcnow,
        heartbeat_interval: timedelta = T_HEARTBEAT,
        session_timeout: timedelta = T_STALE,
        leave_attempts: int = LEAVE_ATTEMPTS,
        leave_retry_delay: float = LEAVE_RETRY_DELAY_SECONDS,
    ):
        self.store = store
        self.bus = bus
        self.clock = clock
        self.heartbeat_interval = heartbeat_interval
        self.session_timeout = session_timeout
        self.leave_attempts = max(1, leave_attempts)
        self.leave_retry_delay = leave_retry_delay
        self._entities: Dict[str, EntityPresence] = {}
        self._stamps: Dict[str, datetime] = {}

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def state(self, entity_id: str) -> PresenceState:
        entry = self._entities.get(entity_id)
        return entry.state if entry else PresenceState.absent

    def present_entities(self) -> List[str]:
        return sorted(e.entity_id for e in self._entities.values() if e.state is PresenceState.present)

    def member_count(self) -> int:
        return sum(len(e.sessions) for e in self._entities.values())

    def session_keys(self, entity_id: str) -> List[str]:
        entry = self._entities.get(entity_id)
        return sorted(entry.sessions) if entry else []

    def tracked_count(self) -> int:
        return len(self._entities)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _locked(self, entity_id: str, create: bool = False) -> AsyncIterator[Optional[EntityPresence]]:
        while True:
            entry = self._entities.get(entity_id)
            if entry is None:
                if not create:
                    yield None
                    return
                entry = EntityPresence(entity_id=entity_id)
                self._entities[entity_id] = entry

            async with entry.lock:
                # the entry may have gone absent and been dropped while we waited
                if self._entities.get(entity_id) is not entry:
                    continue
                try:
                    yield entry
                finally:
                    if entry.state is PresenceState.absent and not entry.sessions:
                        self._entities.pop(entity_id, None)
                return

    def _stamp(self, entity_id: str, now: Optional[datetime] = None) -> datetime:
        now = now or self.clock()
        last = self._stamps.get(entity_id)
        if last is not None and now <= last:
            now = last + _TICK
        self._stamps[entity_id] = now
        return now

    @staticmethod
    def _transition(entry: EntityPresence, new_state: PresenceState) -> None:
        if (entry.state, new_state) not in _ALLOWED:
            raise InvalidTransition(f"{entry.entity_id}: {entry.state.value} -> {new_state.value}")
        entry.state = new_state

    async def _write_online(self, entry: EntityPresence, coordinates: Coordinates, now: datetime) -> bool:
        try:
            await self.store.upsert(
                entry.entity_id,
                coordinates,
                StatusFlag.online,
                now,
                display_name=entry.display_name,
                place_label=entry.place_label,
            )
        except StaleWrite as exc:
            logger.debug(f"[presence] dropped superseded write | entity={entry.entity_id} | {exc}")
            return False

        if self.bus is not None:
            await self.bus.publish(
                ChangeEvent(
                    topic=TOPIC_POSITIONS,
                    entity_id=entry.entity_id,
                    change_kind=ChangeKind.moved,
                    metadata={"lat": coordinates.lat, "lng": coordinates.lng},
                )
            )
        return True

    async def _announce(self, entity_id: str, kind: ChangeKind, **metadata) -> None:
        if self.bus is not None:
            await self.bus.publish_presence(entity_id, kind, metadata)

    async def _mark_offline(self, entity_id: str, now: datetime, sign_out: bool) -> bool:
        """
        Best effort. If every attempt fails the record keeps its online flag
        and simply ages out of the staleness window.
        """
        for attempt in range(1, self.leave_attempts + 1):
            try:
                await self.store.set_status(
                    entity_id,
                    StatusFlag.offline,
                    now,
                    is_active=False if sign_out else None,
                )
                return True
            except StaleWrite:
                logger.debug(f"[presence] offline write superseded | entity={entity_id}")
                return False
            except StoreUnavailable as exc:
                logger.warning(
                    f"[presence] offline write failed | entity={entity_id} | "
                    f"attempt {attempt}/{self.leave_attempts} | {exc}"
                )
                if attempt < self.leave_attempts:
                    await asyncio.sleep(self.leave_retry_delay)

        logger.warning(f"[presence] giving up offline write | entity={entity_id} | record will age out")
        return False

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def join(
        self,
        entity_id: str,
        coordinates: Coordinates,
        session_key: Optional[str] = None,
        display_name: Optional[str] = None,
        place_label: Optional[str] = None,
    ) -> PresenceState:
        session_key = session_key or entity_id

        async with self._locked(entity_id, create=True) as entry:
            now = self._stamp(entity_id)
            first = entry.state is PresenceState.absent
            if first:
                self._transition(entry, PresenceState.joining)
            if display_name is not None:
                entry.display_name = display_name
            if place_label is not None:
                entry.place_label = place_label

            try:
                await self._write_online(entry, coordinates, now)
            except StoreUnavailable:
                if first:
                    self._transition(entry, PresenceState.absent)
                raise

            entry.sessions[session_key] = Membership(session_key, coordinates, now)
            entry.last_write_at = now
            entry.pending = None
            self._transition(entry, PresenceState.present)
            sessions = len(entry.sessions)

        logger.info(f"[presence] join | entity={entity_id} | session={session_key} | sessions={sessions}")
        if first:
            await self._announce(entity_id, ChangeKind.joined, lat=coordinates.lat, lng=coordinates.lng)
        return PresenceState.present

    async def heartbeat(
        self,
        entity_id: str,
        coordinates: Coordinates,
        session_key: Optional[str] = None,
    ) -> bool:
        """
        Re-assert membership. Writes at most once per heartbeat interval per
        entity; calls inside the window are coalesced and the latest
        coordinates go out on the next flush. Returns True if this call wrote.
        """
        async with self._locked(entity_id) as entry:
            if entry is None or entry.state is not PresenceState.present:
                raise NotPresent(f"{entity_id} has not joined")

            now = self.clock()
            if session_key is None:
                touched = list(entry.sessions.values())
            elif session_key in entry.sessions:
                touched = [entry.sessions[session_key]]
            else:
                raise NotPresent(f"{entity_id}: unknown session {session_key}")
            for member in touched:
                member.coordinates = coordinates
                member.last_seen = now
            self._transition(entry, PresenceState.present)

            due = entry.last_write_at is None or now - entry.last_write_at >= self.heartbeat_interval
            if not due:
                entry.pending = coordinates
                logger.debug(f"[presence] heartbeat coalesced | entity={entity_id}")
                return False

            entry.pending = None
            now = self._stamp(entity_id, now)
            await self._write_online(entry, coordinates, now)
            entry.last_write_at = now
            return True

    async def flush(self, now: Optional[datetime] = None) -> int:
        """Write coalesced heartbeats whose window has closed."""
        written = 0
        for entity_id in list(self._entities):
            async with self._locked(entity_id) as entry:
                if entry is None or entry.state is not PresenceState.present or entry.pending is None:
                    continue
                at = now or self.clock()
                if entry.last_write_at is not None and at - entry.last_write_at < self.heartbeat_interval:
                    continue

                coordinates = entry.pending
                entry.pending = None
                at = self._stamp(entity_id, at)
                try:
                    if await self._write_online(entry, coordinates, at):
                        written += 1
                except StoreUnavailable as exc:
                    # retry next window
                    entry.pending = coordinates
                    logger.warning(f"[presence] flush failed | entity={entity_id} | {exc}")
                entry.last_write_at = at
        return written

    async def leave(
        self,
        entity_id: str,
        session_key: Optional[str] = None,
        sign_out: bool = False,
    ) -> bool:
        """
        Drop one session (or all of them). When none remain the entity goes
        absent and an offline write is attempted. Returns True if the entity
        went absent. Never raises for store trouble.

        A sign-out always deactivates the stored record, even when the entity
        already went absent here (expired, or never joined on this node).
        """
        async with self._locked(entity_id) as entry:
            if entry is None or entry.state is not PresenceState.present:
                if not sign_out:
                    return False
                went_absent = False
            else:
                if session_key is None:
                    entry.sessions.clear()
                else:
                    entry.sessions.pop(session_key, None)
                if entry.sessions:
                    logger.info(f"[presence] session closed | entity={entity_id} | session={session_key} | remaining={len(entry.sessions)}")
                    return False
                entry.pending = None
                self._transition(entry, PresenceState.absent)
                went_absent = True
            now = self._stamp(entity_id)

        if not went_absent:
            logger.info(f"[presence] sign-out while absent | entity={entity_id}")
            await self._mark_offline(entity_id, now, sign_out=True)
            return False

        logger.info(f"[presence] leave | entity={entity_id} | sign_out={sign_out}")
        await self._announce(entity_id, ChangeKind.left, reason="sign_out" if sign_out else "leave")
        await self._mark_offline(entity_id, now, sign_out)
        return True

    async def sweep(self, now: Optional[datetime] = None) -> List[str]:
        """Drop sessions that stopped heartbeating; returns entities that went absent."""
        expired: List[Tuple[str, datetime]] = []
        for entity_id in list(self._entities):
            async with self._locked(entity_id) as entry:
                if entry is None or entry.state is not PresenceState.present:
                    continue
                at = now or self.clock()
                dead = [k for k, m in entry.sessions.items() if at - m.last_seen > self.session_timeout]
                for key in dead:
                    del entry.sessions[key]
                if dead and not entry.sessions:
                    entry.pending = None
                    self._transition(entry, PresenceState.absent)
                    expired.append((entity_id, self._stamp(entity_id, at)))

        for entity_id, at in expired:
            logger.info(f"[presence] timed out | entity={entity_id}")
            await self._announce(entity_id, ChangeKind.left, reason="timeout")
            await self._mark_offline(entity_id, at, sign_out=False)

        # a stamp older than the session window can no longer tie with a new clock reading
        horizon = (now or self.clock()) - self.session_timeout
        for entity_id, stamp in list(self._stamps.items()):
            if stamp < horizon and entity_id not in self._entities:
                del self._stamps[entity_id]
        return [entity_id for entity_id, _ in expired]

    async def run(self, interval: float = SWEEP_INTERVAL_SECONDS) -> None:
        """Background loop: flush coalesced heartbeats, expire dead sessions."""
        logger.info(f"[presence] maintenance loop started | interval={interval}s")
        try:
            while True:
                await asyncio.sleep(interval)
                try:
                    await self.flush()
                    await self.sweep()
                except StoreUnavailable as exc:
                    logger.warning(f"[presence] maintenance pass failed | {exc}")
        finally:
            logger.info("[presence] maintenance loop stopped")
