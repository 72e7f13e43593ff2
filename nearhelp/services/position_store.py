from __future__ import annotations

import abc
import asyncio
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple, Type, TypeVar

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from nearhelp.core.errors import AnchorNotFound, NotAnchorOwner, StaleWrite, StoreUnavailable
from nearhelp.core.presence_config import STORE_TIMEOUT_SECONDS
from nearhelp.models.help_request import HelpRequest
from nearhelp.models.position import Position
from nearhelp.schemas.enums import HelpCategory
from nearhelp.services.geo import Coordinates, bounding_box, distance_km, within_radius
from nearhelp.services.liveness import StatusFlag, utcnow

T = TypeVar("T")


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------

@dataclass(frozen=True)
class PositionRecord:
    entity_id: str
    coordinates: Coordinates
    status: StatusFlag
    last_update_at: datetime
    display_name: Optional[str] = None
    place_label: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Anchor:
    id: str
    owner_id: str
    category: HelpCategory
    message: str
    coordinates: Coordinates
    created_at: datetime
    is_urgent: bool = False
    place_label: Optional[str] = None
    resolved: bool = False


def rank_by_distance(center: Coordinates, items: List[T], coords_of: Callable[[T], Coordinates], id_of: Callable[[T], str]) -> List[T]:
    """Ascending distance from center, ties broken by id so results are stable."""
    return sorted(items, key=lambda it: (distance_km(center, coords_of(it)), id_of(it)))


async def run_blocking(fn: Callable[..., T], *args, timeout: float, transient: Tuple[Type[BaseException], ...]) -> T:
    """
    Run blocking store I/O in a worker thread, bounded by `timeout`. Timeouts and
    the backend's `transient` exception types become StoreUnavailable; domain
    errors raised inside `fn` pass through untouched.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError:
        raise StoreUnavailable(f"position store timed out after {timeout}s")
    except transient as exc:
        logger.warning(f"[store] backend error: {exc}")
        raise StoreUnavailable(f"position store error: {exc.__class__.__name__}") from exc


def _to_db(value: datetime) -> datetime:
    # columns hold naive UTC
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _from_db(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ------------------------------------------------------------------
# Contract
# ------------------------------------------------------------------

class PositionStore(abc.ABC):
    """
    Current position per entity plus fixed anchor points.

    Writes are last-write-wins on the record timestamp: a write older than the
    stored one raises StaleWrite. Any transport/database failure surfaces as
    StoreUnavailable; nothing is swallowed here, retry policy belongs to the
    caller.
    """

    @abc.abstractmethod
    async def upsert(
        self,
        entity_id: str,
        coordinates: Coordinates,
        status: StatusFlag,
        timestamp: datetime,
        display_name: Optional[str] = None,
        place_label: Optional[str] = None,
        is_active: bool = True,
    ) -> None:
        ...

    @abc.abstractmethod
    async def set_status(
        self,
        entity_id: str,
        status: StatusFlag,
        timestamp: datetime,
        is_active: Optional[bool] = None,
    ) -> None:
        """Status-only write. Missing records are ignored."""

    @abc.abstractmethod
    async def query(
        self,
        center: Coordinates,
        radius_km: float,
        exclude_id: Optional[str] = None,
    ) -> List[PositionRecord]:
        ...

    @abc.abstractmethod
    async def get_by_id(self, entity_id: str) -> Optional[PositionRecord]:
        ...

    @abc.abstractmethod
    async def create_anchor(
        self,
        owner_id: str,
        category: HelpCategory,
        message: str,
        coordinates: Coordinates,
        is_urgent: bool = False,
        place_label: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Anchor:
        ...

    @abc.abstractmethod
    async def get_anchor(self, anchor_id: str) -> Optional[Anchor]:
        ...

    @abc.abstractmethod
    async def resolve_anchor(self, anchor_id: str, owner_id: str) -> Anchor:
        """false -> true once. Resolving twice is a no-op; there is no way back."""

    @abc.abstractmethod
    async def query_anchors(
        self,
        center: Coordinates,
        radius_km: float,
        include_resolved: bool = False,
    ) -> List[Anchor]:
        ...


# ------------------------------------------------------------------
# In-memory backend
# ------------------------------------------------------------------

class InMemoryPositionStore(PositionStore):
    """Process-local store. Used for tests and single-node dev runs."""

    def __init__(self):
        self._positions: Dict[str, PositionRecord] = {}
        self._anchors: Dict[str, Anchor] = {}

    async def upsert(self, entity_id, coordinates, status, timestamp, display_name=None, place_label=None, is_active=True):
        current = self._positions.get(entity_id)
        if current is not None and current.last_update_at > timestamp:
            raise StaleWrite(f"{entity_id}: stored {current.last_update_at.isoformat()} newer than {timestamp.isoformat()}")

        self._positions[entity_id] = PositionRecord(
            entity_id=entity_id,
            coordinates=coordinates,
            status=StatusFlag(status),
            last_update_at=timestamp,
            display_name=display_name if display_name is not None else (current.display_name if current else None),
            place_label=place_label if place_label is not None else (current.place_label if current else None),
            is_active=is_active,
        )

    async def set_status(self, entity_id, status, timestamp, is_active=None):
        current = self._positions.get(entity_id)
        if current is None:
            return
        if current.last_update_at > timestamp:
            raise StaleWrite(f"{entity_id}: status write older than stored record")
        self._positions[entity_id] = replace(
            current,
            status=StatusFlag(status),
            last_update_at=timestamp,
            is_active=current.is_active if is_active is None else is_active,
        )

    async def query(self, center, radius_km, exclude_id=None):
        hits = [
            rec
            for rec in self._positions.values()
            if rec.entity_id != exclude_id and within_radius(center, rec.coordinates, radius_km)
        ]
        return rank_by_distance(center, hits, lambda r: r.coordinates, lambda r: r.entity_id)

    async def get_by_id(self, entity_id):
        return self._positions.get(entity_id)

    async def create_anchor(self, owner_id, category, message, coordinates, is_urgent=False, place_label=None, created_at=None):
        anchor = Anchor(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            category=HelpCategory(category),
            message=message,
            coordinates=coordinates,
            created_at=created_at or utcnow(),
            is_urgent=is_urgent,
            place_label=place_label,
        )
        self._anchors[anchor.id] = anchor
        return anchor

    async def get_anchor(self, anchor_id):
        return self._anchors.get(anchor_id)

    async def resolve_anchor(self, anchor_id, owner_id):
        anchor = self._anchors.get(anchor_id)
        if anchor is None:
            raise AnchorNotFound(f"help request {anchor_id} not found")
        if anchor.owner_id != owner_id:
            raise NotAnchorOwner(f"{owner_id} does not own help request {anchor_id}")
        if not anchor.resolved:
            anchor = replace(anchor, resolved=True)
            self._anchors[anchor_id] = anchor
        return anchor

    async def query_anchors(self, center, radius_km, include_resolved=False):
        hits = [
            a
            for a in self._anchors.values()
            if (include_resolved or not a.resolved) and within_radius(center, a.coordinates, radius_km)
        ]
        return rank_by_distance(center, hits, lambda a: a.coordinates, lambda a: a.id)


# ------------------------------------------------------------------
# SQL backend
# ------------------------------------------------------------------

def _position_from_row(row: Position) -> PositionRecord:
    return PositionRecord(
        entity_id=row.entity_id,
        coordinates=Coordinates(row.lat, row.lng),
        status=StatusFlag(row.status),
        last_update_at=_from_db(row.last_update_at),
        display_name=row.display_name,
        place_label=row.place_label,
        is_active=bool(row.is_active),
    )


def _anchor_from_row(row: HelpRequest) -> Anchor:
    return Anchor(
        id=row.id,
        owner_id=row.owner_id,
        category=HelpCategory(row.category),
        message=row.message,
        coordinates=Coordinates(row.lat, row.lng),
        created_at=_from_db(row.created_at),
        is_urgent=bool(row.is_urgent),
        place_label=row.place_label,
        resolved=bool(row.resolved),
    )


class SqlPositionStore(PositionStore):
    """
    SQLAlchemy-backed store. Blocking session work runs in a worker thread and
    every call is bounded by `timeout`; a timeout or any SQLAlchemyError is
    reported as StoreUnavailable.
    """

    def __init__(self, session_factory: Callable[[], Session], timeout: float = STORE_TIMEOUT_SECONDS):
        self.session_factory = session_factory
        self.timeout = timeout

    async def _run(self, fn: Callable[..., T], *args) -> T:
        return await run_blocking(fn, *args, timeout=self.timeout, transient=(SQLAlchemyError,))

    # --- positions ---

    def _upsert_sync(self, values: dict) -> int:
        table = Position.__table__
        with self.session_factory() as db:
            dialect = db.get_bind().dialect.name
            if dialect == "postgresql":
                insert = postgresql.insert
            elif dialect == "sqlite":
                insert = sqlite.insert
            else:
                return self._upsert_generic(db, values)

            stmt = insert(table).values(**values)
            excluded = stmt.excluded
            stmt = stmt.on_conflict_do_update(
                index_elements=[table.c.entity_id],
                set_={
                    "lat": excluded.lat,
                    "lng": excluded.lng,
                    "status": excluded.status,
                    "is_active": excluded.is_active,
                    "last_update_at": excluded.last_update_at,
                    # informational fields: keep what we had unless a new value came in
                    "display_name": func.coalesce(excluded.display_name, table.c.display_name),
                    "place_label": func.coalesce(excluded.place_label, table.c.place_label),
                },
                where=table.c.last_update_at <= excluded.last_update_at,
            )
            result = db.execute(stmt)
            db.commit()
            return result.rowcount

    def _upsert_generic(self, db: Session, values: dict) -> int:
        row = db.get(Position, values["entity_id"], with_for_update=True)
        if row is None:
            db.add(Position(**values))
        elif row.last_update_at > values["last_update_at"]:
            db.rollback()
            return 0
        else:
            for key, val in values.items():
                if key in ("display_name", "place_label") and val is None:
                    continue
                setattr(row, key, val)
        db.commit()
        return 1

    async def upsert(self, entity_id, coordinates, status, timestamp, display_name=None, place_label=None, is_active=True):
        values = {
            "entity_id": entity_id,
            "lat": coordinates.lat,
            "lng": coordinates.lng,
            "status": StatusFlag(status).value,
            "display_name": display_name,
            "place_label": place_label,
            "is_active": is_active,
            "last_update_at": _to_db(timestamp),
        }
        changed = await self._run(self._upsert_sync, values)
        if changed == 0:
            raise StaleWrite(f"{entity_id}: newer position already stored")

    def _set_status_sync(self, entity_id: str, status: str, ts: datetime, is_active: Optional[bool]) -> Optional[int]:
        values = {"status": status, "last_update_at": ts}
        if is_active is not None:
            values["is_active"] = is_active
        with self.session_factory() as db:
            result = db.execute(
                update(Position)
                .where(Position.entity_id == entity_id, Position.last_update_at <= ts)
                .values(**values)
            )
            db.commit()
            if result.rowcount:
                return result.rowcount
            exists = db.execute(select(Position.entity_id).where(Position.entity_id == entity_id)).first()
            return 0 if exists else None

    async def set_status(self, entity_id, status, timestamp, is_active=None):
        changed = await self._run(self._set_status_sync, entity_id, StatusFlag(status).value, _to_db(timestamp), is_active)
        if changed == 0:
            raise StaleWrite(f"{entity_id}: status write older than stored record")

    def _query_sync(self, center: Coordinates, radius_km: float, exclude_id: Optional[str]) -> List[PositionRecord]:
        box = bounding_box(center, radius_km)
        stmt = select(Position).where(Position.lat.between(box.min_lat, box.max_lat))
        if not box.spans_all_longitudes:
            stmt = stmt.where(Position.lng.between(box.min_lng, box.max_lng))
        if exclude_id is not None:
            stmt = stmt.where(Position.entity_id != exclude_id)

        with self.session_factory() as db:
            rows = db.execute(stmt).scalars().all()
            return [_position_from_row(r) for r in rows]

    async def query(self, center, radius_km, exclude_id=None):
        candidates = await self._run(self._query_sync, center, radius_km, exclude_id)
        hits = [r for r in candidates if within_radius(center, r.coordinates, radius_km)]
        return rank_by_distance(center, hits, lambda r: r.coordinates, lambda r: r.entity_id)

    def _get_sync(self, entity_id: str) -> Optional[PositionRecord]:
        with self.session_factory() as db:
            row = db.get(Position, entity_id)
            return _position_from_row(row) if row else None

    async def get_by_id(self, entity_id):
        return await self._run(self._get_sync, entity_id)

    # --- anchors ---

    def _create_anchor_sync(self, row: HelpRequest) -> Anchor:
        with self.session_factory() as db:
            db.add(row)
            db.commit()
            db.refresh(row)
            return _anchor_from_row(row)

    async def create_anchor(self, owner_id, category, message, coordinates, is_urgent=False, place_label=None, created_at=None):
        row = HelpRequest(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            category=HelpCategory(category).value,
            message=message,
            is_urgent=is_urgent,
            lat=coordinates.lat,
            lng=coordinates.lng,
            place_label=place_label,
            resolved=False,
            created_at=_to_db(created_at or utcnow()),
        )
        return await self._run(self._create_anchor_sync, row)

    def _get_anchor_sync(self, anchor_id: str) -> Optional[Anchor]:
        with self.session_factory() as db:
            row = db.query(HelpRequest).filter(HelpRequest.id == anchor_id).first()
            return _anchor_from_row(row) if row else None

    async def get_anchor(self, anchor_id):
        return await self._run(self._get_anchor_sync, anchor_id)

    def _resolve_anchor_sync(self, anchor_id: str, owner_id: str) -> Anchor:
        with self.session_factory() as db:
            row = db.query(HelpRequest).filter(HelpRequest.id == anchor_id).first()
            if not row:
                raise AnchorNotFound(f"help request {anchor_id} not found")
            if row.owner_id != owner_id:
                raise NotAnchorOwner(f"{owner_id} does not own help request {anchor_id}")
            if not row.resolved:
                row.resolved = True
                db.commit()
                db.refresh(row)
            return _anchor_from_row(row)

    async def resolve_anchor(self, anchor_id, owner_id):
        return await self._run(self._resolve_anchor_sync, anchor_id, owner_id)

    def _query_anchors_sync(self, center: Coordinates, radius_km: float, include_resolved: bool) -> List[Anchor]:
        box = bounding_box(center, radius_km)
        with self.session_factory() as db:
            q = db.query(HelpRequest).filter(HelpRequest.lat.between(box.min_lat, box.max_lat))
            if not box.spans_all_longitudes:
                q = q.filter(HelpRequest.lng.between(box.min_lng, box.max_lng))
            if not include_resolved:
                q = q.filter(HelpRequest.resolved.is_(False))
            return [_anchor_from_row(r) for r in q.all()]

    async def query_anchors(self, center, radius_km, include_resolved=False):
        candidates = await self._run(self._query_anchors_sync, center, radius_km, include_resolved)
        hits = [a for a in candidates if within_radius(center, a.coordinates, radius_km)]
        return rank_by_distance(center, hits, lambda a: a.coordinates, lambda a: a.id)


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def build_position_store(backend: str) -> PositionStore:
    if backend == "memory":
        logger.info("[store] using in-memory position store")
        return InMemoryPositionStore()
    if backend == "supabase":
        from nearhelp.services.supabase_store import SupabasePositionStore
        from nearhelp.services.supabase_admin import supabase_admin

        logger.info("[store] using supabase position store")
        return SupabasePositionStore(supabase_admin())
    if backend == "sql":
        from nearhelp.core.db import SessionLocal

        logger.info("[store] using SQL position store")
        return SqlPositionStore(SessionLocal)
    raise RuntimeError(f"Unknown POSITION_STORE_BACKEND: {backend}")
