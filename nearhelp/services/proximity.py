from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from loguru import logger

from nearhelp.schemas.enums import HelpCategory
from nearhelp.services.geo import Coordinates, distance_km
from nearhelp.services.liveness import T_STALE, Liveness, StatusFlag, classify, display_status
from nearhelp.services.position_store import PositionRecord, PositionStore


@dataclass(frozen=True)
class NearbyEntity:
    entity_id: str
    coordinates: Coordinates
    distance_km: float
    status: StatusFlag
    online: bool
    last_update_at: datetime
    display_name: Optional[str] = None
    place_label: Optional[str] = None


@dataclass(frozen=True)
class NearbyAnchor:
    id: str
    owner_id: str
    category: HelpCategory
    message: str
    coordinates: Coordinates
    distance_km: float
    is_urgent: bool
    resolved: bool
    created_at: datetime
    place_label: Optional[str] = None


def count_online(entries: Iterable[NearbyEntity]) -> int:
    """The only place online entries are counted."""
    return sum(1 for e in entries if e.online)


class ProximityQueryEngine:
    """
    Radius queries over the position store, annotated with distance and
    liveness. Always returns offline entries too; callers decide what to show.
    Store failures propagate as StoreUnavailable so callers can keep their
    last good result instead of showing an empty one.
    """

    def __init__(self, store: PositionStore, stale_after: timedelta = T_STALE):
        self.store = store
        self.stale_after = stale_after

    def _annotate(self, center: Coordinates, record: PositionRecord, now: datetime) -> NearbyEntity:
        liveness = classify(record.status, record.last_update_at, now, self.stale_after)
        return NearbyEntity(
            entity_id=record.entity_id,
            coordinates=record.coordinates,
            distance_km=distance_km(center, record.coordinates),
            status=display_status(record.status, record.last_update_at, now, self.stale_after),
            online=liveness is Liveness.online,
            last_update_at=record.last_update_at,
            display_name=record.display_name,
            place_label=record.place_label,
        )

    async def nearby_entities(
        self,
        center: Coordinates,
        radius_km: float,
        now: datetime,
        exclude_id: Optional[str] = None,
    ) -> List[NearbyEntity]:
        records = await self.store.query(center, radius_km, exclude_id)
        entries = [self._annotate(center, r, now) for r in records]
        entries.sort(key=lambda e: (e.distance_km, e.entity_id))
        logger.debug(
            f"[proximity] nearby | center={center.label()} | radius={radius_km}km | "
            f"total={len(entries)} | online={count_online(entries)}"
        )
        return entries

    async def online_count(
        self,
        center: Coordinates,
        radius_km: float,
        now: datetime,
        exclude_id: Optional[str] = None,
    ) -> int:
        return count_online(await self.nearby_entities(center, radius_km, now, exclude_id))

    def reclassify(self, entries: Iterable[NearbyEntity], now: datetime) -> List[NearbyEntity]:
        """Re-apply liveness to a cached result so stale snapshots still age out."""
        out = []
        for e in entries:
            liveness = classify(e.status, e.last_update_at, now, self.stale_after)
            out.append(
                replace(
                    e,
                    online=liveness is Liveness.online,
                    status=display_status(e.status, e.last_update_at, now, self.stale_after),
                )
            )
        return out

    async def nearby_anchors(
        self,
        center: Coordinates,
        radius_km: float,
        include_resolved: bool = False,
    ) -> List[NearbyAnchor]:
        anchors = await self.store.query_anchors(center, radius_km, include_resolved)
        out = [
            NearbyAnchor(
                id=a.id,
                owner_id=a.owner_id,
                category=a.category,
                message=a.message,
                coordinates=a.coordinates,
                distance_km=distance_km(center, a.coordinates),
                is_urgent=a.is_urgent,
                resolved=a.resolved,
                created_at=a.created_at,
                place_label=a.place_label,
            )
            for a in anchors
            if include_resolved or not a.resolved
        ]
        out.sort(key=lambda a: (a.distance_km, a.id))
        return out
