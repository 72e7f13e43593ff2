from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from loguru import logger
from postgrest.exceptions import APIError
from supabase import Client

from nearhelp.core.errors import AnchorNotFound, NotAnchorOwner, StaleWrite
from nearhelp.core.presence_config import STORE_TIMEOUT_SECONDS
from nearhelp.schemas.enums import HelpCategory
from nearhelp.services.geo import Coordinates, within_radius
from nearhelp.services.liveness import StatusFlag, utcnow
from nearhelp.services.position_store import (
    Anchor,
    PositionRecord,
    PositionStore,
    rank_by_distance,
    run_blocking,
)

# errors from the REST layer that are worth retrying
_TRANSIENT = (APIError, httpx.HTTPError)


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _position_from_row(row: Dict[str, Any]) -> PositionRecord:
    return PositionRecord(
        entity_id=str(row["entity_id"]),
        coordinates=Coordinates(float(row["lat"]), float(row["lng"])),
        status=StatusFlag(row["status"]),
        last_update_at=_parse_ts(row["last_update_at"]),
        display_name=row.get("display_name"),
        place_label=row.get("place_label"),
        is_active=bool(row.get("is_active", True)),
    )


def _anchor_from_row(row: Dict[str, Any]) -> Anchor:
    return Anchor(
        id=str(row["id"]),
        owner_id=str(row["owner_id"]),
        category=HelpCategory(row["category"]),
        message=row["message"],
        coordinates=Coordinates(float(row["lat"]), float(row["lng"])),
        created_at=_parse_ts(row["created_at"]),
        is_urgent=bool(row.get("is_urgent", False)),
        place_label=row.get("place_label"),
        resolved=bool(row.get("resolved", False)),
    )


class SupabasePositionStore(PositionStore):
    """
    PositionStore over Supabase (PostgREST). Conditional writes and radius
    queries go through the SQL functions in sql/supabase_functions.sql so the
    last-write-wins check happens inside Postgres, not in a read-then-write
    from here.
    """

    def __init__(self, client: Client, timeout: float = STORE_TIMEOUT_SECONDS):
        self.client = client
        self.timeout = timeout

    async def _call(self, fn, *args):
        return await run_blocking(fn, *args, timeout=self.timeout, transient=_TRANSIENT)

    # --- positions ---

    def _rpc(self, name: str, params: Dict[str, Any]):
        return self.client.rpc(name, params).execute().data

    async def upsert(self, entity_id, coordinates, status, timestamp, display_name=None, place_label=None, is_active=True):
        applied = await self._call(
            self._rpc,
            "upsert_position",
            {
                "p_entity_id": entity_id,
                "p_lat": coordinates.lat,
                "p_lng": coordinates.lng,
                "p_status": StatusFlag(status).value,
                "p_display_name": display_name,
                "p_place_label": place_label,
                "p_is_active": is_active,
                "p_ts": _iso(timestamp),
            },
        )
        if applied is False:
            raise StaleWrite(f"{entity_id}: newer position already stored")

    async def set_status(self, entity_id, status, timestamp, is_active=None):
        outcome = await self._call(
            self._rpc,
            "set_position_status",
            {
                "p_entity_id": entity_id,
                "p_status": StatusFlag(status).value,
                "p_ts": _iso(timestamp),
                "p_is_active": is_active,
            },
        )
        if outcome == "stale":
            raise StaleWrite(f"{entity_id}: status write older than stored record")

    async def query(self, center, radius_km, exclude_id=None):
        rows = await self._call(
            self._rpc,
            "positions_within_radius",
            {
                "p_lat": center.lat,
                "p_lng": center.lng,
                "p_radius_km": radius_km,
                "p_exclude": exclude_id,
            },
        )
        records = [_position_from_row(r) for r in rows or []]
        # ST_DWithin and haversine can disagree by centimeters at the edge
        hits = [r for r in records if within_radius(center, r.coordinates, radius_km)]
        return rank_by_distance(center, hits, lambda r: r.coordinates, lambda r: r.entity_id)

    def _get_position_sync(self, entity_id: str) -> Optional[Dict[str, Any]]:
        res = (
            self.client.table("positions")
            .select("*")
            .eq("entity_id", entity_id)
            .limit(1)
            .execute()
        )
        return res.data[0] if res.data else None

    async def get_by_id(self, entity_id):
        row = await self._call(self._get_position_sync, entity_id)
        return _position_from_row(row) if row else None

    # --- anchors ---

    def _insert_anchor_sync(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        res = self.client.table("help_requests").insert(payload).execute()
        if not res.data:
            raise APIError({"message": "insert returned no rows"})
        return res.data[0]

    async def create_anchor(self, owner_id, category, message, coordinates, is_urgent=False, place_label=None, created_at=None):
        row = await self._call(
            self._insert_anchor_sync,
            {
                "owner_id": owner_id,
                "category": HelpCategory(category).value,
                "message": message,
                "is_urgent": is_urgent,
                "lat": coordinates.lat,
                "lng": coordinates.lng,
                "place_label": place_label,
                "resolved": False,
                "created_at": _iso(created_at or utcnow()),
            },
        )
        return _anchor_from_row(row)

    def _get_anchor_sync(self, anchor_id: str) -> Optional[Dict[str, Any]]:
        res = self.client.table("help_requests").select("*").eq("id", anchor_id).limit(1).execute()
        return res.data[0] if res.data else None

    async def get_anchor(self, anchor_id):
        row = await self._call(self._get_anchor_sync, anchor_id)
        return _anchor_from_row(row) if row else None

    def _resolve_sync(self, anchor_id: str, owner_id: str) -> Dict[str, Any]:
        row = self._get_anchor_sync(anchor_id)
        if row is None:
            raise AnchorNotFound(f"help request {anchor_id} not found")
        if str(row["owner_id"]) != owner_id:
            raise NotAnchorOwner(f"{owner_id} does not own help request {anchor_id}")
        if row.get("resolved"):
            return row

        # only ever flips false -> true
        res = (
            self.client.table("help_requests")
            .update({"resolved": True})
            .eq("id", anchor_id)
            .eq("resolved", False)
            .execute()
        )
        if res.data:
            return res.data[0]
        logger.debug(f"[store] help request {anchor_id} resolved concurrently")
        return self._get_anchor_sync(anchor_id)

    async def resolve_anchor(self, anchor_id, owner_id):
        row = await self._call(self._resolve_sync, anchor_id, owner_id)
        return _anchor_from_row(row)

    async def query_anchors(self, center, radius_km, include_resolved=False):
        rows = await self._call(
            self._rpc,
            "help_requests_within_radius",
            {
                "p_lat": center.lat,
                "p_lng": center.lng,
                "p_radius_km": radius_km,
                "p_include_resolved": include_resolved,
            },
        )
        anchors = [_anchor_from_row(r) for r in rows or []]
        hits = [a for a in anchors if within_radius(center, a.coordinates, radius_km)]
        return rank_by_distance(center, hits, lambda a: a.coordinates, lambda a: a.id)
