from datetime import datetime
from typing import Dict, List, Optional

from pydantic import Field

from nearhelp.core.presence_config import DEFAULT_RADIUS_KM, MAX_RADIUS_KM
from nearhelp.schemas.base import BaseSchema, PointIn
from nearhelp.schemas.profile import ProfileSummary
from nearhelp.services.liveness import StatusFlag
from nearhelp.services.observers import NearbySnapshot
from nearhelp.services.proximity import NearbyEntity

class PresenceJoinRequest(PointIn):
    display_name: Optional[str] = Field(default=None, max_length=80)
    session_key: Optional[str] = Field(default=None, max_length=120)

class PresenceHeartbeatRequest(PointIn):
    session_key: Optional[str] = Field(default=None, max_length=120)

class PresenceLeaveRequest(BaseSchema):
    session_key: Optional[str] = None
    sign_out: bool = False

class PresenceStateResponse(BaseSchema):
    entity_id: str
    state: str
    written: bool = True
    at: datetime

class NearbyRequest(PointIn):
    radius_km: float = Field(default=DEFAULT_RADIUS_KM, ge=0, le=MAX_RADIUS_KM)

class NearbyUser(BaseSchema):
    user_id: str
    lat: float
    lng: float
    distance_km: float
    status: StatusFlag
    is_online: bool
    last_seen_at: datetime
    display_name: Optional[str] = None
    place_label: Optional[str] = None
    full_name: Optional[str] = None
    username: Optional[str] = None
    avatar_emoji: Optional[str] = None

class NearbyResponse(BaseSchema):
    users: List[NearbyUser]
    online_count: int
    total_count: int
    is_stale: bool = False
    refreshed_at: Optional[datetime] = None

class OnlineCountResponse(BaseSchema):
    online_count: int
    total_count: int
    is_stale: bool = False
    refreshed_at: Optional[datetime] = None

class StreamHello(PointIn):
    display_name: Optional[str] = Field(default=None, max_length=80)
    radius_km: float = Field(default=DEFAULT_RADIUS_KM, ge=0, le=MAX_RADIUS_KM)

class StreamFix(PointIn):
    radius_km: Optional[float] = Field(default=None, ge=0, le=MAX_RADIUS_KM)


def nearby_user(e: NearbyEntity, profile: Optional[ProfileSummary] = None) -> NearbyUser:
    profile = profile or ProfileSummary()
    return NearbyUser(
        user_id=e.entity_id,
        lat=e.coordinates.lat,
        lng=e.coordinates.lng,
        distance_km=round(e.distance_km, 3),
        status=e.status,
        is_online=e.online,
        last_seen_at=e.last_update_at,
        display_name=e.display_name or profile.full_name or profile.username,
        place_label=e.place_label,
        full_name=profile.full_name,
        username=profile.username,
        avatar_emoji=profile.avatar_emoji,
    )

def nearby_response(snapshot: NearbySnapshot, profiles: Optional[Dict[str, ProfileSummary]] = None) -> NearbyResponse:
    profiles = profiles or {}
    return NearbyResponse(
        users=[nearby_user(e, profiles.get(e.entity_id)) for e in snapshot.entities],
        online_count=snapshot.online_count,
        total_count=snapshot.total_count,
        is_stale=snapshot.is_stale,
        refreshed_at=snapshot.refreshed_at,
    )
