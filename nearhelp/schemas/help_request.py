from datetime import datetime
from typing import Optional, List

from pydantic import Field

from nearhelp.core.presence_config import ANCHOR_RADIUS_KM, MAX_RADIUS_KM
from nearhelp.schemas.base import BaseSchema, PointIn
from nearhelp.schemas.enums import HelpCategory
from nearhelp.services.position_store import Anchor
from nearhelp.services.proximity import NearbyAnchor

class HelpRequestCreate(PointIn):
    category: HelpCategory
    message: str = Field(min_length=1, max_length=1000)
    is_urgent: bool = False
    place_label: Optional[str] = Field(default=None, max_length=200)

class HelpRequestOut(BaseSchema):
    id: str
    owner_id: str
    category: HelpCategory
    message: str
    is_urgent: bool
    resolved: bool
    lat: float
    lng: float
    place_label: Optional[str] = None
    created_at: datetime
    distance_km: Optional[float] = None

class NearbyHelpRequestsResponse(BaseSchema):
    help_requests: List[HelpRequestOut]
    radius_km: float


def help_request_out(anchor: Anchor | NearbyAnchor) -> HelpRequestOut:
    distance = getattr(anchor, "distance_km", None)
    return HelpRequestOut(
        id=anchor.id,
        owner_id=anchor.owner_id,
        category=anchor.category,
        message=anchor.message,
        is_urgent=anchor.is_urgent,
        resolved=anchor.resolved,
        lat=anchor.coordinates.lat,
        lng=anchor.coordinates.lng,
        place_label=anchor.place_label,
        created_at=anchor.created_at,
        distance_km=round(distance, 3) if distance is not None else None,
    )
