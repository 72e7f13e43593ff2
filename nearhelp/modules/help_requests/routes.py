from fastapi import APIRouter, Depends, Query
from loguru import logger

from nearhelp.api.deps import get_runtime
from nearhelp.core.auth import get_current_entity_id
from nearhelp.core.errors import AnchorNotFound
from nearhelp.core.presence_config import ANCHOR_RADIUS_KM, MAX_RADIUS_KM
from nearhelp.schemas.enums import ChangeKind
from nearhelp.schemas.help_request import (
    HelpRequestCreate,
    HelpRequestOut,
    NearbyHelpRequestsResponse,
    help_request_out,
)
from nearhelp.services.change_bus import TOPIC_HELP_REQUESTS, ChangeEvent
from nearhelp.services.geo import Coordinates
from nearhelp.services.geocoding import reverse_geocode
from nearhelp.services.runtime import PresenceRuntime

router = APIRouter()


@router.post("", response_model=HelpRequestOut)
async def create_help_request(
    payload: HelpRequestCreate,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    coords = payload.to_coordinates()
    place_label = payload.place_label or await reverse_geocode(coords)

    anchor = await runtime.store.create_anchor(
        owner_id=entity_id,
        category=payload.category,
        message=payload.message.strip(),
        coordinates=coords,
        is_urgent=payload.is_urgent,
        place_label=place_label,
    )
    logger.info(f"[help] created | id={anchor.id} | owner={entity_id} | category={anchor.category.value} | urgent={anchor.is_urgent}")

    await runtime.bus.publish(
        ChangeEvent(
            topic=TOPIC_HELP_REQUESTS,
            entity_id=anchor.id,
            change_kind=ChangeKind.created,
            metadata={"lat": coords.lat, "lng": coords.lng, "category": anchor.category.value},
        )
    )
    return help_request_out(anchor)


# must be registered before /{help_request_id}
@router.get("/nearby", response_model=NearbyHelpRequestsResponse)
async def nearby_help_requests(
    lat: float,
    lng: float,
    radius_km: float = Query(default=ANCHOR_RADIUS_KM, ge=0, le=MAX_RADIUS_KM),
    include_resolved: bool = False,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    anchors = await runtime.engine.nearby_anchors(Coordinates(lat, lng), radius_km, include_resolved)
    return NearbyHelpRequestsResponse(
        help_requests=[help_request_out(a) for a in anchors],
        radius_km=radius_km,
    )


@router.get("/{help_request_id}", response_model=HelpRequestOut)
async def get_help_request(
    help_request_id: str,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    anchor = await runtime.store.get_anchor(help_request_id)
    if anchor is None:
        raise AnchorNotFound(f"help request {help_request_id} not found")
    return help_request_out(anchor)


@router.post("/{help_request_id}/resolve", response_model=HelpRequestOut)
async def resolve_help_request(
    help_request_id: str,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    anchor = await runtime.store.resolve_anchor(help_request_id, entity_id)
    logger.info(f"[help] resolved | id={anchor.id} | owner={entity_id}")

    await runtime.bus.publish(
        ChangeEvent(
            topic=TOPIC_HELP_REQUESTS,
            entity_id=anchor.id,
            change_kind=ChangeKind.resolved,
        )
    )
    return help_request_out(anchor)
