from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from nearhelp.api.deps import get_runtime
from nearhelp.core.auth import get_current_entity_id
from nearhelp.core.db import get_db
from nearhelp.core.errors import AnchorNotFound
from nearhelp.core.presence_config import ANCHOR_RADIUS_KM, MAX_RADIUS_KM
from nearhelp.schemas.enums import ChangeKind
from nearhelp.schemas.message import MessageCreate, MessageOut
from nearhelp.services.change_bus import TOPIC_MESSAGES, ChangeEvent, request_topic
from nearhelp.services.geo import Coordinates
from nearhelp.services.geocoding import reverse_geocode
from nearhelp.services.runtime import PresenceRuntime
from .service import (
    created_at_utc,
    get_nearby_messages,
    get_request_messages,
    send_message,
)

router = APIRouter()


def _out(msg) -> MessageOut:
    return MessageOut(
        id=msg.id,
        sender_id=msg.sender_id,
        body=msg.body,
        help_request_id=msg.help_request_id,
        lat=msg.lat,
        lng=msg.lng,
        place_label=msg.place_label,
        created_at=created_at_utc(msg),
    )


async def _require_help_request(runtime: PresenceRuntime, help_request_id: str) -> None:
    if await runtime.store.get_anchor(help_request_id) is None:
        raise AnchorNotFound(f"help request {help_request_id} not found")


@router.post("", response_model=MessageOut)
async def message_send(
    payload: MessageCreate,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    coords = None
    place_label = None
    if payload.help_request_id is not None:
        await _require_help_request(runtime, payload.help_request_id)
    elif payload.lat is not None and payload.lng is not None:
        coords = Coordinates(payload.lat, payload.lng)
        place_label = await reverse_geocode(coords)

    try:
        msg = await run_in_threadpool(
            send_message,
            db,
            entity_id,
            payload.body,
            payload.help_request_id,
            coords,
            place_label,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    topic = request_topic(msg.help_request_id) if msg.help_request_id else TOPIC_MESSAGES
    await runtime.bus.publish(
        ChangeEvent(
            topic=topic,
            entity_id=msg.id,
            change_kind=ChangeKind.message,
            metadata={"sender_id": entity_id},
        )
    )
    return _out(msg)


@router.get("/nearby", response_model=list[MessageOut])
async def message_nearby(
    lat: float,
    lng: float,
    radius_km: float = Query(default=ANCHOR_RADIUS_KM, ge=0, le=MAX_RADIUS_KM),
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    msgs = await run_in_threadpool(get_nearby_messages, db, Coordinates(lat, lng), radius_km)
    return [_out(m) for m in msgs]


@router.get("/request/{help_request_id}", response_model=list[MessageOut])
async def message_list(
    help_request_id: str,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
    db: Session = Depends(get_db),
):
    await _require_help_request(runtime, help_request_id)
    msgs = await run_in_threadpool(get_request_messages, db, help_request_id)
    return [_out(m) for m in msgs]
