import asyncio
from typing import Dict, List

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool

from nearhelp.api.deps import get_runtime
from nearhelp.core.auth import entity_id_from_token, get_current_entity_id
from nearhelp.core.db import SessionLocal
from nearhelp.core.errors import AuthUnavailable, InvalidCoordinate, StoreUnavailable, Unauthenticated
from nearhelp.modules.profiles.service import summaries_by_id
from nearhelp.schemas.presence import (
    NearbyRequest,
    NearbyResponse,
    OnlineCountResponse,
    PresenceHeartbeatRequest,
    PresenceJoinRequest,
    PresenceLeaveRequest,
    PresenceStateResponse,
    StreamFix,
    StreamHello,
    nearby_response,
)
from nearhelp.schemas.profile import ProfileSummary
from nearhelp.services.geocoding import reverse_geocode
from nearhelp.services.observers import NearbySnapshot
from nearhelp.services.runtime import PresenceRuntime
from nearhelp.services.session_context import SessionContext

router = APIRouter()

# websocket close codes
WS_UNAUTHENTICATED = 4401
WS_POLICY_VIOLATION = 1008
WS_TRY_AGAIN_LATER = 1013


# ------------------------------------------------------------------
# PROFILE SUMMARIES
# ------------------------------------------------------------------

def _load_summaries(user_ids: List[str]) -> Dict[str, ProfileSummary]:
    with SessionLocal() as db:
        return {
            uid: ProfileSummary(full_name=p.full_name, username=p.username, avatar_emoji=p.avatar_emoji)
            for uid, p in summaries_by_id(db, user_ids).items()
        }


async def _with_profiles(snapshot: NearbySnapshot) -> NearbyResponse:
    user_ids = [e.entity_id for e in snapshot.entities]
    profiles: Dict[str, ProfileSummary] = {}
    if user_ids:
        try:
            profiles = await run_in_threadpool(_load_summaries, user_ids)
        except SQLAlchemyError as exc:
            # positions do not depend on the profile table
            logger.warning(f"[presence] profile lookup failed, sending list without profiles | {exc!r}")
    return nearby_response(snapshot, profiles)


# ------------------------------------------------------------------
# JOIN / HEARTBEAT / LEAVE
# ------------------------------------------------------------------

@router.post("/join", response_model=PresenceStateResponse)
async def presence_join(
    payload: PresenceJoinRequest,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    coords = payload.to_coordinates()
    place_label = await reverse_geocode(coords)

    state = await runtime.tracker.join(
        entity_id,
        coords,
        session_key=payload.session_key,
        display_name=payload.display_name,
        place_label=place_label,
    )
    return PresenceStateResponse(entity_id=entity_id, state=state.value, at=runtime.tracker.clock())


@router.post("/heartbeat", response_model=PresenceStateResponse)
async def presence_heartbeat(
    payload: PresenceHeartbeatRequest,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    written = await runtime.tracker.heartbeat(entity_id, payload.to_coordinates(), session_key=payload.session_key)
    return PresenceStateResponse(
        entity_id=entity_id,
        state=runtime.tracker.state(entity_id).value,
        written=written,
        at=runtime.tracker.clock(),
    )


@router.post("/leave", response_model=PresenceStateResponse)
async def presence_leave(
    payload: PresenceLeaveRequest,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    if payload.sign_out:
        closed = await runtime.sign_out(entity_id)
        logger.info(f"[presence] sign-out closed {closed} live session(s) | entity={entity_id}")
        await runtime.tracker.leave(entity_id, sign_out=True)
    else:
        await runtime.tracker.leave(entity_id, session_key=payload.session_key)
        runtime.forget(entity_id)

    return PresenceStateResponse(
        entity_id=entity_id,
        state=runtime.tracker.state(entity_id).value,
        at=runtime.tracker.clock(),
    )


# ------------------------------------------------------------------
# NEARBY
# ------------------------------------------------------------------

@router.post("/nearby", response_model=NearbyResponse)
async def presence_nearby(
    payload: NearbyRequest,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    observer = runtime.http_observer(entity_id, payload.to_coordinates(), payload.radius_km)
    snapshot = await observer.refresh()
    if snapshot.is_stale and not snapshot.has_data:
        # nothing good to fall back on; an empty list here would read as "nobody nearby"
        raise StoreUnavailable(snapshot.last_error or "position store unavailable")
    return await _with_profiles(snapshot)


@router.post("/online-count", response_model=OnlineCountResponse)
async def presence_online_count(
    payload: NearbyRequest,
    runtime: PresenceRuntime = Depends(get_runtime),
    entity_id: str = Depends(get_current_entity_id),
):
    observer = runtime.http_observer(entity_id, payload.to_coordinates(), payload.radius_km)
    snapshot = await observer.refresh()
    if snapshot.is_stale and not snapshot.has_data:
        raise StoreUnavailable(snapshot.last_error or "position store unavailable")
    return OnlineCountResponse(
        online_count=snapshot.online_count,
        total_count=snapshot.total_count,
        is_stale=snapshot.is_stale,
        refreshed_at=snapshot.refreshed_at,
    )


# ------------------------------------------------------------------
# LIVE STREAM
# ------------------------------------------------------------------

async def _push_snapshots(websocket: WebSocket, ctx: SessionContext) -> None:
    if ctx.snapshot is not None and ctx.snapshot.has_data:
        await websocket.send_text((await _with_profiles(ctx.snapshot)).model_dump_json())
    async for snapshot in ctx.observer.updates():
        await websocket.send_text((await _with_profiles(snapshot)).model_dump_json())


@router.websocket("/stream")
async def presence_stream(websocket: WebSocket, token: str = Query(default="")):
    """
    One connection == one session. First message joins, later messages are
    position fixes, the server pushes a nearby snapshot after every refresh.
    Disconnecting leaves.
    """
    runtime = get_runtime(websocket)
    try:
        # key lookup may hit the network
        entity_id = await run_in_threadpool(entity_id_from_token, token)
    except Unauthenticated as exc:
        logger.info(f"[stream] rejected: {exc.message}")
        await websocket.close(code=WS_UNAUTHENTICATED)
        return
    except AuthUnavailable:
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    await websocket.accept()
    try:
        hello = StreamHello.model_validate(await websocket.receive_json())
        coords = hello.to_coordinates()
    except (ValueError, InvalidCoordinate) as exc:
        await websocket.send_json({"error": "invalid_hello", "detail": str(exc)})
        await websocket.close(code=WS_POLICY_VIOLATION)
        return
    except WebSocketDisconnect:
        return

    ctx = runtime.open_session(entity_id, hello.radius_km)
    try:
        await ctx.start(coords, display_name=hello.display_name, place_label=await reverse_geocode(coords))
    except StoreUnavailable as exc:
        await runtime.close_session(ctx)
        await websocket.send_json({"error": StoreUnavailable.code, "detail": exc.message})
        await websocket.close(code=WS_TRY_AGAIN_LATER)
        return

    pusher = asyncio.create_task(_push_snapshots(websocket, ctx), name=f"stream:{ctx.session_key}")
    try:
        while True:
            message = await websocket.receive_json()
            try:
                fix = StreamFix.model_validate(message)
                await ctx.update_position(fix.to_coordinates(), fix.radius_km)
            except (ValueError, InvalidCoordinate) as exc:
                await websocket.send_json({"error": "invalid_fix", "detail": str(exc)})
            except StoreUnavailable as exc:
                # the heartbeat loop retries; just let the client know
                await websocket.send_json({"warning": StoreUnavailable.code, "detail": exc.message})
    except WebSocketDisconnect:
        logger.info(f"[stream] disconnected | {ctx.session_key}")
    finally:
        pusher.cancel()
        await asyncio.gather(pusher, return_exceptions=True)
        await runtime.close_session(ctx)
