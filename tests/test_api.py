"""HTTP and WebSocket surface, end to end over the in-memory store."""

import asyncio
import time

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from jose import jwt
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from nearhelp.core.auth import get_current_entity_id
from nearhelp.core.db import SessionLocal
from nearhelp.main import app
from nearhelp.models.message import Message
from nearhelp.models.profile import Profile
from nearhelp.services.liveness import StatusFlag
from nearhelp.services.presence_tracker import PresenceState
from nearhelp.services.runtime import build_runtime

from conftest import FlakyStore

CENTER = {"lat": 28.5355, "lng": 77.3910}
NEAR = {"lat": 28.5400, "lng": 77.3950}


def _token(entity_id: str) -> str:
    return jwt.encode({"sub": entity_id}, "test-secret", algorithm="HS256")


def _auth(entity_id: str) -> dict:
    return {"Authorization": f"Bearer {_token(entity_id)}"}


@pytest.fixture
def flaky():
    return FlakyStore()


@pytest_asyncio.fixture
async def api(flaky):
    runtime = build_runtime(store=flaky)
    app.state.runtime = runtime
    with SessionLocal() as db:
        db.query(Message).delete()
        db.query(Profile).delete()
        db.commit()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, runtime
    await runtime.stop()
    app.state.runtime = None


@pytest.mark.asyncio
async def test_health(api) -> None:
    client, _ = api
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_presence_requires_a_token(api) -> None:
    client, _ = api
    r = await client.post("/v1/presence/join", json=CENTER)
    assert r.status_code == 401
    assert r.json()["code"] == "unauthenticated"


@pytest.mark.asyncio
async def test_join_heartbeat_leave(api) -> None:
    client, runtime = api

    r = await client.post("/v1/presence/join", json={**CENTER, "display_name": "Asha"}, headers=_auth("asha"))
    assert r.status_code == 200
    assert r.json()["state"] == "present"
    rec = await runtime.store.get_by_id("asha")
    assert rec.status is StatusFlag.online
    # geocoder is off in tests: the label falls back to the coordinates
    assert rec.place_label == "28.5355, 77.3910"

    r = await client.post("/v1/presence/heartbeat", json=NEAR, headers=_auth("asha"))
    assert r.status_code == 200
    assert r.json()["written"] is False

    r = await client.post("/v1/presence/leave", json={}, headers=_auth("asha"))
    assert r.status_code == 200
    assert r.json()["state"] == "absent"
    assert (await runtime.store.get_by_id("asha")).status is StatusFlag.offline


@pytest.mark.asyncio
async def test_heartbeat_without_join_is_rejected(api) -> None:
    client, _ = api
    r = await client.post("/v1/presence/heartbeat", json=CENTER, headers=_auth("ghost"))
    assert r.status_code == 409
    assert r.json()["code"] == "not_present"


@pytest.mark.asyncio
async def test_invalid_coordinates_are_a_client_error(api) -> None:
    client, _ = api
    r = await client.post("/v1/presence/join", json={"lat": 95, "lng": 0}, headers=_auth("asha"))
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_coordinate"


@pytest.mark.asyncio
async def test_nearby_and_online_count_agree(api) -> None:
    client, _ = api
    await client.post("/v1/presence/join", json=CENTER, headers=_auth("me"))
    await client.post("/v1/presence/join", json=NEAR, headers=_auth("neighbour"))
    await client.post("/v1/presence/join", json={"lat": 28.70, "lng": 77.10}, headers=_auth("far"))

    r = await client.post("/v1/presence/nearby", json={**CENTER, "radius_km": 10}, headers=_auth("me"))
    assert r.status_code == 200
    body = r.json()
    assert [u["user_id"] for u in body["users"]] == ["neighbour"]
    assert body["users"][0]["is_online"] is True
    assert body["users"][0]["distance_km"] == pytest.approx(0.635, abs=0.01)
    assert body["online_count"] == 1
    assert body["is_stale"] is False

    r = await client.post("/v1/presence/online-count", json={**CENTER, "radius_km": 10}, headers=_auth("me"))
    count = r.json()
    assert (count["online_count"], count["total_count"]) == (1, 1)
    assert count["is_stale"] is False
    assert count["refreshed_at"] is not None


@pytest.mark.asyncio
async def test_nearby_serves_last_known_during_outage(api, flaky) -> None:
    client, _ = api
    await client.post("/v1/presence/join", json=NEAR, headers=_auth("neighbour"))
    r = await client.post("/v1/presence/nearby", json=CENTER, headers=_auth("me"))
    assert len(r.json()["users"]) == 1

    flaky.failing = True
    r = await client.post("/v1/presence/nearby", json=CENTER, headers=_auth("me"))
    assert r.status_code == 200
    assert r.json()["is_stale"] is True
    assert [u["user_id"] for u in r.json()["users"]] == ["neighbour"]
    refreshed_at = r.json()["refreshed_at"]
    assert refreshed_at is not None

    # the count must not pass off cached data as current either
    r = await client.post("/v1/presence/online-count", json=CENTER, headers=_auth("me"))
    assert r.status_code == 200
    count = r.json()
    assert count["is_stale"] is True
    assert count["online_count"] == 1
    assert count["refreshed_at"] == refreshed_at


@pytest.mark.asyncio
async def test_nearby_without_any_good_result_is_unavailable(api, flaky) -> None:
    client, _ = api
    flaky.failing = True
    r = await client.post("/v1/presence/nearby", json=CENTER, headers=_auth("me"))
    assert r.status_code == 503
    assert r.json()["code"] == "store_unavailable"


@pytest.mark.asyncio
async def test_help_request_lifecycle(api) -> None:
    client, _ = api
    r = await client.post(
        "/v1/help-requests",
        json={**NEAR, "category": "Medical", "message": "need a first aid kit", "is_urgent": True},
        headers=_auth("owner"),
    )
    assert r.status_code == 200
    created = r.json()
    assert created["owner_id"] == "owner"
    assert created["resolved"] is False

    r = await client.get("/v1/help-requests/nearby", params=CENTER, headers=_auth("helper"))
    assert [h["id"] for h in r.json()["help_requests"]] == [created["id"]]
    assert r.json()["help_requests"][0]["distance_km"] == pytest.approx(0.635, abs=0.01)

    r = await client.get(f"/v1/help-requests/{created['id']}", headers=_auth("helper"))
    assert r.json()["message"] == "need a first aid kit"

    r = await client.post(f"/v1/help-requests/{created['id']}/resolve", headers=_auth("helper"))
    assert r.status_code == 403

    r = await client.post(f"/v1/help-requests/{created['id']}/resolve", headers=_auth("owner"))
    assert r.json()["resolved"] is True

    r = await client.get("/v1/help-requests/nearby", params=CENTER, headers=_auth("helper"))
    assert r.json()["help_requests"] == []
    r = await client.get(
        "/v1/help-requests/nearby", params={**CENTER, "include_resolved": "true"}, headers=_auth("helper")
    )
    assert len(r.json()["help_requests"]) == 1


@pytest.mark.asyncio
async def test_unknown_help_request_is_404(api) -> None:
    client, _ = api
    r = await client.get("/v1/help-requests/does-not-exist", headers=_auth("helper"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_help_request_rejects_unknown_category(api) -> None:
    client, _ = api
    r = await client.post(
        "/v1/help-requests",
        json={**NEAR, "category": "Plumbing", "message": "leak"},
        headers=_auth("owner"),
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_request_thread_messages(api) -> None:
    client, runtime = api
    r = await client.post(
        "/v1/help-requests",
        json={**NEAR, "category": "Food", "message": "hungry kids"},
        headers=_auth("owner"),
    )
    hr_id = r.json()["id"]
    thread = runtime.bus.subscribe(f"request:{hr_id}")

    r = await client.post("/v1/messages", json={"body": "bringing rice", "help_request_id": hr_id}, headers=_auth("helper"))
    assert r.status_code == 200
    assert r.json()["sender_id"] == "helper"
    event = await asyncio.wait_for(thread.get(), 1)
    assert event.entity_id == r.json()["id"]

    r = await client.get(f"/v1/messages/request/{hr_id}", headers=_auth("owner"))
    assert [m["body"] for m in r.json()] == ["bringing rice"]


@pytest.mark.asyncio
async def test_location_messages(api) -> None:
    client, _ = api
    r = await client.post("/v1/messages", json={"body": "road blocked near the mall", **NEAR}, headers=_auth("u1"))
    assert r.status_code == 200
    assert r.json()["place_label"] == "28.5400, 77.3950"

    r = await client.get("/v1/messages/nearby", params=CENTER, headers=_auth("u2"))
    assert [m["body"] for m in r.json()] == ["road blocked near the mall"]


@pytest.mark.asyncio
async def test_message_validation(api) -> None:
    client, _ = api
    r = await client.post("/v1/messages", json={"body": "   ", **NEAR}, headers=_auth("u1"))
    assert r.status_code == 400

    r = await client.post("/v1/messages", json={"body": "no scope"}, headers=_auth("u1"))
    assert r.status_code == 400

    r = await client.post("/v1/messages", json={"body": "hi", "help_request_id": "missing"}, headers=_auth("u1"))
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_profile_edit_and_view(api) -> None:
    client, _ = api
    r = await client.get("/v1/profiles/me", headers=_auth("asha"))
    assert r.status_code == 200
    assert r.json()["id"] == "asha"
    assert r.json()["full_name"] is None

    r = await client.put(
        "/v1/profiles/me",
        json={
            "full_name": "Asha Rao",
            "username": "asha",
            "avatar_emoji": "🩺",
            "age": 34,
            "gender": "female",
            "social_links": {"instagram": "asha.rao"},
        },
        headers=_auth("asha"),
    )
    assert r.status_code == 200
    assert r.json()["gender"] == "female"
    assert r.json()["social_links"]["instagram"] == "asha.rao"

    # a neighbour opens her profile from the nearby list
    r = await client.get("/v1/profiles/asha", headers=_auth("ravi"))
    assert r.status_code == 200
    assert r.json()["full_name"] == "Asha Rao"
    assert r.json()["age"] == 34

    r = await client.put("/v1/profiles/me", json={"username": "asha"}, headers=_auth("ravi"))
    assert r.status_code == 409
    assert r.json()["code"] == "username_taken"

    r = await client.get("/v1/profiles/nobody", headers=_auth("ravi"))
    assert r.status_code == 404
    assert r.json()["code"] == "profile_not_found"

    r = await client.put("/v1/profiles/me", json={"gender": "robot"}, headers=_auth("ravi"))
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_nearby_carries_profile_summary(api) -> None:
    client, _ = api
    await client.put("/v1/profiles/me", json={"full_name": "Asha Rao", "avatar_emoji": "🩺"}, headers=_auth("neighbour"))
    await client.post("/v1/presence/join", json=NEAR, headers=_auth("neighbour"))
    await client.post("/v1/presence/join", json={**NEAR, "lat": 28.5410}, headers=_auth("no-profile"))

    r = await client.post("/v1/presence/nearby", json=CENTER, headers=_auth("me"))
    users = {u["user_id"]: u for u in r.json()["users"]}
    assert users["neighbour"]["full_name"] == "Asha Rao"
    assert users["neighbour"]["avatar_emoji"] == "🩺"
    # no display name was given on join, so the profile name stands in
    assert users["neighbour"]["display_name"] == "Asha Rao"
    assert users["no-profile"]["full_name"] is None
    assert users["no-profile"]["display_name"] is None


@pytest.mark.asyncio
async def test_sign_out_after_expiry_deactivates_record(api) -> None:
    client, runtime = api
    await client.post("/v1/presence/join", json=CENTER, headers=_auth("me"))
    later = runtime.tracker.clock() + runtime.tracker.session_timeout * 2
    assert await runtime.tracker.sweep(now=later) == ["me"]

    r = await client.post("/v1/presence/leave", json={"sign_out": True}, headers=_auth("me"))
    assert r.status_code == 200
    assert r.json()["state"] == "absent"
    rec = await runtime.store.get_by_id("me")
    assert rec.is_active is False


# ------------------------------------------------------------------
# WebSocket stream (TestClient runs the app lifespan)
# ------------------------------------------------------------------

def _eventually(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_stream_rejects_bad_token() -> None:
    with TestClient(app) as tc:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with tc.websocket_connect("/v1/presence/stream?token=garbage") as ws:
                ws.receive_json()
        assert exc_info.value.code == 4401


def test_stream_rejects_bad_hello() -> None:
    with TestClient(app) as tc:
        with tc.websocket_connect(f"/v1/presence/stream?token={_token('me')}") as ws:
            ws.send_json({"lat": 123, "lng": 0})
            assert ws.receive_json()["error"] == "invalid_hello"
            with pytest.raises(WebSocketDisconnect) as exc_info:
                ws.receive_json()
            assert exc_info.value.code == 1008


def test_stream_pushes_neighbours_and_leaves_on_disconnect() -> None:
    with TestClient(app) as tc:
        runtime = tc.app.state.runtime
        with tc.websocket_connect(f"/v1/presence/stream?token={_token('me')}") as ws:
            ws.send_json({**CENTER, "display_name": "Me", "radius_km": 10})
            first = ws.receive_json()
            assert first["users"] == []
            assert runtime.tracker.state("me") is PresenceState.present

            r = tc.post("/v1/presence/join", json=NEAR, headers=_auth("neighbour"))
            assert r.status_code == 200

            seen = []
            for _ in range(5):
                snap = ws.receive_json()
                seen = [u["user_id"] for u in snap["users"]]
                if seen:
                    break
            assert seen == ["neighbour"]

            ws.send_json({"lat": 28.5360, "lng": 77.3915})

        assert _eventually(lambda: runtime.tracker.state("me") is PresenceState.absent)
        assert runtime.sessions == {}


@pytest.mark.asyncio
async def test_identity_can_be_overridden(api) -> None:
    client, runtime = api
    app.dependency_overrides[get_current_entity_id] = lambda: "override-user"
    try:
        r = await client.post("/v1/presence/join", json=CENTER)
    finally:
        app.dependency_overrides.pop(get_current_entity_id, None)
    assert r.status_code == 200
    assert r.json()["entity_id"] == "override-user"
    assert runtime.tracker.state("override-user") is PresenceState.present
