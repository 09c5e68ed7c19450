from urllib.parse import urlencode

import pytest

fastapi = pytest.importorskip("fastapi")
pytest.importorskip("httpx")
from fastapi import WebSocketDisconnect
from fastapi.testclient import TestClient

from grubmatch.backend.api import BINDING_HEADER, create_app
from grubmatch.backend.config import BackendSettings
from grubmatch.backend.fallback import FALLBACK_RESTAURANTS
from grubmatch.backend.providers import StaticCandidateProvider
from grubmatch.backend.store import InMemoryGroupStore

PREFERENCES = {"location": "94107", "radius": 10}


def _settings(**overrides) -> BackendSettings:
    values = {
        "binding_secret": "test-secret",
        "database_url": None,
        "host": "127.0.0.1",
        "port": 8000,
        "match_rule": "unanimous",
        "yelp_api_key": None,
        "google_places_api_key": None,
        "provider_timeout": 1.0,
        "group_ttl_hours": 24,
        "log_level": "INFO",
    }
    values.update(overrides)
    return BackendSettings(**values)


def _app(provider=None, **kwargs):
    return create_app(
        store=InMemoryGroupStore(),
        settings=_settings(),
        provider=provider if provider is not None else StaticCandidateProvider(),
        **kwargs,
    )


def _create(client: TestClient, host_name: str = "Alice") -> tuple[dict, str]:
    response = client.post("/api/groups", json={"name": "Friday Dinner", "hostName": host_name})
    assert response.status_code == 200
    return response.json(), response.headers[BINDING_HEADER]


def _join(client: TestClient, code: str, member_name: str) -> tuple[dict, str]:
    response = client.post("/api/groups/join", json={"code": code, "memberName": member_name})
    assert response.status_code == 200
    return response.json(), response.headers[BINDING_HEADER]


def _ws_url(group_id: str, member_id: str, binding: str) -> str:
    return "/ws?" + urlencode({"groupId": group_id, "memberId": member_id, "binding": binding})


def test_health_reports_ok() -> None:
    client = TestClient(_app())

    assert client.get("/health").json() == {"status": "ok"}


def test_create_group_returns_member_leader_token_and_binding() -> None:
    client = TestClient(_app())

    response = client.post("/api/groups", json={"name": "Friday Dinner", "hostName": "Alice"})

    assert response.status_code == 200
    data = response.json()
    assert data["memberId"]
    assert data["leaderToken"]
    assert data["group"]["members"][0]["isHost"] is True
    assert data["group"]["status"] == "waiting"
    assert "leaderToken" not in data["group"]
    assert response.headers[BINDING_HEADER]
    assert client.cookies.get("member_bindings") == response.headers[BINDING_HEADER]


def test_create_group_validates_payload() -> None:
    client = TestClient(_app())

    response = client.post("/api/groups", json={"name": "", "hostName": "Alice"})

    assert response.status_code == 422
    assert response.json()["code"] == "validation_error"


def test_join_unknown_code_returns_error_envelope() -> None:
    client = TestClient(_app())

    response = client.post("/api/groups/join", json={"code": "ZZZZZZ", "memberName": "Bob"})

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"
    assert response.json()["type"] == "NotFoundError"


def test_end_to_end_match_then_new_session_resets_round(monkeypatch) -> None:
    monkeypatch.setattr("grubmatch.backend.store.generate_join_code", lambda: "ABC123")
    client = TestClient(_app())

    created, alice_binding = _create(client, "Alice")
    group_id = created["group"]["id"]
    alice_id = created["memberId"]
    assert created["group"]["code"] == "ABC123"

    joined, bob_binding = _join(client, "abc123", "Bob")
    bob_id = joined["memberId"]
    assert [member["name"] for member in joined["group"]["members"]] == ["Alice", "Bob"]

    started = client.post(
        f"/api/groups/{group_id}/start",
        json={"memberId": alice_id, "preferences": PREFERENCES},
        headers={BINDING_HEADER: alice_binding},
    )
    assert started.status_code == 200
    assert started.json()["group"]["status"] == "swiping"

    first = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": alice_id, "restaurantId": "r1", "liked": True},
        headers={BINDING_HEADER: alice_binding},
    )
    second = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": bob_id, "restaurantId": "r1", "liked": True},
        headers={BINDING_HEADER: bob_binding},
    )
    assert first.json()["matched"] is None
    assert second.json()["matched"]["id"] == "r1"

    matches = client.get(f"/api/groups/{group_id}/matches").json()["matches"]
    assert [restaurant["id"] for restaurant in matches] == ["r1"]

    for member_id, binding in ((alice_id, alice_binding), (bob_id, bob_binding)):
        done = client.post(
            f"/api/groups/{group_id}/done",
            json={"memberId": member_id},
            headers={BINDING_HEADER: binding},
        )
        assert done.status_code == 200
    assert all(member["doneSwiping"] for member in done.json()["group"]["members"])

    restarted = client.post(
        f"/api/groups/{group_id}/start",
        json={"memberId": alice_id, "preferences": PREFERENCES},
        headers={BINDING_HEADER: alice_binding},
    )
    assert restarted.json()["group"]["status"] == "swiping"
    assert all(member["doneSwiping"] is False for member in restarted.json()["group"]["members"])
    assert client.get(f"/api/groups/{group_id}/matches").json()["matches"] == []


def test_mutation_requires_matching_binding() -> None:
    client = TestClient(_app())
    created, alice_binding = _create(client)
    group_id = created["group"]["id"]
    joined, bob_binding = _join(client, created["group"]["code"], "Bob")
    client.cookies.clear()

    missing = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": joined["memberId"], "restaurantId": "r1", "liked": True},
    )
    impersonating = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": created["memberId"], "restaurantId": "r1", "liked": True},
        headers={BINDING_HEADER: bob_binding},
    )

    assert missing.status_code == 403
    assert impersonating.status_code == 403
    assert impersonating.json()["code"] == "unauthorized"


def test_binding_for_another_group_is_rejected() -> None:
    client = TestClient(_app())
    first, first_binding = _create(client, "Alice")
    second, _ = _create(client, "Alice")

    response = client.post(
        f"/api/groups/{second['group']['id']}/swipe",
        json={"memberId": first["memberId"], "restaurantId": "r1", "liked": True},
        headers={BINDING_HEADER: first_binding},
    )

    assert response.status_code == 403


def test_binding_cookie_is_accepted() -> None:
    client = TestClient(_app())
    created, _ = _create(client)

    response = client.post(
        f"/api/groups/{created['group']['id']}/swipe",
        json={"memberId": created["memberId"], "restaurantId": "r2", "liked": False},
    )

    assert response.status_code == 200
    assert response.json()["swipe"]["liked"] is False


def test_host_actions_reject_non_host() -> None:
    client = TestClient(_app())
    created, _ = _create(client)
    joined, bob_binding = _join(client, created["group"]["code"], "Bob")

    response = client.post(
        f"/api/groups/{created['group']['id']}/start",
        json={"memberId": joined["memberId"], "preferences": PREFERENCES},
        headers={BINDING_HEADER: bob_binding},
    )

    assert response.status_code == 403


def test_swipe_rejects_unknown_restaurant_and_bare_super_like() -> None:
    client = TestClient(_app())
    created, binding = _create(client)
    group_id = created["group"]["id"]

    unknown = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": created["memberId"], "restaurantId": "nope", "liked": True},
        headers={BINDING_HEADER: binding},
    )
    bare_super = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": created["memberId"], "restaurantId": "r1", "liked": False, "superLiked": True},
        headers={BINDING_HEADER: binding},
    )

    assert unknown.status_code == 404
    assert bare_super.status_code == 400


def test_undo_swipe_removes_match() -> None:
    client = TestClient(_app())
    created, binding = _create(client)
    group_id = created["group"]["id"]
    member_id = created["memberId"]
    client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": member_id, "restaurantId": "r3", "liked": True},
        headers={BINDING_HEADER: binding},
    )
    assert [r["id"] for r in client.get(f"/api/groups/{group_id}/matches").json()["matches"]] == ["r3"]

    response = client.delete(
        f"/api/groups/{group_id}/swipe/r3",
        params={"memberId": member_id},
        headers={BINDING_HEADER: binding},
    )

    assert response.status_code == 204
    assert client.get(f"/api/groups/{group_id}/matches").json()["matches"] == []


def test_get_group_checks_membership_when_member_given() -> None:
    client = TestClient(_app())
    created, _ = _create(client)
    group_id = created["group"]["id"]

    assert client.get(f"/api/groups/{group_id}", params={"memberId": created["memberId"]}).status_code == 200
    assert client.get(f"/api/groups/{group_id}", params={"memberId": "stranger"}).status_code == 404
    assert client.get("/api/groups/missing").status_code == 404


def test_restaurants_without_preferences_are_fallback_deck() -> None:
    client = TestClient(_app())
    created, _ = _create(client)

    restaurants = client.get(f"/api/groups/{created['group']['id']}/restaurants").json()["restaurants"]

    assert [r["id"] for r in restaurants] == [r.id for r in FALLBACK_RESTAURANTS]


def test_load_more_appends_and_resets_done_flags() -> None:
    class _PagedProvider:
        async def fetch(self, preferences, offset: int = 0):
            return list(FALLBACK_RESTAURANTS[offset : offset + 4])

    client = TestClient(_app(provider=_PagedProvider()))
    created, binding = _create(client)
    group_id = created["group"]["id"]
    member_id = created["memberId"]
    client.post(
        f"/api/groups/{group_id}/start",
        json={"memberId": member_id, "preferences": PREFERENCES},
        headers={BINDING_HEADER: binding},
    )
    assert len(client.get(f"/api/groups/{group_id}/restaurants").json()["restaurants"]) == 4
    client.post(f"/api/groups/{group_id}/done", json={"memberId": member_id}, headers={BINDING_HEADER: binding})

    response = client.post(f"/api/groups/{group_id}/restaurants/load-more")

    assert response.json()["added"] == 4
    assert [r["id"] for r in response.json()["restaurants"]] == [f"r{i}" for i in range(1, 9)]
    group = client.get(f"/api/groups/{group_id}").json()["group"]
    assert group["members"][0]["doneSwiping"] is False


def test_set_status_by_host() -> None:
    client = TestClient(_app())
    created, binding = _create(client)

    response = client.patch(
        f"/api/groups/{created['group']['id']}/status",
        json={"memberId": created["memberId"], "status": "configuring"},
        headers={BINDING_HEADER: binding},
    )

    assert response.status_code == 200
    assert response.json()["group"]["status"] == "configuring"


def test_update_preferences_keeps_status() -> None:
    client = TestClient(_app())
    created, binding = _create(client)
    group_id = created["group"]["id"]
    client.post(
        f"/api/groups/{group_id}/start",
        json={"memberId": created["memberId"], "preferences": PREFERENCES},
        headers={BINDING_HEADER: binding},
    )

    response = client.patch(
        f"/api/groups/{group_id}/preferences",
        json={"memberId": created["memberId"], "preferences": {"location": "10001", "priceRange": ["$"]}},
        headers={BINDING_HEADER: binding},
    )

    assert response.status_code == 200
    assert response.json()["group"]["status"] == "swiping"
    assert response.json()["group"]["preferences"]["priceRange"] == ["$"]


def test_remove_member_and_leave() -> None:
    client = TestClient(_app())
    created, alice_binding = _create(client)
    group_id = created["group"]["id"]
    bob, bob_binding = _join(client, created["group"]["code"], "Bob")
    carol, carol_binding = _join(client, created["group"]["code"], "Carol")

    removed = client.delete(
        f"/api/groups/{group_id}/members/{bob['memberId']}",
        params={"hostMemberId": created["memberId"]},
        headers={BINDING_HEADER: alice_binding},
    )
    assert removed.status_code == 200
    assert bob["memberId"] not in [member["id"] for member in removed.json()["group"]["members"]]

    stale = client.post(
        f"/api/groups/{group_id}/swipe",
        json={"memberId": bob["memberId"], "restaurantId": "r1", "liked": True},
        headers={BINDING_HEADER: bob_binding},
    )
    assert stale.status_code == 403

    left = client.post(
        f"/api/groups/{group_id}/leave",
        json={"memberId": carol["memberId"]},
        headers={BINDING_HEADER: carol_binding},
    )
    assert [member["name"] for member in left.json()["group"]["members"]] == ["Alice"]

    host_leave = client.post(
        f"/api/groups/{group_id}/leave",
        json={"memberId": created["memberId"]},
        headers={BINDING_HEADER: alice_binding},
    )
    assert host_leave.status_code == 400


def test_reclaim_leadership_requires_exact_token_and_issues_binding() -> None:
    client = TestClient(_app())
    created, _ = _create(client)
    group_id = created["group"]["id"]
    client.cookies.clear()

    wrong = client.post(
        f"/api/groups/{group_id}/reclaim",
        json={"leaderToken": created["leaderToken"][:-1], "memberName": "Alice"},
    )
    assert wrong.status_code == 403

    reclaimed = client.post(
        f"/api/groups/{group_id}/reclaim",
        json={"leaderToken": created["leaderToken"], "memberName": "Alice"},
    )
    assert reclaimed.status_code == 200
    assert reclaimed.json()["reattached"] is True
    assert reclaimed.json()["memberId"] == created["memberId"]

    started = client.post(
        f"/api/groups/{group_id}/start",
        json={"memberId": reclaimed.json()["memberId"], "preferences": PREFERENCES},
        headers={BINDING_HEADER: reclaimed.headers[BINDING_HEADER]},
    )
    assert started.status_code == 200


def test_done_swiping_notifies_once_when_everyone_is_done() -> None:
    notified: list[str] = []

    class _RecordingNotifier:
        async def all_done_swiping(self, group) -> None:
            notified.append(group.id)

    client = TestClient(_app(notifier=_RecordingNotifier()))
    created, alice_binding = _create(client)
    group_id = created["group"]["id"]
    bob, bob_binding = _join(client, created["group"]["code"], "Bob")

    client.post(f"/api/groups/{group_id}/done", json={"memberId": bob["memberId"]}, headers={BINDING_HEADER: bob_binding})
    assert notified == []

    client.post(
        f"/api/groups/{group_id}/done",
        json={"memberId": created["memberId"]},
        headers={BINDING_HEADER: alice_binding},
    )
    client.post(
        f"/api/groups/{group_id}/done",
        json={"memberId": created["memberId"]},
        headers={BINDING_HEADER: alice_binding},
    )
    assert notified == [group_id]


def test_websocket_sends_sync_after_connect() -> None:
    app = _app()

    with TestClient(app) as client:
        created, binding = _create(client)
        group_id = created["group"]["id"]

        with client.websocket_connect(_ws_url(group_id, created["memberId"], binding)) as websocket:
            message = websocket.receive_json()

    assert message["type"] == "sync"
    assert message["group"]["id"] == group_id
    assert len(message["restaurants"]) == len(FALLBACK_RESTAURANTS)
    assert message["matches"] == []


def test_websocket_rejects_invalid_binding() -> None:
    app = _app()

    with TestClient(app) as client:
        created, _ = _create(client)
        group_id = created["group"]["id"]

        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(_ws_url(group_id, created["memberId"], "forged.token")):
                pass
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws?groupId={group_id}"):
                pass


def test_websocket_receives_swipes_without_member_id_and_matches() -> None:
    app = _app()

    with TestClient(app) as client:
        created, alice_binding = _create(client)
        group_id = created["group"]["id"]
        bob, bob_binding = _join(client, created["group"]["code"], "Bob")

        with client.websocket_connect(_ws_url(group_id, created["memberId"], alice_binding)) as websocket:
            websocket.receive_json()
            client.post(
                f"/api/groups/{group_id}/swipe",
                json={"memberId": bob["memberId"], "restaurantId": "r1", "liked": True},
                headers={BINDING_HEADER: bob_binding},
            )
            swipe_made = websocket.receive_json()

            websocket.send_json({"type": "swipe", "restaurantId": "r1", "liked": True})
            match_found = websocket.receive_json()

    assert swipe_made == {"type": "swipe_made", "restaurantId": "r1"}
    assert match_found["type"] == "match_found"
    assert match_found["restaurant"]["id"] == "r1"


def test_repeat_like_on_matched_restaurant_does_not_rebroadcast_match() -> None:
    app = _app()

    with TestClient(app) as client:
        created, alice_binding = _create(client)
        group_id = created["group"]["id"]
        bob, bob_binding = _join(client, created["group"]["code"], "Bob")

        def bob_likes(restaurant_id: str) -> dict:
            return client.post(
                f"/api/groups/{group_id}/swipe",
                json={"memberId": bob["memberId"], "restaurantId": restaurant_id, "liked": True},
                headers={BINDING_HEADER: bob_binding},
            ).json()

        with client.websocket_connect(_ws_url(group_id, created["memberId"], alice_binding)) as websocket:
            websocket.receive_json()
            bob_likes("r1")
            websocket.receive_json()
            websocket.send_json({"type": "swipe", "restaurantId": "r1", "liked": True})
            first_match = websocket.receive_json()

            repeat = bob_likes("r1")
            repeat_swipe = websocket.receive_json()
            bob_likes("r2")
            next_message = websocket.receive_json()

    assert first_match["type"] == "match_found"
    assert repeat["matched"]["id"] == "r1"
    assert repeat_swipe == {"type": "swipe_made", "restaurantId": "r1"}
    assert next_message == {"type": "swipe_made", "restaurantId": "r2"}


def test_websocket_malformed_message_gets_error_and_stays_open() -> None:
    app = _app()

    with TestClient(app) as client:
        created, binding = _create(client)
        group_id = created["group"]["id"]

        with client.websocket_connect(_ws_url(group_id, created["memberId"], binding)) as websocket:
            websocket.receive_json()
            websocket.send_text("not json")
            error = websocket.receive_json()
            websocket.send_json({"type": "dance"})
            unknown = websocket.receive_json()
            websocket.send_json({"type": "resync"})
            resync = websocket.receive_json()

    assert error == {"type": "error", "code": "invalid_message", "message": "Malformed message"}
    assert unknown["type"] == "error"
    assert resync["type"] == "sync"


def test_nudge_reaches_only_members_without_vote() -> None:
    app = _app()

    with TestClient(app) as client:
        created, alice_binding = _create(client)
        group_id = created["group"]["id"]
        bob, bob_binding = _join(client, created["group"]["code"], "Bob")
        carol, carol_binding = _join(client, created["group"]["code"], "Carol")
        client.post(
            f"/api/groups/{group_id}/swipe",
            json={"memberId": carol["memberId"], "restaurantId": "r2", "liked": False},
            headers={BINDING_HEADER: carol_binding},
        )

        with client.websocket_connect(_ws_url(group_id, bob["memberId"], bob_binding)) as websocket:
            websocket.receive_json()
            response = client.post(
                f"/api/groups/{group_id}/nudge",
                json={"memberId": created["memberId"], "restaurantId": "r2"},
                headers={BINDING_HEADER: alice_binding},
            )
            nudge = websocket.receive_json()

    assert response.json()["nudgedMemberIds"] == [bob["memberId"]]
    assert nudge["type"] == "nudge"
    assert nudge["fromMemberName"] == "Alice"
    assert nudge["restaurantName"] == FALLBACK_RESTAURANTS[1].name
    assert nudge["targetMemberIds"] == [bob["memberId"]]


def test_live_reaction_is_broadcast_to_others() -> None:
    app = _app()

    with TestClient(app) as client:
        created, alice_binding = _create(client)
        group_id = created["group"]["id"]
        bob, bob_binding = _join(client, created["group"]["code"], "Bob")

        with client.websocket_connect(_ws_url(group_id, bob["memberId"], bob_binding)) as websocket:
            websocket.receive_json()
            response = client.post(
                f"/api/groups/{group_id}/reactions",
                json={"memberId": created["memberId"], "restaurantId": "r1", "reaction": "fire"},
                headers={BINDING_HEADER: alice_binding},
            )
            reaction = websocket.receive_json()

    assert response.status_code == 204
    assert reaction == {
        "type": "live_reaction",
        "memberId": created["memberId"],
        "memberName": "Alice",
        "reaction": "fire",
        "restaurantId": "r1",
    }
