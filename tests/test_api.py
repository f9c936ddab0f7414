from __future__ import annotations

import dataclasses
from datetime import datetime

import pytest
from fastapi.testclient import TestClient

from huddle import api, uploads
from huddle.storage import fetch_root_token

FUTURE_DATE = "2031-05-01"
FUTURE_ISO = "2031-05-01T19:00:00Z"


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _signup(client, name: str, **extra):
    response = client.post("/api/v1/profiles", json={"full_name": name, **extra})
    assert response.status_code == 201, response.text
    data = response.json()
    return data["profile"], _auth(data["access_token"])


def _create_event(client, headers, **overrides):
    payload = {"title": "Game Night", "date": FUTURE_ISO, "location": "Library"}
    payload.update(overrides)
    response = client.post("/api/v1/events", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["event"]


def _rsvp(client, event_id, headers, status="going"):
    return client.put(
        f"/api/v1/events/{event_id}/rsvp", json={"status": status}, headers=headers
    )


# -------- Auth & profiles --------


def test_missing_token_returns_401_with_redirect(client):
    response = client.get("/api/v1/profiles/me")

    assert response.status_code == 401
    assert response.json()["redirect"] == "/auth"

    bad = client.get("/api/v1/profiles/me", headers=_auth("nope"))
    assert bad.status_code == 401


def test_signup_and_update_me(client):
    profile, headers = _signup(client, "Ada Lovelace", email="ada@example.com")
    assert profile["email"] == "ada@example.com"

    response = client.patch(
        "/api/v1/profiles/me",
        json={"bio": "Analyst", "interests": "math, engines, Math"},
        headers=headers,
    )

    assert response.status_code == 200
    body = response.json()["profile"]
    assert body["bio"] == "Analyst"
    assert body["interests"] == ["math", "engines"]


def test_signup_validation_errors(client):
    _signup(client, "Ada", email="ada@example.com")

    duplicate = client.post(
        "/api/v1/profiles", json={"full_name": "Other", "email": "ada@example.com"}
    )
    assert duplicate.status_code == 400

    missing = client.post("/api/v1/profiles", json={})
    assert missing.status_code == 422


def test_rotating_the_access_token_revokes_the_old_one(client):
    _, old_headers = _signup(client, "Rotator")

    response = client.post("/api/v1/profiles/me/token", headers=old_headers)

    assert response.status_code == 200
    new_headers = _auth(response.json()["access_token"])
    assert client.get("/api/v1/profiles/me", headers=old_headers).status_code == 401
    assert client.get("/api/v1/profiles/me", headers=new_headers).status_code == 200


def test_private_profile_exposes_name_and_picture_only(client):
    private, private_headers = _signup(
        client, "Hidden Person", email="hidden@example.com", private=True
    )
    _, viewer_headers = _signup(client, "Viewer")

    other_view = client.get(f"/api/v1/profiles/{private['id']}", headers=viewer_headers)
    own_view = client.get(f"/api/v1/profiles/{private['id']}", headers=private_headers)

    assert set(other_view.json()["profile"]) == {
        "id",
        "full_name",
        "profile_picture_url",
        "private",
    }
    assert own_view.json()["profile"]["email"] == "hidden@example.com"


def test_profile_search(client):
    _, headers = _signup(client, "Searcher")
    _signup(client, "Grace Hopper")

    short = client.get("/api/v1/profiles", params={"q": "g"}, headers=headers)
    found = client.get("/api/v1/profiles", params={"q": "grace"}, headers=headers)

    assert short.json()["profiles"] == []
    assert [p["full_name"] for p in found.json()["profiles"]] == ["Grace Hopper"]


def test_profile_picture_upload(client, isolated_storage):
    _, headers = _signup(client, "Picture Person")

    response = client.post(
        "/api/v1/profiles/me/picture",
        files={"file": ("me.png", b"\x89PNG fake", "image/png")},
        headers=headers,
    )

    assert response.status_code == 200, response.text
    url = response.json()["url"]
    assert url.startswith("http://testserver/storage/profile-pictures/")
    assert url.endswith(".png")
    stored = isolated_storage / "profile-pictures" / url.rsplit("/", 1)[1]
    assert stored.read_bytes() == b"\x89PNG fake"
    assert response.json()["profile"]["profile_picture_url"] == url


def test_upload_rejects_non_images_and_large_files(client, monkeypatch):
    _, headers = _signup(client, "Uploader")

    not_image = client.post(
        "/api/v1/profiles/me/picture",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=headers,
    )
    assert not_image.status_code == 400

    svg = client.post(
        "/api/v1/profiles/me/picture",
        files={"file": ("x.svg", b'<svg onload="alert(1)"/>', "image/svg+xml")},
        headers=headers,
    )
    assert svg.status_code == 400

    monkeypatch.setattr(
        uploads,
        "settings",
        dataclasses.replace(uploads.settings, profile_picture_max_bytes=4),
    )
    too_large = client.post(
        "/api/v1/profiles/me/picture",
        files={"file": ("big.png", b"12345", "image/png")},
        headers=headers,
    )
    assert too_large.status_code == 413


# -------- Events --------


def test_create_and_fetch_event(client):
    host, headers = _signup(client, "Host")

    event = _create_event(client, headers, description="**Bring** snacks")

    assert event["status"] == "active"
    assert event["can_rsvp"] is True
    assert event["starts_at"] == FUTURE_ISO
    assert "<strong>Bring</strong>" in event["description_html"]
    assert event["viewer"]["is_host"] is True

    fetched = client.get(f"/api/v1/events/{event['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["event"]["created_by"] == host["id"]


def test_legacy_date_and_time_equal_iso_start(client):
    _, headers = _signup(client, "Host")

    legacy = _create_event(client, headers, date=FUTURE_DATE, time="7:00 PM")
    modern = _create_event(client, headers, date="2031-05-01T19:00:00")

    assert legacy["date"] == FUTURE_DATE and legacy["time"] == "7:00 PM"
    assert legacy["starts_at"] == modern["starts_at"] == FUTURE_ISO


def test_event_timezone_is_applied_to_naive_dates(client):
    _, headers = _signup(client, "Host")

    event = _create_event(
        client, headers, date=FUTURE_DATE, time="19:00", timezone="Europe/Berlin"
    )

    assert event["starts_at"] == "2031-05-01T17:00:00Z"
    assert (event["local_date"], event["local_time"]) == ("2031-05-01", "17:00")


def test_invalid_event_input_returns_400(client):
    _, headers = _signup(client, "Host")

    response = client.post(
        "/api/v1/events",
        json={"title": "Bad", "date": "2031-02-30"},
        headers=headers,
    )

    assert response.status_code == 400


def test_unknown_event_returns_404(client):
    response = client.get("/api/v1/events/does-not-exist")
    assert response.status_code == 404
    assert response.json() == {"detail": "Event not found"}


def test_list_events_filters_and_paginates(client, monkeypatch):
    monkeypatch.setattr(api, "EVENTS_PER_PAGE", 2)
    _, headers = _signup(client, "Host")
    for index in range(3):
        _create_event(client, headers, title=f"Meetup {index}", tags=["Tech"])
    _create_event(client, headers, title="Past Picnic", date="2020-01-01T12:00:00Z")
    _create_event(client, headers, title="Secret", is_private=True)

    first = client.get("/api/v1/events").json()
    second = client.get("/api/v1/events", params={"page": 2}).json()
    past = client.get("/api/v1/events", params={"when": "past"}).json()
    tagged = client.get("/api/v1/events", params={"tag": "tech", "when": "all"}).json()

    assert first["pagination"]["total_events"] == 3
    assert first["pagination"]["has_next"] is True
    assert len(first["events"]) == 2
    assert len(second["events"]) == 1
    assert [e["title"] for e in past["events"]] == ["Past Picnic"]
    assert len(tagged["events"]) == 3
    assert all(e["title"] != "Secret" for e in first["events"] + second["events"])


def test_event_starting_now_is_listed_as_past(client, monkeypatch):
    monkeypatch.setattr(api, "utcnow", lambda: datetime(2031, 5, 1, 19, 0))
    _, headers = _signup(client, "Host")
    _create_event(client, headers, title="Right Now", date=FUTURE_ISO)

    upcoming = client.get("/api/v1/events").json()["events"]
    past = client.get("/api/v1/events", params={"when": "past"}).json()["events"]

    assert upcoming == []
    assert [e["title"] for e in past] == ["Right Now"]
    assert past[0]["is_upcoming"] is False


def test_update_event_requires_host(client):
    _, host_headers = _signup(client, "Host")
    _, other_headers = _signup(client, "Other")
    event = _create_event(client, host_headers)

    forbidden = client.patch(
        f"/api/v1/events/{event['id']}", json={"title": "Hijack"}, headers=other_headers
    )
    allowed = client.patch(
        f"/api/v1/events/{event['id']}",
        json={"title": "Renamed", "date": FUTURE_DATE, "time": "18:00"},
        headers=host_headers,
    )

    assert forbidden.status_code == 403
    assert allowed.status_code == 200
    assert allowed.json()["event"]["title"] == "Renamed"
    assert allowed.json()["event"]["starts_at"] == "2031-05-01T18:00:00Z"


def test_status_actions(client):
    _, headers = _signup(client, "Host")
    event = _create_event(client, headers, published=False)
    assert event["status"] == "draft"

    published = client.post(
        f"/api/v1/events/{event['id']}/status", json={"action": "publish"}, headers=headers
    )
    assert published.json()["event"]["status"] == "active"

    cancelled = client.post(
        f"/api/v1/events/{event['id']}/status", json={"action": "cancel"}, headers=headers
    )
    assert cancelled.json()["event"]["status"] == "cancelled"
    assert cancelled.json()["event"]["status_display"]["label"] == "Cancelled"

    invalid = client.post(
        f"/api/v1/events/{event['id']}/status", json={"action": "publish"}, headers=headers
    )
    assert invalid.status_code == 400


def test_draft_events_are_hidden_from_guests(client):
    _, host_headers = _signup(client, "Host")
    _, guest_headers = _signup(client, "Guest")
    event = _create_event(client, host_headers, published=False)

    assert client.get(f"/api/v1/events/{event['id']}", headers=guest_headers).status_code == 404
    assert client.get(f"/api/v1/events/{event['id']}", headers=host_headers).status_code == 200


def test_delete_event_only_by_creator(client):
    _, host_headers = _signup(client, "Host")
    _, other_headers = _signup(client, "Other")
    event = _create_event(client, host_headers)

    assert client.delete(f"/api/v1/events/{event['id']}", headers=other_headers).status_code == 403
    assert client.delete(f"/api/v1/events/{event['id']}", headers=host_headers).status_code == 204
    assert client.get(f"/api/v1/events/{event['id']}").status_code == 404


def test_event_ics_download(client):
    _, headers = _signup(client, "Host")
    event = _create_event(client, headers, title="Calendar Party")

    response = client.get(f"/api/v1/events/{event['id']}/event.ics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/calendar")
    assert "attachment;" in response.headers["content-disposition"]
    assert "SUMMARY:Calendar Party" in response.text
    assert "DTSTART:20310501T190000Z" in response.text
    assert "LOCATION:Library" in response.text


def test_private_event_location_needs_rsvp(client):
    _, host_headers = _signup(client, "Host")
    guest, guest_headers = _signup(client, "Guest")
    event = _create_event(client, host_headers, is_private=True)

    assert client.get(f"/api/v1/events/{event['id']}", headers=guest_headers).status_code == 404

    invite = client.post(
        f"/api/v1/events/{event['id']}/invitations",
        json={"user_id": guest["id"], "message": "Join us"},
        headers=host_headers,
    )
    assert invite.status_code == 201

    before = client.get(f"/api/v1/events/{event['id']}", headers=guest_headers).json()
    assert before["event"]["location"] is None
    ics = client.get(f"/api/v1/events/{event['id']}/event.ics", headers=guest_headers)
    assert "LOCATION" not in ics.text

    _rsvp(client, event["id"], guest_headers, "maybe")
    after = client.get(f"/api/v1/events/{event['id']}", headers=guest_headers).json()
    assert after["event"]["location"] == "Library"


def test_invitations_are_listed_and_answered(client):
    _, host_headers = _signup(client, "Host")
    guest, guest_headers = _signup(client, "Guest")
    event = _create_event(client, host_headers)
    client.post(
        f"/api/v1/events/{event['id']}/invitations",
        json={"user_id": guest["id"]},
        headers=host_headers,
    )

    pending = client.get("/api/v1/invitations", headers=guest_headers).json()
    assert [i["event_id"] for i in pending["events"]] == [event["id"]]

    answer = client.post(
        f"/api/v1/events/{event['id']}/invitations/respond",
        json={"accept": False},
        headers=guest_headers,
    )
    assert answer.json()["invitation"]["status"] == "declined"
    again = client.post(
        f"/api/v1/events/{event['id']}/invitations/respond",
        json={"accept": True},
        headers=guest_headers,
    )
    assert again.status_code == 400


def test_cohosts_can_manage_event(client):
    _, host_headers = _signup(client, "Host")
    helper, helper_headers = _signup(client, "Helper")
    event = _create_event(client, host_headers)

    added = client.post(
        f"/api/v1/events/{event['id']}/cohosts",
        json={"user_id": helper["id"]},
        headers=host_headers,
    )
    assert added.status_code == 201

    listed = client.get(f"/api/v1/events/{event['id']}/cohosts").json()
    assert [c["user_id"] for c in listed["cohosts"]] == [helper["id"]]

    renamed = client.patch(
        f"/api/v1/events/{event['id']}", json={"title": "Co-run"}, headers=helper_headers
    )
    assert renamed.status_code == 200

    removed = client.delete(
        f"/api/v1/events/{event['id']}/cohosts/{helper['id']}", headers=helper_headers
    )
    assert removed.status_code == 204


# -------- RSVPs & waitlist --------


def test_unlimited_event_accepts_every_going_rsvp(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers)

    for index in range(5):
        _, headers = _signup(client, f"Guest {index}")
        response = _rsvp(client, event["id"], headers)
        assert response.status_code == 200
        assert response.json()["result"] == "applied"

    fetched = client.get(f"/api/v1/events/{event['id']}").json()["event"]
    assert fetched["counts"]["going"] == 5
    assert fetched["counts"]["seats_left"] is None


def test_full_event_without_waitlist_returns_event_full(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=1)
    _, first = _signup(client, "First")
    _, second = _signup(client, "Second")

    assert _rsvp(client, event["id"], first).status_code == 200
    response = _rsvp(client, event["id"], second)

    assert response.status_code == 409
    assert response.json() == api.EVENT_FULL_ERROR
    fetched = client.get(f"/api/v1/events/{event['id']}").json()["event"]
    assert fetched["counts"]["going"] == 1

    maybe = _rsvp(client, event["id"], second, "maybe")
    assert maybe.status_code == 200


def test_third_going_rsvp_joins_waitlist_at_position_one(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=2, waitlist_enabled=True)
    guests = [_signup(client, f"Guest {index}") for index in range(3)]

    for _, headers in guests[:2]:
        assert _rsvp(client, event["id"], headers).json()["result"] == "applied"
    third = _rsvp(client, event["id"], guests[2][1])

    assert third.status_code == 200
    body = third.json()
    assert body["result"] == "waitlisted"
    assert body["waitlist"] == {"position": 1, "rank": 1, "total": 1}
    assert body["event"]["viewer"]["waitlist_position"] == 1
    assert body["event"]["counts"]["going"] == 2


def test_withdrawing_promotes_first_waitlisted_guest(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=1, waitlist_enabled=True)
    _, first = _signup(client, "First")
    waiting, waiting_headers = _signup(client, "Waiting")

    _rsvp(client, event["id"], first)
    _rsvp(client, event["id"], waiting_headers)

    switched = _rsvp(client, event["id"], first, "not_going")
    assert switched.json()["promoted"] == [waiting["id"]]

    view = client.get(f"/api/v1/events/{event['id']}", headers=waiting_headers).json()
    assert view["event"]["viewer"]["rsvp_status"] == "going"
    assert view["event"]["viewer"]["waitlist_position"] is None
    assert view["event"]["counts"]["waitlist"] == 0


def test_deleting_rsvp_promotes_waitlist(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=1, waitlist_enabled=True)
    _, first = _signup(client, "First")
    _, waiting = _signup(client, "Waiting")
    _rsvp(client, event["id"], first)
    _rsvp(client, event["id"], waiting)

    assert client.delete(f"/api/v1/events/{event['id']}/rsvp", headers=first).status_code == 204
    assert client.delete(f"/api/v1/events/{event['id']}/rsvp", headers=first).status_code == 404

    view = client.get(f"/api/v1/events/{event['id']}", headers=waiting).json()
    assert view["event"]["viewer"]["rsvp_status"] == "going"


def test_cancelled_event_rejects_rsvps(client):
    _, host_headers = _signup(client, "Host")
    _, guest_headers = _signup(client, "Guest")
    event = _create_event(client, host_headers)
    client.post(
        f"/api/v1/events/{event['id']}/status", json={"action": "cancel"}, headers=host_headers
    )

    response = _rsvp(client, event["id"], guest_headers, "maybe")

    assert response.status_code == 403
    assert response.json() == api.RSVPS_CLOSED_ERROR


def test_invalid_rsvp_status_returns_400(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers)

    assert _rsvp(client, event["id"], host_headers, "yes").status_code == 400


def test_waitlist_endpoints(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=1, waitlist_enabled=True)
    _, first = _signup(client, "First")
    second, second_headers = _signup(client, "Second")
    third, third_headers = _signup(client, "Third")

    early = client.post(f"/api/v1/events/{event['id']}/waitlist", headers=second_headers)
    assert early.status_code == 400

    _rsvp(client, event["id"], first)
    joined = client.post(f"/api/v1/events/{event['id']}/waitlist", headers=second_headers)
    client.post(f"/api/v1/events/{event['id']}/waitlist", headers=third_headers)
    assert joined.status_code == 201
    assert joined.json()["position"] == 1

    guest_view = client.get(f"/api/v1/events/{event['id']}/waitlist", headers=third_headers)
    assert guest_view.json()["my_position"] == 2
    assert "entries" not in guest_view.json()

    left = client.delete(f"/api/v1/events/{event['id']}/waitlist", headers=second_headers)
    assert left.status_code == 204
    host_view = client.get(f"/api/v1/events/{event['id']}/waitlist", headers=host_headers)
    entries = host_view.json()["entries"]
    assert [(e["rank"], e["user_id"]) for e in entries] == [(1, third["id"])]

    confirmed = client.post(
        f"/api/v1/events/{event['id']}/waitlist/{third['id']}/confirm",
        headers=host_headers,
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["rsvp"]["status"] == "going"
    assert confirmed.json()["event"]["counts"]["going"] == 2


def test_guest_list_visibility_rules(client):
    _, host_headers = _signup(client, "Host")
    _, going_headers = _signup(client, "Going")
    _, stranger_headers = _signup(client, "Stranger")
    event = _create_event(client, host_headers)
    _rsvp(client, event["id"], going_headers)
    path = f"/api/v1/events/{event['id']}/rsvps"

    assert client.get(path, headers=stranger_headers).status_code == 403
    assert client.get(path).status_code == 403
    guest_view = client.get(path, headers=going_headers)
    assert guest_view.status_code == 200
    assert guest_view.json()["counts"]["going"] == 1
    assert client.get(path, headers=host_headers).status_code == 200

    client.patch(
        f"/api/v1/events/{event['id']}",
        json={"guest_list_visibility": "hidden"},
        headers=host_headers,
    )
    assert client.get(path, headers=going_headers).status_code == 403
    assert client.get(path, headers=host_headers).status_code == 200

    client.patch(
        f"/api/v1/events/{event['id']}",
        json={"guest_list_visibility": "public"},
        headers=host_headers,
    )
    assert client.get(path).status_code == 200


def test_event_comments_are_limited_to_hosts_and_guests(client):
    _, host_headers = _signup(client, "Host")
    _, guest_headers = _signup(client, "Guest")
    _, declined_headers = _signup(client, "Declined")
    _, stranger_headers = _signup(client, "Stranger")
    event = _create_event(client, host_headers)
    _rsvp(client, event["id"], guest_headers, status="maybe")
    _rsvp(client, event["id"], declined_headers, status="not_going")
    path = f"/api/v1/events/{event['id']}/comments"

    posted = client.post(path, json={"content": "Bringing chips"}, headers=guest_headers)
    assert posted.status_code == 201
    comment = posted.json()["comment"]
    assert client.post(path, json={"content": "hi"}, headers=stranger_headers).status_code == 403
    assert client.get(path, headers=declined_headers).status_code == 403
    assert client.post(path, json={"content": "   "}, headers=host_headers).status_code == 400

    listed = client.get(path, headers=host_headers)
    assert listed.status_code == 200
    assert [c["content"] for c in listed.json()["comments"]] == ["Bringing chips"]

    item = f"{path}/{comment['id']}"
    assert client.patch(item, json={"content": "x"}, headers=host_headers).status_code == 403
    edited = client.patch(item, json={"content": "Bringing dip"}, headers=guest_headers)
    assert edited.status_code == 200
    assert edited.json()["comment"]["content"] == "Bringing dip"

    assert client.delete(item, headers=stranger_headers).status_code == 403
    assert client.delete(item, headers=host_headers).status_code == 204
    assert client.get(path, headers=guest_headers).json()["comments"] == []


def test_raising_capacity_promotes_waitlist(client):
    _, host_headers = _signup(client, "Host")
    event = _create_event(client, host_headers, max_capacity=1, waitlist_enabled=True)
    _, first = _signup(client, "First")
    _, waiting = _signup(client, "Waiting")
    _rsvp(client, event["id"], first)
    _rsvp(client, event["id"], waiting)

    response = client.patch(
        f"/api/v1/events/{event['id']}", json={"max_capacity": 2}, headers=host_headers
    )

    assert response.json()["event"]["counts"]["going"] == 2
    assert response.json()["event"]["counts"]["waitlist"] == 0


# -------- Sections --------


def test_section_join_and_moderation(client):
    creator, creator_headers = _signup(client, "Creator")
    member, member_headers = _signup(client, "Member")
    created = client.post(
        "/api/v1/sections",
        json={"name": "Hikers", "requires_approval": True},
        headers=creator_headers,
    )
    assert created.status_code == 201
    section = created.json()["section"]
    assert section["membership"]["is_admin"] is True

    joined = client.post(f"/api/v1/sections/{section['id']}/join", headers=member_headers)
    assert joined.json()["membership"]["status"] == "pending"

    listing = client.get(
        f"/api/v1/sections/{section['id']}/members", headers=creator_headers
    ).json()
    assert [m["user_id"] for m in listing["pending"]] == [member["id"]]

    denied = client.post(
        f"/api/v1/sections/{section['id']}/members/{member['id']}/approve",
        headers=member_headers,
    )
    assert denied.status_code == 403
    approved = client.post(
        f"/api/v1/sections/{section['id']}/members/{member['id']}/approve",
        headers=creator_headers,
    )
    assert approved.json()["membership"]["status"] == "approved"

    fetched = client.get(f"/api/v1/sections/{section['id']}").json()["section"]
    assert fetched["member_count"] == 2


def test_private_section_invitation_flow(client):
    _, creator_headers = _signup(client, "Creator")
    invitee, invitee_headers = _signup(client, "Invitee")
    section = client.post(
        "/api/v1/sections",
        json={"name": "Inner Circle", "is_public": False},
        headers=creator_headers,
    ).json()["section"]

    assert client.get(f"/api/v1/sections/{section['id']}", headers=invitee_headers).status_code == 404
    listed = client.get("/api/v1/sections", headers=invitee_headers).json()["sections"]
    assert listed == []

    client.post(
        f"/api/v1/sections/{section['id']}/invitations",
        json={"user_id": invitee["id"]},
        headers=creator_headers,
    )
    pending = client.get("/api/v1/invitations", headers=invitee_headers).json()
    assert [i["section_id"] for i in pending["sections"]] == [section["id"]]

    accepted = client.post(
        f"/api/v1/sections/{section['id']}/invitations/respond",
        json={"accept": True},
        headers=invitee_headers,
    )
    assert accepted.json()["membership"]["status"] == "approved"
    listed = client.get("/api/v1/sections", headers=invitee_headers).json()["sections"]
    assert [s["id"] for s in listed] == [section["id"]]


def test_section_profile_fields_and_visibility(client):
    _, creator_headers = _signup(client, "Creator")
    member, member_headers = _signup(client, "Member")
    section = client.post(
        "/api/v1/sections", json={"name": "Runners"}, headers=creator_headers
    ).json()["section"]
    client.post(f"/api/v1/sections/{section['id']}/join", headers=member_headers)

    field = client.post(
        f"/api/v1/sections/{section['id']}/fields",
        json={"field_label": "Shirt Size", "field_type": "select", "field_options": ["S", "M"]},
        headers=creator_headers,
    )
    assert field.status_code == 201
    assert field.json()["field"]["field_name"] == "shirt_size"

    bad = client.put(
        f"/api/v1/sections/{section['id']}/profile",
        json={"values": {"shirt_size": "XXL"}},
        headers=member_headers,
    )
    assert bad.status_code == 400
    saved = client.put(
        f"/api/v1/sections/{section['id']}/profile",
        json={"values": {"shirt_size": "M"}},
        headers=member_headers,
    )
    assert saved.json()["values"] == {"shirt_size": "M"}

    viewed = client.get(
        f"/api/v1/sections/{section['id']}/profile",
        params={"user_id": member["id"]},
        headers=creator_headers,
    )
    assert viewed.json()["values"] == {"shirt_size": "M"}

    client.put(
        f"/api/v1/sections/{section['id']}/visibility",
        json={"is_visible": False},
        headers=member_headers,
    )
    public_members = client.get(f"/api/v1/sections/{section['id']}/members").json()
    admin_members = client.get(
        f"/api/v1/sections/{section['id']}/members", headers=creator_headers
    ).json()
    assert member["id"] not in [m["user_id"] for m in public_members["members"]]
    assert member["id"] in [m["user_id"] for m in admin_members["members"]]


def test_section_events_require_membership(client):
    _, creator_headers = _signup(client, "Creator")
    _, outsider_headers = _signup(client, "Outsider")
    section = client.post(
        "/api/v1/sections", json={"name": "Chess"}, headers=creator_headers
    ).json()["section"]

    denied = client.post(
        "/api/v1/events",
        json={"title": "Blitz", "date": FUTURE_ISO, "section_id": section["id"]},
        headers=outsider_headers,
    )
    created = _create_event(client, creator_headers, section_id=section["id"])

    assert denied.status_code == 403
    assert created["section"]["id"] == section["id"]
    listed = client.get("/api/v1/events", params={"section_id": section["id"]}).json()
    assert [e["id"] for e in listed["events"]] == [created["id"]]


# -------- Channels --------


def test_channel_categories_require_root_token(client):
    denied = client.post("/api/v1/channel-categories", json={"name": "General"})
    assert denied.status_code == 403

    token = fetch_root_token()
    created = client.post(
        "/api/v1/channel-categories", json={"name": "General"}, headers=_auth(token)
    )
    assert created.status_code == 201

    listed = client.get("/api/v1/channel-categories").json()["categories"]
    assert [c["name"] for c in listed] == ["General"]


def test_channel_messaging_flow(client):
    _, owner_headers = _signup(client, "Owner")
    _, reader_headers = _signup(client, "Reader")
    channel = client.post(
        "/api/v1/channels", json={"name": "general"}, headers=owner_headers
    ).json()["channel"]
    assert channel["role"] == "owner"

    posted = client.post(
        f"/api/v1/channels/{channel['id']}/messages",
        json={"content": "Hello there"},
        headers=reader_headers,
    )
    assert posted.status_code == 201
    message = posted.json()["message"]

    mine = client.get("/api/v1/channels", headers=reader_headers).json()["channels"]
    assert [c["id"] for c in mine] == [channel["id"]]

    listed = client.get(
        f"/api/v1/channels/{channel['id']}/messages", headers=owner_headers
    ).json()["messages"]
    assert [m["content"] for m in listed] == ["Hello there"]

    newer = client.get(
        f"/api/v1/channels/{channel['id']}/messages",
        params={"after": message["created_at"]},
        headers=owner_headers,
    ).json()["messages"]
    assert newer == []

    deleted = client.delete(
        f"/api/v1/channels/{channel['id']}/messages/{message['id']}",
        headers=owner_headers,
    )
    assert deleted.status_code == 200
    assert deleted.json()["message"]["deleted_at"] is not None
    remaining = client.get(
        f"/api/v1/channels/{channel['id']}/messages", headers=owner_headers
    ).json()["messages"]
    assert remaining == []


def test_authors_can_edit_their_messages(client):
    _, owner_headers = _signup(client, "Owner")
    _, author_headers = _signup(client, "Author")
    channel = client.post(
        "/api/v1/channels", json={"name": "general"}, headers=owner_headers
    ).json()["channel"]
    message = client.post(
        f"/api/v1/channels/{channel['id']}/messages",
        json={"content": "Helo"},
        headers=author_headers,
    ).json()["message"]
    assert message["edited_at"] is None
    path = f"/api/v1/channels/{channel['id']}/messages/{message['id']}"

    assert client.patch(path, json={"content": "x"}, headers=owner_headers).status_code == 403
    assert client.patch(path, json={"content": ""}, headers=author_headers).status_code == 400
    edited = client.patch(path, json={"content": "Hello"}, headers=author_headers)

    assert edited.status_code == 200
    assert edited.json()["message"]["content"] == "Hello"
    assert edited.json()["message"]["edited_at"] is not None

    client.delete(path, headers=author_headers)
    gone = client.patch(path, json={"content": "again"}, headers=author_headers)
    assert gone.status_code == 404


def test_message_search(client):
    _, headers = _signup(client, "Searcher")
    channel = client.post(
        "/api/v1/channels", json={"name": "general"}, headers=headers
    ).json()["channel"]
    messages_path = f"/api/v1/channels/{channel['id']}/messages"
    for content in ("Pizza tonight?", "No, tacos", "PIZZA it is", "100% agreed"):
        client.post(messages_path, json={"content": content}, headers=headers)

    pizza = client.get(messages_path, params={"q": "pizza"}, headers=headers)
    percent = client.get(messages_path, params={"q": "%"}, headers=headers)

    assert [m["content"] for m in pizza.json()["messages"]] == [
        "Pizza tonight?",
        "PIZZA it is",
    ]
    assert [m["content"] for m in percent.json()["messages"]] == ["100% agreed"]


def test_only_author_or_staff_can_delete_messages(client):
    _, owner_headers = _signup(client, "Owner")
    _, author_headers = _signup(client, "Author")
    _, other_headers = _signup(client, "Other")
    channel = client.post(
        "/api/v1/channels", json={"name": "general"}, headers=owner_headers
    ).json()["channel"]
    message = client.post(
        f"/api/v1/channels/{channel['id']}/messages",
        json={"content": "mine"},
        headers=author_headers,
    ).json()["message"]

    path = f"/api/v1/channels/{channel['id']}/messages/{message['id']}"
    assert client.delete(path, headers=other_headers).status_code == 403
    assert client.delete(path, headers=author_headers).status_code == 200


def test_private_and_read_only_channels(client):
    _, owner_headers = _signup(client, "Owner")
    _, other_headers = _signup(client, "Other")
    private = client.post(
        "/api/v1/channels", json={"name": "secret", "type": "private"}, headers=owner_headers
    ).json()["channel"]
    announcements = client.post(
        "/api/v1/channels",
        json={"name": "news", "is_read_only": True},
        headers=owner_headers,
    ).json()["channel"]

    assert client.get(f"/api/v1/channels/{private['id']}", headers=other_headers).status_code == 403
    assert client.post(f"/api/v1/channels/{private['id']}/join", headers=other_headers).status_code == 403

    blocked = client.post(
        f"/api/v1/channels/{announcements['id']}/messages",
        json={"content": "hi"},
        headers=other_headers,
    )
    assert blocked.status_code == 403
    allowed = client.post(
        f"/api/v1/channels/{announcements['id']}/messages",
        json={"content": "Welcome"},
        headers=owner_headers,
    )
    assert allowed.status_code == 201


def test_direct_channels(client):
    me, my_headers = _signup(client, "Me")
    friend, friend_headers = _signup(client, "Friend")

    first = client.post(f"/api/v1/channels/direct/{friend['id']}", headers=my_headers)
    second = client.post(f"/api/v1/channels/direct/{me['id']}", headers=friend_headers)
    self_dm = client.post(f"/api/v1/channels/direct/{me['id']}", headers=my_headers)

    assert first.json()["channel"]["id"] == second.json()["channel"]["id"]
    assert first.json()["channel"]["type"] == "private"
    assert self_dm.status_code == 400


def test_join_and_leave_channel(client):
    _, owner_headers = _signup(client, "Owner")
    _, guest_headers = _signup(client, "Guest")
    channel = client.post(
        "/api/v1/channels", json={"name": "open"}, headers=owner_headers
    ).json()["channel"]

    joined = client.post(f"/api/v1/channels/{channel['id']}/join", headers=guest_headers)
    assert joined.json()["channel"]["role"] == "member"
    assert joined.json()["channel"]["member_count"] == 2

    path = f"/api/v1/channels/{channel['id']}/membership"
    assert client.delete(path, headers=guest_headers).status_code == 204
    assert client.delete(path, headers=guest_headers).status_code == 404
