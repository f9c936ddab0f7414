from __future__ import annotations

import asyncio
import threading

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from huddle import api
from huddle.realtime import MESSAGE_CREATED, MESSAGE_UPDATED, ChannelHub, message_created


@pytest.fixture()
def client(monkeypatch):
    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _signup(client, name):
    data = client.post("/api/v1/profiles", json={"full_name": name}).json()
    return data["access_token"], {"Authorization": f"Bearer {data['access_token']}"}


def _channel(client, headers, **extra):
    response = client.post(
        "/api/v1/channels", json={"name": "lobby", **extra}, headers=headers
    )
    assert response.status_code == 201, response.text
    return response.json()["channel"]


def test_hub_delivers_to_subscribers_of_the_channel():
    hub = ChannelHub()

    async def scenario():
        first = hub.subscribe("c1", "u1")
        second = hub.subscribe("c1", "u2")
        other = hub.subscribe("c2", "u3")
        delivered = hub.publish("c1", {"n": 1})
        received = [
            await asyncio.wait_for(first.queue.get(), timeout=1),
            await asyncio.wait_for(second.queue.get(), timeout=1),
        ]
        return delivered, received, other.queue.empty()

    delivered, received, other_empty = asyncio.run(scenario())

    assert delivered == 2
    assert received == [{"n": 1}, {"n": 1}]
    assert other_empty


def test_hub_accepts_publishes_from_worker_threads():
    hub = ChannelHub()

    async def scenario():
        subscription = hub.subscribe("c1", "u1")
        worker = threading.Thread(target=hub.publish, args=("c1", {"n": 2}))
        worker.start()
        payload = await asyncio.wait_for(subscription.queue.get(), timeout=1)
        worker.join()
        return payload

    assert asyncio.run(scenario()) == {"n": 2}


def test_hub_unsubscribe_stops_delivery():
    hub = ChannelHub()

    async def scenario():
        subscription = hub.subscribe("c1", "u1")
        hub.unsubscribe(subscription)
        hub.unsubscribe(subscription)
        return hub.publish("c1", {"n": 3})

    assert asyncio.run(scenario()) == 0
    assert hub.subscriber_count("c1") == 0


def test_stream_receives_messages_posted_by_others(client):
    token, owner_headers = _signup(client, "Owner")
    _, guest_headers = _signup(client, "Guest")
    channel = _channel(client, owner_headers)

    path = f"/api/v1/channels/{channel['id']}/stream?token={token}"
    with client.websocket_connect(path) as websocket:
        posted = client.post(
            f"/api/v1/channels/{channel['id']}/messages",
            json={"content": "Anyone here?"},
            headers=guest_headers,
        )
        assert posted.status_code == 201
        event = websocket.receive_json()

    assert event["type"] == MESSAGE_CREATED
    assert event["message"]["content"] == "Anyone here?"
    assert event["message"]["id"] == posted.json()["message"]["id"]


def test_stream_receives_deletions(client):
    token, owner_headers = _signup(client, "Owner")
    channel = _channel(client, owner_headers)
    message = client.post(
        f"/api/v1/channels/{channel['id']}/messages",
        json={"content": "oops"},
        headers=owner_headers,
    ).json()["message"]

    path = f"/api/v1/channels/{channel['id']}/stream?token={token}"
    with client.websocket_connect(path) as websocket:
        client.delete(
            f"/api/v1/channels/{channel['id']}/messages/{message['id']}",
            headers=owner_headers,
        )
        event = websocket.receive_json()

    assert event["type"] == "message.deleted"
    assert event["message"]["content"] is None


def test_stream_receives_edits(client):
    token, owner_headers = _signup(client, "Owner")
    channel = _channel(client, owner_headers)
    message = client.post(
        f"/api/v1/channels/{channel['id']}/messages",
        json={"content": "typo"},
        headers=owner_headers,
    ).json()["message"]

    path = f"/api/v1/channels/{channel['id']}/stream?token={token}"
    with client.websocket_connect(path) as websocket:
        client.patch(
            f"/api/v1/channels/{channel['id']}/messages/{message['id']}",
            json={"content": "fixed"},
            headers=owner_headers,
        )
        event = websocket.receive_json()

    assert event["type"] == MESSAGE_UPDATED
    assert event["message"]["content"] == "fixed"
    assert event["message"]["edited_at"] is not None


def test_stream_rejects_unknown_token(client):
    _, owner_headers = _signup(client, "Owner")
    channel = _channel(client, owner_headers)

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(
            f"/api/v1/channels/{channel['id']}/stream?token=bogus"
        ):
            pass

    assert excinfo.value.code == 4401


def test_stream_rejects_private_channel_outsiders(client):
    _, owner_headers = _signup(client, "Owner")
    outsider_token, _ = _signup(client, "Outsider")
    channel = _channel(client, owner_headers, type="private")

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(
            f"/api/v1/channels/{channel['id']}/stream?token={outsider_token}"
        ):
            pass

    assert excinfo.value.code == 4403


def test_stream_rejects_missing_channel(client):
    token, _ = _signup(client, "Owner")

    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect(f"/api/v1/channels/missing/stream?token={token}"):
            pass

    assert excinfo.value.code == 4404


def test_message_created_envelope():
    assert message_created({"id": "m1"}) == {
        "type": MESSAGE_CREATED,
        "message": {"id": "m1"},
    }
