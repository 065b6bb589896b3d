import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from clinic_messaging.routers import chat
from clinic_messaging.utils.security import create_access_token
from conftest import ALICE, BOB, CAROL, MALLORY, auth_headers


def _create(client, creator=ALICE, participants=(BOB,), message="hi"):
    response = client.post(
        "/conversations",
        json={"participantIds": list(participants), "message": message},
        headers=auth_headers(creator),
    )
    assert response.status_code == 201, response.text
    return response.json()["data"]


def test_requests_without_a_valid_token_are_rejected(client):
    assert client.get("/conversations").status_code == 401
    response = client.get("/conversations", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401
    assert response.json() == {"success": False, "message": "Not authorized to access this route"}


def test_expired_token_is_rejected(client):
    token = create_access_token(ALICE, expires_minutes=-1)
    response = client.get("/conversations", headers={"Authorization": f"Bearer {token}"})
    assert response.status_code == 401
    assert response.json()["message"] == "Token has expired"


def test_create_conversation_returns_camel_case_envelope(client):
    response = client.post(
        "/conversations",
        json={"participantIds": [BOB], "message": "hi"},
        headers=auth_headers(ALICE),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    data = body["data"]
    assert [p["id"] for p in data["participants"]] == [ALICE, BOB]
    assert data["participants"][0]["name"] == "Dr. Alice"
    assert data["lastMessage"]["content"] == "hi"
    assert data["lastMessage"]["senderId"] == ALICE
    assert data["unreadCount"] == 1
    assert "createdAt" in data and "updatedAt" in data


@pytest.mark.parametrize(
    "payload",
    [
        {"participantIds": [BOB], "message": ""},
        {"participantIds": [BOB], "message": "   "},
        {"message": "hi"},
        {"participantIds": [BOB]},
    ],
)
def test_invalid_create_requests_are_400(client, payload):
    response = client.post("/conversations", json=payload, headers=auth_headers(ALICE))

    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert body["message"]
    assert client.get("/conversations", headers=auth_headers(ALICE)).json()["data"] == []


def test_send_and_read_messages(client):
    conversation = _create(client)
    cid = conversation["id"]

    sent = client.post(f"/conversations/{cid}/messages", json={"content": "how are you"}, headers=auth_headers(BOB))
    assert sent.status_code == 201
    message = sent.json()["data"]
    assert message["conversationId"] == cid
    assert message["senderId"] == BOB
    assert message["sender"]["name"] == "Bob"
    assert [marker["userId"] for marker in message["readBy"]] == [BOB]

    listed = client.get(f"/conversations/{cid}/messages", headers=auth_headers(ALICE))
    assert listed.status_code == 200
    assert [m["content"] for m in listed.json()["data"]] == ["hi", "how are you"]

    conversations = client.get("/conversations", headers=auth_headers(ALICE)).json()["data"]
    assert conversations[0]["id"] == cid
    assert conversations[0]["unreadCount"] == 0
    assert conversations[0]["lastMessage"]["content"] == "how are you"


def test_blank_message_is_400(client):
    cid = _create(client)["id"]
    response = client.post(f"/conversations/{cid}/messages", json={"content": "  "}, headers=auth_headers(BOB))
    assert response.status_code == 400
    assert response.json()["success"] is False


def test_non_participant_is_forbidden(client):
    cid = _create(client)["id"]

    assert client.get(f"/conversations/{cid}/messages", headers=auth_headers(MALLORY)).status_code == 403
    response = client.post(f"/conversations/{cid}/messages", json={"content": "hey"}, headers=auth_headers(MALLORY))
    assert response.status_code == 403
    assert response.json()["success"] is False
    assert client.get("/conversations", headers=auth_headers(MALLORY)).json()["data"] == []


@pytest.mark.parametrize("cid", ["650000000000000000000abc", "not-an-id"])
def test_unknown_conversation_is_404(client, cid):
    assert client.get(f"/conversations/{cid}/messages", headers=auth_headers(ALICE)).status_code == 404
    response = client.post(f"/conversations/{cid}/messages", json={"content": "hello"}, headers=auth_headers(ALICE))
    assert response.status_code == 404
    assert response.json() == {"success": False, "message": "Conversation not found"}


def test_attachments_round_trip_through_the_api(client):
    attachment = {"type": "image/png", "url": "https://files.test/xray.png", "name": "xray.png", "size": 1024}
    cid = _create(client)["id"]

    client.post(
        f"/conversations/{cid}/messages",
        json={"content": "x-ray attached", "attachments": [attachment]},
        headers=auth_headers(ALICE),
    )

    messages = client.get(f"/conversations/{cid}/messages", headers=auth_headers(BOB)).json()["data"]
    assert messages[-1]["attachments"] == [attachment]


def test_list_conversations_only_shows_own(client):
    mine = _create(client, participants=(BOB,))
    _create(client, creator=BOB, participants=(CAROL,))

    listed = client.get("/conversations", headers=auth_headers(ALICE)).json()["data"]
    assert [c["id"] for c in listed] == [mine["id"]]


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"
    assert client.get("/health").headers["X-Request-ID"]


def test_websocket_receives_new_messages(client):
    cid = _create(client)["id"]
    token = create_access_token(BOB)

    with client.websocket_connect(f"/messages/ws?token={token}") as websocket:
        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"

        client.post(f"/conversations/{cid}/messages", json={"content": "are you there"}, headers=auth_headers(ALICE))

        event = websocket.receive_json()
        assert event["type"] == "message"
        assert event["conversationId"] == cid
        assert event["from"] == ALICE
        assert event["content"] == "are you there"


def test_websocket_without_token_is_closed(client):
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/messages/ws") as websocket:
            websocket.receive_text()
    assert exc_info.value.code == 4401


def test_websocket_stops_its_subscription_before_closing_it(client, monkeypatch):
    class Subscription:
        running = False
        closed_while_running = None

        async def run(self):
            self.running = True
            try:
                await asyncio.Future()
            finally:
                self.running = False

        async def cancel(self):
            self.closed_while_running = self.running

    class Bus:
        enabled = True

        def __init__(self):
            self.subscription = Subscription()
            self.channels = []

        async def subscribe(self, channel, on_event):
            self.channels.append(channel)
            return self.subscription

    bus = Bus()

    async def _get_bus():
        return bus

    monkeypatch.setattr(chat, "get_bus", _get_bus)
    token = create_access_token(BOB)

    with client.websocket_connect(f"/messages/ws?token={token}") as websocket:
        websocket.send_text("ping")
        assert websocket.receive_text() == "pong"

    assert bus.channels == [f"user:{BOB}"]
    assert bus.subscription.closed_while_running is False
