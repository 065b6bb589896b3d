import json
import logging
from datetime import datetime, timezone

from clinic_messaging.utils import notifications
from clinic_messaging.utils.notifications import Notifier
from clinic_messaging.utils.realtime_bus import NoopBus
from clinic_messaging.utils.websocket_manager import ConnectionManager
from conftest import ALICE, BOB, CAROL

CONVERSATION = {"_id": "conv-1", "participants": frozenset({ALICE, BOB, CAROL})}
MESSAGE = {
    "_id": "msg-1",
    "sender_id": ALICE,
    "content": "rounds at 9",
    "created_at": datetime(2026, 1, 5, 9, 0, tzinfo=timezone.utc),
}


class _RecordingBus:
    enabled = True

    def __init__(self, error=None):
        self.published = []
        self.error = error

    async def publish_to_users(self, user_ids, event):
        if self.error:
            raise self.error
        for user_id in user_ids:
            self.published.append((f"user:{user_id}", json.loads(event)))


class _RecordingConnections:

    def __init__(self):
        self.sent = []

    async def send_to_users(self, user_ids, event):
        for user_id in user_ids:
            self.sent.append((user_id, json.loads(event)))
        return len(self.sent)


def _use_bus(monkeypatch, bus):
    async def _get_bus():
        return bus

    monkeypatch.setattr(notifications, "get_bus", _get_bus)


async def test_message_is_published_to_every_recipient_but_the_sender(monkeypatch):
    bus = _RecordingBus()
    _use_bus(monkeypatch, bus)

    await Notifier().message_sent(CONVERSATION, MESSAGE)

    assert [channel for channel, _ in bus.published] == [f"user:{BOB}", f"user:{CAROL}"]
    event = bus.published[0][1]
    assert event == {
        "type": "message",
        "conversationId": "conv-1",
        "messageId": "msg-1",
        "from": ALICE,
        "content": "rounds at 9",
        "createdAt": "2026-01-05T09:00:00+00:00",
    }


async def test_local_connections_are_used_without_a_bus(monkeypatch):
    _use_bus(monkeypatch, NoopBus())
    connections = _RecordingConnections()

    await Notifier(connections).message_sent(CONVERSATION, MESSAGE)

    assert [receiver for receiver, _ in connections.sent] == [BOB, CAROL]


async def test_bus_failure_is_logged_not_raised(monkeypatch, caplog):
    monkeypatch.setattr(logging.getLogger("clinic_messaging"), "propagate", True)
    _use_bus(monkeypatch, _RecordingBus(error=ConnectionError("redis down")))

    await Notifier().message_sent(CONVERSATION, MESSAGE)

    assert "Realtime fan-out failed for message msg-1" in caplog.text


class _FakeSocket:

    def __init__(self, fail=False):
        self.accepted = False
        self.received = []
        self.fail = fail

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError('Cannot call "send" once a close message has been sent.')
        self.received.append(text)


async def test_connection_manager_fans_out_and_drops_dead_sockets():
    connections = ConnectionManager()
    phone, laptop, stale = _FakeSocket(), _FakeSocket(), _FakeSocket(fail=True)
    await connections.connect(BOB, phone)
    await connections.connect(BOB, laptop)
    await connections.connect(CAROL, stale)

    delivered = await connections.send_to_users([BOB, CAROL, ALICE], "event")

    assert delivered == 2
    assert phone.received == laptop.received == ["event"]
    assert phone.accepted
    assert not connections.is_connected(CAROL)

    connections.disconnect(BOB, phone)
    connections.disconnect(BOB, laptop)
    assert not connections.is_connected(BOB)
