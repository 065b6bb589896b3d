import os

os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from fastapi.testclient import TestClient

from clinic_messaging.repositories.memory import MemoryBackend
from clinic_messaging.utils.dependencies import build_memory_chat_service, get_chat_service
from clinic_messaging.utils.notifications import Notifier
from clinic_messaging.utils.security import create_access_token

ALICE = "650000000000000000000001"
BOB = "650000000000000000000002"
CAROL = "650000000000000000000003"
MALLORY = "650000000000000000000009"


class RecordingNotifier:

    def __init__(self):
        self.sent = []
        self.created = []

    async def message_sent(self, conversation, message):
        self.sent.append((conversation["_id"], message["_id"]))

    async def conversation_created(self, conversation, creator_id):
        self.created.append((conversation["_id"], creator_id))


@pytest.fixture()
def backend():
    backend = MemoryBackend()
    backend.add_user(ALICE, name="Dr. Alice", email="alice@clinic.test")
    backend.add_user(BOB, name="Bob", email="bob@clinic.test")
    backend.add_user(CAROL, name="Carol", email="carol@clinic.test")
    return backend


@pytest.fixture()
def notifier():
    return RecordingNotifier()


@pytest.fixture()
def service(backend, notifier):
    return build_memory_chat_service(backend, notifier=notifier)


def auth_headers(user_id, role="doctor"):
    return {"Authorization": f"Bearer {create_access_token(user_id, role=role)}"}


@pytest.fixture()
def client(backend):
    from clinic_messaging.main import app

    app.dependency_overrides[get_chat_service] = lambda: build_memory_chat_service(backend, notifier=Notifier())
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
