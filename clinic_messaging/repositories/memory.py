"""In-process conversation and message stores.

Same contracts as the MongoDB repositories. Mutations of one conversation are
serialised by that conversation's lock; conversations never share a lock.
Selected with ``STORAGE_BACKEND=memory`` and used by the test suite.
"""

import asyncio
import copy
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from clinic_messaging.core.errors import NotFound, Unauthorized, ValidationError
from clinic_messaging.models.conversation import LastMessageSummary, new_conversation_document
from clinic_messaging.models.message import Attachment, message_summary, new_message_document, sort_key
from clinic_messaging.models.user import unknown_user


class MemoryBackend:

    def __init__(self) -> None:
        self.conversations: Dict[str, Dict[str, Any]] = {}
        self.messages: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.users: Dict[str, dict] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock(self, conversation_id: str) -> asyncio.Lock:
        if conversation_id not in self._locks:
            self._locks[conversation_id] = asyncio.Lock()
        return self._locks[conversation_id]

    def conversation(self, conversation_id) -> Dict[str, Any]:
        doc = self.conversations.get(str(conversation_id))
        if doc is None:
            raise NotFound("Conversation not found")
        return doc

    def add_user(self, user_id: str, name: Optional[str] = None, email: Optional[str] = None) -> None:
        self.users[user_id] = {"id": user_id, "name": name, "email": email}


def _conversation_view(doc: Dict[str, Any]) -> Dict[str, Any]:
    return copy.deepcopy(doc)


class MemoryConversationStore:

    def __init__(self, backend: MemoryBackend, preview_chars: int = 200) -> None:
        self._backend = backend
        self._preview_chars = preview_chars

    async def create(
        self,
        participants: Iterable[str],
        sender_id: str,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        session=None,
    ) -> Dict[str, Any]:
        members = list(participants)
        if not members:
            raise ValidationError("A conversation needs at least one participant")
        now = datetime.now(timezone.utc)
        message = new_message_document(
            None, sender_id, content, seq=1, now=now, attachments=attachments, summary_pending=False
        )
        doc = new_conversation_document(members, message_summary(message, self._preview_chars), now)
        conversation_id = str(doc["_id"])
        doc["_id"] = conversation_id
        doc["participants"] = frozenset(doc["participants"])
        message["_id"] = str(message["_id"])
        message["conversation_id"] = conversation_id

        self._backend.conversations[conversation_id] = doc
        self._backend.messages[conversation_id].append(message)
        return _conversation_view(doc)

    async def get(self, conversation_id) -> Dict[str, Any]:
        return _conversation_view(self._backend.conversation(conversation_id))

    async def list_for_participant(self, user_id: str) -> List[Dict[str, Any]]:
        items = [doc for doc in self._backend.conversations.values() if user_id in doc["participants"]]
        items.sort(key=lambda doc: (doc["updated_at"], doc["_id"]), reverse=True)
        return [_conversation_view(doc) for doc in items]

    async def allocate_seq(self, conversation_id, sender_id: str, session=None) -> int:
        doc = self._backend.conversation(conversation_id)
        if sender_id not in doc["participants"]:
            raise Unauthorized("Not authorized to send message")
        doc["message_seq"] += 1
        return doc["message_seq"]

    async def touch_on_new_message(
        self, conversation_id, summary: LastMessageSummary, delta: int, session=None
    ) -> None:
        async with self._backend.lock(str(conversation_id)):
            doc = self._backend.conversation(conversation_id)
            doc["unread_count"] += delta
            current = doc.get("last_message")
            if current is None or summary["seq"] > current["seq"]:
                doc["last_message"] = dict(summary)
            doc["updated_at"] = max(doc["updated_at"], summary["timestamp"])

    async def reset_unread(self, conversation_id, session=None) -> None:
        async with self._backend.lock(str(conversation_id)):
            self._backend.conversation(conversation_id)["unread_count"] = 0


class MemoryMessageStore:

    def __init__(self, backend: MemoryBackend, conversations: MemoryConversationStore) -> None:
        self._backend = backend
        self._conversations = conversations

    async def append(
        self,
        conversation_id,
        sender_id: str,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        session=None,
    ) -> Dict[str, Any]:
        key = str(conversation_id)
        async with self._backend.lock(key):
            seq = await self._conversations.allocate_seq(key, sender_id)
            doc = new_message_document(
                key, sender_id, content, seq=seq, now=datetime.now(timezone.utc), attachments=attachments
            )
            doc["_id"] = str(doc["_id"])
            self._backend.messages[key].append(doc)
            return copy.deepcopy(doc)

    async def list_by_conversation(self, conversation_id) -> List[Dict[str, Any]]:
        items = sorted(self._backend.messages.get(str(conversation_id), []), key=sort_key)
        return copy.deepcopy(items)

    async def mark_read_for_user(
        self, conversation_id, user_id: str, at: datetime, up_to_seq: Optional[int] = None, session=None
    ) -> int:
        key = str(conversation_id)
        updated = 0
        async with self._backend.lock(key):
            for message in self._backend.messages.get(key, []):
                if up_to_seq is not None and message["seq"] > up_to_seq:
                    continue
                if any(marker["user_id"] == user_id for marker in message["read_by"]):
                    continue
                message["read_by"].append({"user_id": user_id, "read_at": at})
                updated += 1
        return updated

    async def latest(self, conversation_id) -> Optional[Dict[str, Any]]:
        items = self._backend.messages.get(str(conversation_id), [])
        if not items:
            return None
        return copy.deepcopy(max(items, key=lambda m: m["seq"]))

    async def pending_summaries(self, conversation_id, older_than: datetime) -> List[Dict[str, Any]]:
        items = [
            m
            for m in self._backend.messages.get(str(conversation_id), [])
            if m["summary_pending"] and m["created_at"] <= older_than
        ]
        return copy.deepcopy(sorted(items, key=lambda m: m["seq"]))

    def _find(self, message_id) -> Dict[str, Any]:
        for items in self._backend.messages.values():
            for message in items:
                if message["_id"] == str(message_id):
                    return message
        raise NotFound("Message not found")

    async def claim_pending(self, message_id, session=None) -> bool:
        message = self._find(message_id)
        if not message["summary_pending"]:
            return False
        message["summary_pending"] = False
        return True


class MemoryUserDirectory:

    def __init__(self, backend: MemoryBackend) -> None:
        self._backend = backend

    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        return {uid: dict(self._backend.users.get(uid) or unknown_user(uid)) for uid in set(user_ids)}
