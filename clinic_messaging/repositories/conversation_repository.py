import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from clinic_messaging.core.errors import NotFound, Unauthorized, ValidationError
from clinic_messaging.database.connection import retry_read, to_object_id
from clinic_messaging.models.conversation import LastMessageSummary, new_conversation_document
from clinic_messaging.models.message import Attachment, message_summary, new_message_document

logger = logging.getLogger(__name__)


def conversation_from_mongo(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["_id"] = str(doc["_id"])
    doc["participants"] = frozenset(doc.get("participants", []))
    doc.setdefault("last_message", None)
    doc.setdefault("unread_count", 0)
    doc.setdefault("message_seq", 0)
    return doc


class ConversationRepository:

    def __init__(self, db: AsyncIOMotorDatabase, preview_chars: int = 200) -> None:
        self._db = db
        self._preview_chars = preview_chars

    @property
    def collection(self):
        return self._db["conversations"]

    @property
    def messages_collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index([("participants", ASCENDING), ("updated_at", DESCENDING)])

    async def create(
        self,
        participants: Iterable[str],
        sender_id: str,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        session=None,
    ) -> Dict[str, Any]:
        """Insert a conversation together with its first message.

        Inside a transaction both inserts commit together; without one a
        failed message insert removes the conversation again.
        """
        members = list(participants)
        if not members:
            raise ValidationError("A conversation needs at least one participant")
        now = datetime.now(timezone.utc)
        message = new_message_document(
            None, sender_id, content, seq=1, now=now, attachments=attachments, summary_pending=False
        )
        doc = new_conversation_document(members, message_summary(message, self._preview_chars), now)
        message["conversation_id"] = doc["_id"]

        await self.collection.insert_one(doc, session=session)
        try:
            await self.messages_collection.insert_one(message, session=session)
        except Exception:
            if session is None:
                logger.exception("First message insert failed, removing conversation %s", doc["_id"])
                await self.collection.delete_one({"_id": doc["_id"]})
            raise
        return conversation_from_mongo(doc)

    @retry_read
    async def get(self, conversation_id) -> Dict[str, Any]:
        doc = await self.collection.find_one({"_id": to_object_id(conversation_id)})
        if not doc:
            raise NotFound("Conversation not found")
        return conversation_from_mongo(doc)

    @retry_read
    async def list_for_participant(self, user_id: str) -> List[Dict[str, Any]]:
        # no pagination: every conversation of the participant is returned
        cursor = self.collection.find({"participants": user_id}).sort(
            [("updated_at", DESCENDING), ("_id", DESCENDING)]
        )
        items = await cursor.to_list(length=None)
        return [conversation_from_mongo(it) for it in items]

    async def allocate_seq(self, conversation_id, sender_id: str, session=None) -> int:
        """Reserve the next message sequence if ``sender_id`` is a participant.

        Membership is checked by the same atomic update that bumps the
        sequence, so it holds at the moment of the write.
        """
        oid = to_object_id(conversation_id)
        doc = await self.collection.find_one_and_update(
            {"_id": oid, "participants": sender_id},
            {"$inc": {"message_seq": 1}},
            projection={"message_seq": True},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        if doc is None:
            exists = await self.collection.find_one({"_id": oid}, projection={"_id": True}, session=session)
            if not exists:
                raise NotFound("Conversation not found")
            raise Unauthorized("Not authorized to send message")
        return doc["message_seq"]

    async def touch_on_new_message(
        self, conversation_id, summary: LastMessageSummary, delta: int, session=None
    ) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {
                "$inc": {"unread_count": delta},
                # an older summary never replaces a newer one
                "$max": {"last_message": dict(summary), "updated_at": summary["timestamp"]},
            },
            session=session,
        )

    async def reset_unread(self, conversation_id, session=None) -> None:
        await self.collection.update_one(
            {"_id": to_object_id(conversation_id)},
            {"$set": {"unread_count": 0}},
            session=session,
        )
