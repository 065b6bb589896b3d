from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, ReturnDocument

from clinic_messaging.database.connection import retry_read, to_object_id
from clinic_messaging.models.message import Attachment, new_message_document
from clinic_messaging.repositories.conversation_repository import ConversationRepository


def message_from_mongo(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc["_id"] = str(doc["_id"])
    doc["conversation_id"] = str(doc["conversation_id"])
    doc.setdefault("attachments", [])
    doc.setdefault("read_by", [])
    doc.setdefault("summary_pending", False)
    return doc


class MessageRepository:

    def __init__(self, db: AsyncIOMotorDatabase, conversations: ConversationRepository) -> None:
        self._db = db
        self._conversations = conversations

    @property
    def collection(self):
        return self._db["messages"]

    async def ensure_indexes(self) -> None:
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("created_at", ASCENDING), ("seq", ASCENDING)]
        )
        await self.collection.create_index([("conversation_id", ASCENDING), ("seq", ASCENDING)], unique=True)
        await self.collection.create_index(
            [("conversation_id", ASCENDING), ("summary_pending", ASCENDING), ("created_at", ASCENDING)]
        )

    async def append(
        self,
        conversation_id,
        sender_id: str,
        content: str,
        attachments: Optional[List[Attachment]] = None,
        session=None,
    ) -> Dict[str, Any]:
        seq = await self._conversations.allocate_seq(conversation_id, sender_id, session=session)
        doc = new_message_document(
            to_object_id(conversation_id),
            sender_id,
            content,
            seq=seq,
            now=datetime.now(timezone.utc),
            attachments=attachments,
        )
        await self.collection.insert_one(doc, session=session)
        return message_from_mongo(doc)

    @retry_read
    async def list_by_conversation(self, conversation_id) -> List[Dict[str, Any]]:
        cursor = self.collection.find({"conversation_id": to_object_id(conversation_id)}).sort(
            [("created_at", ASCENDING), ("seq", ASCENDING)]
        )
        items = await cursor.to_list(length=None)
        return [message_from_mongo(it) for it in items]

    async def mark_read_for_user(
        self, conversation_id, user_id: str, at: datetime, up_to_seq: Optional[int] = None, session=None
    ) -> int:
        query: Dict[str, Any] = {"conversation_id": to_object_id(conversation_id), "read_by.user_id": {"$ne": user_id}}
        if up_to_seq is not None:
            query["seq"] = {"$lte": up_to_seq}
        # the $ne filter is re-evaluated per document, so a reader is pushed at most once
        result = await self.collection.update_many(
            query,
            {"$push": {"read_by": {"user_id": user_id, "read_at": at}}},
            session=session,
        )
        return result.modified_count or 0

    @retry_read
    async def latest(self, conversation_id) -> Optional[Dict[str, Any]]:
        doc = await self.collection.find_one(
            {"conversation_id": to_object_id(conversation_id)},
            sort=[("seq", DESCENDING)],
        )
        return message_from_mongo(doc) if doc else None

    @retry_read
    async def pending_summaries(self, conversation_id, older_than: datetime) -> List[Dict[str, Any]]:
        cursor = self.collection.find(
            {
                "conversation_id": to_object_id(conversation_id),
                "summary_pending": True,
                "created_at": {"$lte": older_than},
            }
        ).sort([("seq", ASCENDING)])
        items = await cursor.to_list(length=None)
        return [message_from_mongo(it) for it in items]

    async def claim_pending(self, message_id, session=None) -> bool:
        """Atomically clear the pending flag; true only for the caller that cleared it."""
        doc = await self.collection.find_one_and_update(
            {"_id": to_object_id(message_id, what="Message"), "summary_pending": True},
            {"$set": {"summary_pending": False}},
            projection={"_id": True},
            return_document=ReturnDocument.AFTER,
            session=session,
        )
        return doc is not None
