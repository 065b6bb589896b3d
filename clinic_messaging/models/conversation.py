from datetime import datetime
from typing import FrozenSet, List, Optional, TypedDict

from bson import ObjectId


class LastMessageSummary(TypedDict):
    # seq must stay the leading key: $max on the embedded document orders by it
    seq: int
    content: str
    sender_id: str
    timestamp: datetime


class ConversationDocument(TypedDict, total=False):
    _id: str
    participants: FrozenSet[str]
    last_message: Optional[LastMessageSummary]
    # shared across participants, reset by whichever participant fetches
    unread_count: int
    # insertion sequence allocator for the conversation's messages
    message_seq: int
    created_at: datetime
    updated_at: datetime
    # resolved by the service, never persisted
    participant_details: List[dict]


def normalize_participants(participant_ids) -> List[str]:
    return sorted(set(participant_ids))


def new_conversation_document(participants: List[str], summary: LastMessageSummary, now: datetime) -> dict:
    return {
        "_id": ObjectId(),
        "participants": normalize_participants(participants),
        "last_message": summary,
        "unread_count": max(len(set(participants)) - 1, 0),
        "message_seq": summary["seq"],
        "created_at": now,
        "updated_at": now,
    }
