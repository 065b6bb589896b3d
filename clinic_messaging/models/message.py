from datetime import datetime
from typing import List, Optional, TypedDict

from bson import ObjectId

from clinic_messaging.models.conversation import LastMessageSummary


class Attachment(TypedDict, total=False):
    type: Optional[str]
    url: str
    name: Optional[str]
    size: Optional[int]


class ReadMarker(TypedDict):
    user_id: str
    read_at: datetime


class MessageDocument(TypedDict, total=False):
    _id: str
    conversation_id: str
    sender_id: str
    content: str
    attachments: List[Attachment]
    # one entry per reader, only ever appended to
    read_by: List[ReadMarker]
    # ties on created_at are broken by seq
    seq: int
    created_at: datetime
    # true until the conversation summary and counter reflect this message
    summary_pending: bool
    # resolved by the service, never persisted
    sender: dict


def new_message_document(
    conversation_id,
    sender_id: str,
    content: str,
    seq: int,
    now: datetime,
    attachments: Optional[List[Attachment]] = None,
    summary_pending: bool = True,
) -> dict:
    return {
        "_id": ObjectId(),
        "conversation_id": conversation_id,
        "sender_id": sender_id,
        "content": content,
        "attachments": list(attachments or []),
        "read_by": [{"user_id": sender_id, "read_at": now}],
        "seq": seq,
        "created_at": now,
        "summary_pending": summary_pending,
    }


def message_summary(message: dict, preview_chars: int) -> LastMessageSummary:
    return {
        "seq": message["seq"],
        "content": message["content"][:preview_chars],
        "sender_id": message["sender_id"],
        "timestamp": message["created_at"],
    }


def sort_key(message: dict):
    return (message["created_at"], message["seq"])
