from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from clinic_messaging.models.user import unknown_user
from clinic_messaging.schemas.user import ParticipantOut

T = TypeVar("T")


class CamelModel(BaseModel):

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AttachmentIn(CamelModel):

    type: Optional[str] = None
    url: str
    name: Optional[str] = None
    size: Optional[int] = Field(default=None, ge=0)


class CreateConversationRequest(BaseModel):

    participant_ids: List[str] = Field(
        validation_alias=AliasChoices("participantIds", "participant_ids", "participants"),
    )
    message: str
    attachments: List[AttachmentIn] = Field(default_factory=list)


class SendMessageRequest(BaseModel):

    content: str
    attachments: List[AttachmentIn] = Field(default_factory=list)


class LastMessageOut(CamelModel):

    content: str
    sender_id: str
    timestamp: datetime


class ConversationOut(CamelModel):

    id: str
    participants: List[ParticipantOut]
    last_message: Optional[LastMessageOut] = None
    unread_count: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_document(cls, doc: dict) -> "ConversationOut":
        details = doc.get("participant_details") or [unknown_user(uid) for uid in sorted(doc["participants"])]
        last = doc.get("last_message")
        return cls(
            id=doc["_id"],
            participants=[ParticipantOut(**p) for p in details],
            last_message=LastMessageOut(
                content=last["content"], sender_id=last["sender_id"], timestamp=last["timestamp"]
            )
            if last
            else None,
            unread_count=doc.get("unread_count", 0),
            created_at=doc["created_at"],
            updated_at=doc["updated_at"],
        )


class ReadMarkerOut(CamelModel):

    user_id: str
    read_at: datetime


class MessageOut(CamelModel):

    id: str
    conversation_id: str
    sender_id: str
    sender: Optional[ParticipantOut] = None
    content: str
    attachments: List[AttachmentIn] = Field(default_factory=list)
    read_by: List[ReadMarkerOut] = Field(default_factory=list)
    created_at: datetime

    @classmethod
    def from_document(cls, doc: dict) -> "MessageOut":
        sender = doc.get("sender")
        return cls(
            id=doc["_id"],
            conversation_id=doc["conversation_id"],
            sender_id=doc["sender_id"],
            sender=ParticipantOut(**sender) if sender else None,
            content=doc["content"],
            attachments=[AttachmentIn(**a) for a in doc.get("attachments", [])],
            read_by=[ReadMarkerOut(user_id=m["user_id"], read_at=m["read_at"]) for m in doc.get("read_by", [])],
            created_at=doc["created_at"],
        )


class Envelope(BaseModel, Generic[T]):

    success: bool = True
    data: T
