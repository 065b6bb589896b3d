from typing import List

from fastapi import APIRouter, Depends, status

from clinic_messaging.schemas.conversation import (
    ConversationOut,
    CreateConversationRequest,
    Envelope,
    MessageOut,
    SendMessageRequest,
)
from clinic_messaging.services.chat_service import ChatService
from clinic_messaging.utils.dependencies import get_chat_service, get_current_user


router = APIRouter(prefix="/conversations", tags=["chat"])


@router.get("", response_model=Envelope[List[ConversationOut]])
async def list_conversations(current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversations = await service.list_conversations(current_user["_id"])
    return Envelope(data=[ConversationOut.from_document(c) for c in conversations])


@router.post("", response_model=Envelope[ConversationOut], status_code=status.HTTP_201_CREATED)
async def create_conversation(body: CreateConversationRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    conversation = await service.create_conversation(
        current_user["_id"],
        body.participant_ids,
        body.message,
        attachments=[a.model_dump() for a in body.attachments],
    )
    return Envelope(data=ConversationOut.from_document(conversation))


@router.get("/{conversation_id}/messages", response_model=Envelope[List[MessageOut]])
async def list_messages(conversation_id: str, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    messages = await service.get_messages(current_user["_id"], conversation_id)
    return Envelope(data=[MessageOut.from_document(m) for m in messages])


@router.post("/{conversation_id}/messages", response_model=Envelope[MessageOut], status_code=status.HTTP_201_CREATED)
async def send_message(conversation_id: str, body: SendMessageRequest, current_user: dict = Depends(get_current_user), service: ChatService = Depends(get_chat_service)):
    message = await service.send_message(
        current_user["_id"],
        conversation_id,
        body.content,
        attachments=[a.model_dump() for a in body.attachments],
    )
    return Envelope(data=MessageOut.from_document(message))
