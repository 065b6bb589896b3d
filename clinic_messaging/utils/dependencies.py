from datetime import timedelta
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from clinic_messaging.core.config import get_settings
from clinic_messaging.database.connection import get_database, run_in_transaction
from clinic_messaging.repositories.conversation_repository import ConversationRepository
from clinic_messaging.repositories.memory import (
    MemoryBackend,
    MemoryConversationStore,
    MemoryMessageStore,
    MemoryUserDirectory,
)
from clinic_messaging.repositories.message_repository import MessageRepository
from clinic_messaging.repositories.user_repository import UserRepository
from clinic_messaging.services.chat_service import ChatService
from clinic_messaging.utils.notifications import Notifier
from clinic_messaging.utils.security import decode_access_token

bearer_scheme = HTTPBearer(auto_error=False)

_memory_backend: Optional[MemoryBackend] = None


def identity_from_token(token: str) -> dict:
    """Map a bearer token to the caller identity, or raise 401."""
    try:
        claims = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token has expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized to access this route")
    return {"_id": str(claims["sub"]), "role": claims.get("role")}


async def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> dict:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized to access this route")
    return identity_from_token(credentials.credentials)


def get_memory_backend() -> MemoryBackend:
    global _memory_backend
    if _memory_backend is None:
        _memory_backend = MemoryBackend()
    return _memory_backend


def build_memory_chat_service(backend: MemoryBackend, notifier: Optional[Notifier] = None) -> ChatService:
    settings = get_settings()
    conversations = MemoryConversationStore(backend, preview_chars=settings.message_preview_chars)
    return ChatService(
        MemoryMessageStore(backend, conversations),
        conversations,
        MemoryUserDirectory(backend),
        notifier=notifier,
        hide_existence=settings.hide_conversation_existence,
        repair_grace=timedelta(seconds=settings.summary_repair_grace_seconds),
        preview_chars=settings.message_preview_chars,
        max_message_chars=settings.max_message_chars,
    )


def get_chat_service() -> ChatService:
    settings = get_settings()
    if settings.storage_backend == "memory":
        return build_memory_chat_service(get_memory_backend(), notifier=Notifier())
    db = get_database()
    convo_repo = ConversationRepository(db, preview_chars=settings.message_preview_chars)
    msg_repo = MessageRepository(db, convo_repo)
    return ChatService(
        msg_repo,
        convo_repo,
        UserRepository(db),
        notifier=Notifier(),
        transaction=run_in_transaction,
        hide_existence=settings.hide_conversation_existence,
        repair_grace=timedelta(seconds=settings.summary_repair_grace_seconds),
        preview_chars=settings.message_preview_chars,
        max_message_chars=settings.max_message_chars,
    )
