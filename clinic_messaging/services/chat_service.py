import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from clinic_messaging.core.errors import NotFound, Unauthorized, ValidationError
from clinic_messaging.models.message import message_summary
from clinic_messaging.models.user import unknown_user
from clinic_messaging.utils.notifications import Notifier

logger = logging.getLogger(__name__)

TransactionRunner = Callable[[Callable[[Any], Awaitable[Any]]], Awaitable[Any]]


async def _no_transaction(callback):
    return await callback(None)


def _log_detached_failure(unit: "asyncio.Future") -> None:
    if unit.cancelled():
        return
    exc = unit.exception()
    if exc is not None:
        logger.error("Send finished after its caller went away and failed: %r", exc, exc_info=exc)


class ChatService:
    """Conversation and message operations for authenticated callers.

    Authorization (participant checks) and input validation live here; the
    stores only guarantee per-conversation atomicity of their own writes.
    """

    def __init__(
        self,
        message_repo,
        conversation_repo,
        user_directory,
        notifier: Optional[Notifier] = None,
        transaction: TransactionRunner = _no_transaction,
        hide_existence: bool = False,
        repair_grace: timedelta = timedelta(seconds=30),
        preview_chars: int = 200,
        max_message_chars: int = 5000,
    ) -> None:
        self._message_repo = message_repo
        self._conversation_repo = conversation_repo
        self._users = user_directory
        self._notifier = notifier
        self._transaction = transaction
        self._hide_existence = hide_existence
        self._repair_grace = repair_grace
        self._preview_chars = preview_chars
        self._max_message_chars = max_message_chars

    def _clean_content(self, content) -> str:
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("Message content cannot be empty")
        content = content.strip()
        if len(content) > self._max_message_chars:
            raise ValidationError(f"Message content exceeds {self._max_message_chars} characters")
        return content

    async def _load_for_participant(self, user_id: str, conversation_id: str, action: str) -> Dict[str, Any]:
        conversation = await self._conversation_repo.get(conversation_id)
        if user_id not in conversation["participants"]:
            if self._hide_existence:
                raise NotFound("Conversation not found")
            raise Unauthorized(f"Not authorized to {action} this conversation")
        return conversation

    async def _resolve_participants(self, conversations: List[Dict[str, Any]]) -> None:
        ids = set()
        for conversation in conversations:
            ids.update(conversation["participants"])
        users = await self._users.get_users_by_ids(ids)
        for conversation in conversations:
            conversation["participant_details"] = [
                users.get(uid) or unknown_user(uid) for uid in sorted(conversation["participants"])
            ]

    async def _resolve_senders(self, messages: List[Dict[str, Any]]) -> None:
        users = await self._users.get_users_by_ids({m["sender_id"] for m in messages})
        for message in messages:
            message["sender"] = users.get(message["sender_id"]) or unknown_user(message["sender_id"])

    async def _reconcile(self, conversation: Dict[str, Any], lagging_only: bool = False) -> Dict[str, Any]:
        """Repair a conversation summary left behind by an interrupted send.

        Messages whose summary update never happened are claimed one at a time
        so two readers cannot apply the same one twice. A summary that still
        lags behind the message log is replaced by the newest message in the
        returned view. With ``lagging_only`` a conversation whose summary already
        covers its newest sequence is returned untouched.
        """
        last = conversation.get("last_message")
        if lagging_only and last is not None and last["seq"] >= conversation.get("message_seq", 0):
            return conversation
        conversation_id = conversation["_id"]
        older_than = datetime.now(timezone.utc) - self._repair_grace
        pending = await self._message_repo.pending_summaries(conversation_id, older_than)
        repaired = False
        for message in pending:
            if not await self._message_repo.claim_pending(message["_id"]):
                continue
            await self._conversation_repo.touch_on_new_message(
                conversation_id,
                message_summary(message, self._preview_chars),
                len(conversation["participants"]) - 1,
            )
            logger.warning("Repaired summary of conversation %s for message %s", conversation_id, message["_id"])
            repaired = True
        if repaired:
            conversation = await self._conversation_repo.get(conversation_id)

        last = conversation.get("last_message")
        if last is None or last["seq"] < conversation.get("message_seq", 0):
            newest = await self._message_repo.latest(conversation_id)
            if newest is not None and (last is None or newest["seq"] > last["seq"]):
                conversation["last_message"] = message_summary(newest, self._preview_chars)
        return conversation

    async def create_conversation(
        self,
        creator_id: str,
        participant_ids: Iterable[str],
        first_message: str,
        attachments: Optional[List[dict]] = None,
    ) -> Dict[str, Any]:
        participants = set()
        for participant_id in participant_ids:
            if not isinstance(participant_id, str) or not participant_id.strip():
                raise ValidationError("Participant ids must be non-empty strings")
            participants.add(participant_id.strip())
        participants.add(creator_id)
        content = self._clean_content(first_message)

        async def _create(session):
            return await self._conversation_repo.create(
                participants, creator_id, content, attachments=attachments, session=session
            )

        conversation = await self._transaction(_create)
        logger.info("Conversation %s created by %s with %d participants", conversation["_id"], creator_id, len(participants))
        if self._notifier is not None:
            await self._notifier.conversation_created(conversation, creator_id)

        conversation = await self._conversation_repo.get(conversation["_id"])
        await self._resolve_participants([conversation])
        return conversation

    async def send_message(
        self,
        sender_id: str,
        conversation_id: str,
        content: str,
        attachments: Optional[List[dict]] = None,
    ) -> Dict[str, Any]:
        conversation = await self._load_for_participant(sender_id, conversation_id, "send message to")
        content = self._clean_content(content)
        recipients = len(conversation["participants"]) - 1

        async def _append_and_touch(session):
            message = await self._message_repo.append(
                conversation_id, sender_id, content, attachments=attachments, session=session
            )
            # a reader repairing the summary may have claimed the message first
            if await self._message_repo.claim_pending(message["_id"], session=session):
                await self._conversation_repo.touch_on_new_message(
                    conversation_id, message_summary(message, self._preview_chars), recipients, session=session
                )
            message["summary_pending"] = False
            return message

        unit = asyncio.ensure_future(self._transaction(_append_and_touch))
        try:
            # the caller going away must not split the append from the summary update
            message = await asyncio.shield(unit)
        except asyncio.CancelledError:
            unit.add_done_callback(_log_detached_failure)
            raise
        except Unauthorized:
            if self._hide_existence:
                raise NotFound("Conversation not found") from None
            raise
        logger.info("Message %s sent to conversation %s by %s", message["_id"], conversation_id, sender_id)

        if self._notifier is not None:
            await self._notifier.message_sent(conversation, message)
        await self._resolve_senders([message])
        return message

    async def get_messages(self, user_id: str, conversation_id: str) -> List[Dict[str, Any]]:
        conversation = await self._load_for_participant(user_id, conversation_id, "view")
        await self._reconcile(conversation)

        messages = await self._message_repo.list_by_conversation(conversation_id)
        # only what this reader was handed is marked read
        up_to_seq = max((m["seq"] for m in messages), default=0)
        marked = await self._message_repo.mark_read_for_user(
            conversation_id, user_id, datetime.now(timezone.utc), up_to_seq=up_to_seq
        )
        await self._conversation_repo.reset_unread(conversation_id)
        logger.info("Conversation %s read by %s, %d messages marked", conversation_id, user_id, marked)

        await self._resolve_senders(messages)
        return messages

    async def list_conversations(self, user_id: str) -> List[Dict[str, Any]]:
        conversations = await self._conversation_repo.list_for_participant(user_id)
        conversations = [await self._reconcile(c, lagging_only=True) for c in conversations]
        conversations.sort(key=lambda c: (c["updated_at"], c["_id"]), reverse=True)
        await self._resolve_participants(conversations)
        return conversations
