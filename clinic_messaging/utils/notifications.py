"""Side effects fired after a message has been durably accepted.

Nothing raised here reaches the caller; failures are logged and dropped.
"""

import json
import logging
from typing import Optional

from clinic_messaging.utils.realtime_bus import get_bus
from clinic_messaging.utils.websocket_manager import ConnectionManager, manager

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("clinic_messaging.audit")


class Notifier:

    def __init__(self, connections: Optional[ConnectionManager] = None) -> None:
        self._connections = connections or manager

    async def message_sent(self, conversation: dict, message: dict) -> None:
        audit_logger.info(
            "message.sent conversation=%s message=%s sender=%s",
            conversation["_id"],
            message["_id"],
            message["sender_id"],
        )
        payload = json.dumps(
            {
                "type": "message",
                "conversationId": conversation["_id"],
                "messageId": message["_id"],
                "from": message["sender_id"],
                "content": message["content"],
                "createdAt": message["created_at"].isoformat(),
            }
        )
        recipients = sorted(set(conversation["participants"]) - {message["sender_id"]})
        try:
            bus = await get_bus()
            if bus.enabled:
                await bus.publish_to_users(recipients, payload)
            else:
                await self._connections.send_to_users(recipients, payload)
        except Exception:
            logger.warning("Realtime fan-out failed for message %s", message["_id"], exc_info=True)

    async def conversation_created(self, conversation: dict, creator_id: str) -> None:
        audit_logger.info(
            "conversation.created conversation=%s creator=%s participants=%d",
            conversation["_id"],
            creator_id,
            len(conversation["participants"]),
        )
