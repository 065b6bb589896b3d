import logging
from typing import Dict, Iterable, Set

from fastapi import WebSocket, WebSocketDisconnect

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Websockets held by this process, grouped by the authenticated user."""

    def __init__(self) -> None:
        self._sockets: Dict[str, Set[WebSocket]] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        await websocket.accept()
        self._sockets.setdefault(user_id, set()).add(websocket)
        logger.debug("Websocket opened for %s (%d open)", user_id, len(self._sockets[user_id]))

    def disconnect(self, user_id: str, websocket: WebSocket) -> None:
        sockets = self._sockets.get(user_id)
        if sockets is None:
            return
        sockets.discard(websocket)
        if not sockets:
            del self._sockets[user_id]

    def is_connected(self, user_id: str) -> bool:
        return user_id in self._sockets

    async def send_to_users(self, user_ids: Iterable[str], event: str) -> int:
        """Send ``event`` to every open socket of ``user_ids``; returns deliveries.

        A socket that fails to accept the event is dropped.
        """
        delivered = 0
        for user_id in user_ids:
            for websocket in list(self._sockets.get(user_id, ())):
                try:
                    await websocket.send_text(event)
                except (RuntimeError, WebSocketDisconnect):
                    logger.info("Dropping dead websocket of %s", user_id)
                    self.disconnect(user_id, websocket)
                else:
                    delivered += 1
        return delivered


manager = ConnectionManager()
