import asyncio
import contextlib
import logging

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect

from clinic_messaging.utils.dependencies import identity_from_token
from clinic_messaging.utils.realtime_bus import get_bus, user_channel
from clinic_messaging.utils.websocket_manager import manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/messages", tags=["chat"])


@router.websocket("/ws")
async def message_events(websocket: WebSocket):
    """Push ``message`` events of the caller's conversations.

    The bearer token is passed as ``?token=``; the socket is receive-only
    apart from ``ping``.
    """
    token = websocket.query_params.get("token")
    if not token:
        await websocket.close(code=4401)
        return
    try:
        user_id = identity_from_token(token)["_id"]
    except HTTPException:
        await websocket.close(code=4401)
        return

    await manager.connect(user_id, websocket)
    bus = await get_bus()
    subscriber = None
    sub_task = None
    if bus.enabled:
        subscriber = await bus.subscribe(user_channel(user_id), websocket.send_text)
        sub_task = asyncio.create_task(subscriber.run())
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug("Websocket closed for %s", user_id)
    finally:
        manager.disconnect(user_id, websocket)
        if sub_task is not None:
            sub_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sub_task
        if subscriber is not None:
            await subscriber.cancel()
