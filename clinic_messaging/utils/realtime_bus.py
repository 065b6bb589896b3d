"""Cross-process delivery of conversation events over Redis pub/sub.

Each user has one channel; every API worker subscribes the channels of the
websockets it holds. Without ``REDIS_URL`` a no-op bus is used and events
only reach sockets of the current process.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable

import redis.asyncio as redis

from clinic_messaging.core.config import get_settings

logger = logging.getLogger(__name__)

EventHandler = Callable[[str], Awaitable[None]]


def user_channel(user_id: str) -> str:
    return f"user:{user_id}"


class _IdleSubscription:

    async def run(self) -> None:
        await asyncio.Future()

    async def cancel(self) -> None:
        return


class _RedisSubscription:

    def __init__(self, pubsub, channel: str, on_event: EventHandler) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._on_event = on_event
        self._running = True

    async def run(self) -> None:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except redis.ConnectionError:
                logger.warning("Lost Redis subscription on %s, retrying", self._channel, exc_info=True)
                await asyncio.sleep(0.5)
                continue
            if not msg or msg.get("type") != "message":
                continue
            data = msg.get("data")
            await self._on_event(data.decode("utf-8") if isinstance(data, bytes) else data)

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
        finally:
            await self._pubsub.aclose()


class NoopBus:

    enabled = False

    async def publish(self, channel: str, event: str) -> None:
        return

    async def publish_to_users(self, user_ids: Iterable[str], event: str) -> None:
        return

    async def subscribe(self, channel: str, on_event: EventHandler) -> _IdleSubscription:
        return _IdleSubscription()

    async def close(self) -> None:
        return


class RedisBus:

    enabled = True

    def __init__(self, url: str) -> None:
        self._redis = redis.from_url(url)

    async def publish(self, channel: str, event: str) -> None:
        await self._redis.publish(channel, event)

    async def publish_to_users(self, user_ids: Iterable[str], event: str) -> None:
        async with self._redis.pipeline(transaction=False) as pipe:
            for user_id in user_ids:
                pipe.publish(user_channel(user_id), event)
            await pipe.execute()

    async def subscribe(self, channel: str, on_event: EventHandler) -> _RedisSubscription:
        pubsub = self._redis.pubsub()
        await pubsub.subscribe(channel)
        return _RedisSubscription(pubsub, channel, on_event)

    async def close(self) -> None:
        await self._redis.aclose()


_bus = None


async def get_bus():
    global _bus
    if _bus is None:
        url = get_settings().redis_url
        _bus = RedisBus(url) if url else NoopBus()
    return _bus


async def close_bus() -> None:
    global _bus
    if _bus is not None:
        await _bus.close()
        _bus = None
