import logging
from typing import Awaitable, Callable, Optional, TypeVar

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import AutoReconnect, ConnectionFailure, NetworkTimeout, PyMongoError
from tenacity import before_sleep_log, retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from clinic_messaging.core.config import get_settings
from clinic_messaging.core.errors import ConcurrencyConflict, NotFound

logger = logging.getLogger(__name__)

T = TypeVar("T")

_client: Optional[AsyncIOMotorClient] = None


# Idempotent reads get exactly one more attempt on transient driver errors.
retry_read = retry(
    retry=retry_if_exception_type((AutoReconnect, NetworkTimeout, ConnectionFailure)),
    stop=stop_after_attempt(2),
    wait=wait_fixed(0.1),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


async def connect_to_mongo() -> None:
    global _client
    settings = get_settings()
    _client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
    logger.info("Connected to MongoDB database %s", settings.mongo_db_name)


async def close_mongo_connection() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("Closed MongoDB connection")


def get_database() -> AsyncIOMotorDatabase:
    if _client is None:
        raise RuntimeError("MongoDB client is not initialised; call connect_to_mongo() first")
    return _client[get_settings().mongo_db_name]


def to_object_id(value, what: str = "Conversation") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    if not isinstance(value, str) or not ObjectId.is_valid(value):
        raise NotFound(f"{what} not found")
    return ObjectId(value)


async def run_in_transaction(callback: Callable[[object], Awaitable[T]]) -> T:
    """Run ``callback(session)`` as one MongoDB transaction when enabled.

    The driver retries transient transaction errors itself; what is still
    failing afterwards is reported as ``ConcurrencyConflict``. Without
    transactions the callback receives ``None``.
    """
    if not get_settings().mongo_transactions or _client is None:
        return await callback(None)
    async with await _client.start_session() as session:
        try:
            return await session.with_transaction(callback)
        except PyMongoError as exc:
            if exc.has_error_label("TransientTransactionError") or exc.has_error_label(
                "UnknownTransactionCommitResult"
            ):
                raise ConcurrencyConflict("Conversation is busy, transaction could not commit") from exc
            raise
