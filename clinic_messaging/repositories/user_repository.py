from typing import Dict, Iterable

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from clinic_messaging.database.connection import retry_read
from clinic_messaging.models.user import unknown_user


class UserRepository:
    """Read-only view of the identity provider's user records."""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self._collection = db.get_collection("users")

    @retry_read
    async def get_users_by_ids(self, user_ids: Iterable[str]) -> Dict[str, dict]:
        ids = set(user_ids)
        oids = [ObjectId(uid) for uid in ids if ObjectId.is_valid(uid)]
        found: Dict[str, dict] = {uid: unknown_user(uid) for uid in ids}
        if not oids:
            return found
        cursor = self._collection.find({"_id": {"$in": oids}}, projection={"name": True, "email": True})
        async for user in cursor:
            uid = str(user["_id"])
            found[uid] = {"id": uid, "name": user.get("name"), "email": user.get("email")}
        return found
