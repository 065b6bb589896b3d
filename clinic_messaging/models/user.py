from typing import Optional, TypedDict


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    name: Optional[str]
    role: Optional[str]


def unknown_user(user_id: str) -> dict:
    return {"id": user_id, "name": None, "email": None}
