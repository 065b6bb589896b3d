from typing import Optional

from pydantic import BaseModel


class ParticipantOut(BaseModel):

    id: str
    name: Optional[str] = None
    email: Optional[str] = None
