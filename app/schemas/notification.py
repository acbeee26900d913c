from enum import Enum
from typing import Optional

from pydantic import BaseModel


class NotificationKind(str, Enum):
    LIKE = "like"
    MATCH = "match"


class NotificationPayload(BaseModel):
    title: str
    body: str
    image_url: Optional[str] = None
    data: dict[str, str]  # routing metadata: type + correlated user id
