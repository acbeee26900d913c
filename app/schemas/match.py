from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class MatchListItem(BaseModel):
    match_id: str
    other_user_id: str
    created_at: datetime
    last_message: Optional[str] = None
    last_message_at: Optional[datetime] = None
