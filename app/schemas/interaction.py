from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from app.models.interaction import InteractionAction


class InteractionCreate(BaseModel):
    target_id: str = Field(min_length=1, max_length=128)
    action: InteractionAction


class InteractionResponse(BaseModel):
    owner_id: str
    target_id: str
    action: InteractionAction
    created_at: datetime

    model_config = {"from_attributes": True}


class ReceivedLikeItem(BaseModel):
    from_user_id: str
    timestamp: Optional[str] = None
