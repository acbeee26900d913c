from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, model_validator
from pydantic.alias_generators import to_camel

from app.models.interaction import InteractionAction


class _Event(BaseModel):
    """Events arrive camelCased from the host event system; snake_case is
    accepted as well."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InteractionCreatedEvent(_Event):
    actor_id: str
    target_id: str
    action: InteractionAction
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _distinct_users(self) -> "InteractionCreatedEvent":
        if self.actor_id == self.target_id:
            raise ValueError("actor_id and target_id must differ")
        return self


class UserDeletedEvent(_Event):
    user_id: str


class InteractionEventResponse(BaseModel):
    outcome: str
