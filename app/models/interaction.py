"""
Matchgraph — Interaction model.

One row per ordered (owner, target) pair.  The composite primary key is
what keeps a second decision for the same pair from being stored.
"""

import enum
from datetime import datetime

from sqlalchemy import DateTime, Index, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class InteractionAction(str, enum.Enum):
    LIKE = "like"
    PASS = "pass"


class Interaction(Base):
    __tablename__ = "interactions"
    __table_args__ = (
        Index("ix_interactions_target_id", "target_id"),
    )

    owner_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    target_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    action: Mapped[str] = mapped_column(
        String(16), nullable=False, comment="like / pass"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def is_like(self) -> bool:
        return self.action == InteractionAction.LIKE.value

    def __repr__(self) -> str:
        return f"<Interaction {self.owner_id} -> {self.target_id} action={self.action!r}>"
