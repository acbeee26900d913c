"""
Matchgraph — Match model.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


def canonical_match_key(user_id: str, other_id: str) -> str:
    """Return the order-independent key for the pair ``{user_id, other_id}``."""
    first, second = sorted((user_id, other_id))
    return f"{first}_{second}"


class Match(Base):
    __tablename__ = "matches"

    id: Mapped[str] = mapped_column(
        String(257), primary_key=True, comment="canonical_match_key(user_a, user_b)"
    )
    user_a_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    user_b_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    # Owned by the messaging subsystem.
    last_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_message_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    @property
    def users(self) -> list[str]:
        return [self.user_a_id, self.user_b_id]

    def other_user(self, user_id: str) -> str:
        return self.user_b_id if user_id == self.user_a_id else self.user_a_id

    def __repr__(self) -> str:
        return f"<Match {self.user_a_id} <-> {self.user_b_id}>"
