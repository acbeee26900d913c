"""
Matchgraph — Deletion-cascade checkpoint model.

One row per (deleted account, cascade step).  ``last_seen_key`` is the
keyset cursor of paginated steps; ``completed_at`` is set once the step has
walked to the end.
"""

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class ReconciliationCheckpoint(Base):
    __tablename__ = "reconciliation_checkpoints"

    deleted_user_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    step: Mapped[str] = mapped_column(String(32), primary_key=True)
    last_seen_key: Mapped[str | None] = mapped_column(String(257), nullable=True)
    pages_processed: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    writes: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None

    def __repr__(self) -> str:
        return (
            f"<ReconciliationCheckpoint {self.deleted_user_id} {self.step} "
            f"cursor={self.last_seen_key!r} done={self.is_complete}>"
        )
