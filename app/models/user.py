"""
Matchgraph — User model.
"""

from datetime import datetime

from sqlalchemy import DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONDocument


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    push_token: Mapped[str | None] = mapped_column(
        String, nullable=True, comment="FCM registration token"
    )
    photos: Mapped[list | None] = mapped_column(
        JSONDocument, nullable=True, comment="Ordered media URLs, first is primary"
    )
    blurred_photos: Mapped[dict | None] = mapped_column(
        JSONDocument,
        nullable=True,
        comment="Original media URL -> obfuscated preview URL",
    )
    received_likes: Mapped[list] = mapped_column(
        JSONDocument,
        nullable=False,
        default=list,
        comment="Array of {fromUserId, timestamp}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=func.now(), nullable=True
    )

    @property
    def primary_photo(self) -> str | None:
        return self.photos[0] if self.photos else None

    def __repr__(self) -> str:
        return f"<User {self.id!r} likes={len(self.received_likes or [])}>"
