"""
Matchgraph — Received-likes mirror

``users.received_likes`` is a denormalised reverse index: one
``{"fromUserId": ..., "timestamp": ...}`` entry per account that has liked
the owner and is not (yet) matched with them.  It exists so that "who likes
me" is a single-row read instead of a scan over every interaction.

The column is a plain JSON array, so the database does not enforce
uniqueness.  :class:`ReceivedLikes` treats it as a set keyed by
``fromUserId`` and every write to the column goes through it:

* appends are a set-union (a repeated like leaves the array unchanged);
* retractions filter by ``fromUserId`` and rewrite the array, never by
  position;
* duplicates already present in stored data collapse to the first entry on
  the next write.

Writers lock the row (``SELECT ... FOR UPDATE``) for the read-modify-write so
concurrent appends from different actors never overwrite each other.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User

logger = structlog.get_logger("matchgraph.received_likes")


class ReceivedLikes:
    """Insertion-ordered set of received-like entries keyed by ``fromUserId``."""

    def __init__(self, entries: list[dict[str, Any]] | None = None) -> None:
        self._entries: dict[str, dict[str, Any]] = {}
        for entry in entries or []:
            if not isinstance(entry, dict):
                continue
            from_user_id = entry.get("fromUserId")
            if from_user_id and from_user_id not in self._entries:
                self._entries[from_user_id] = entry

    def __contains__(self, from_user_id: object) -> bool:
        return from_user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self._entries)

    def add(self, from_user_id: str, timestamp: datetime | str) -> bool:
        """Add an entry for ``from_user_id``; return False if one exists."""
        if from_user_id in self._entries:
            return False
        if isinstance(timestamp, datetime):
            timestamp = timestamp.isoformat()
        self._entries[from_user_id] = {
            "fromUserId": from_user_id,
            "timestamp": timestamp,
        }
        return True

    def discard(self, from_user_id: str) -> bool:
        """Remove the entry for ``from_user_id``; return False if absent."""
        return self._entries.pop(from_user_id, None) is not None

    def to_column(self) -> list[dict[str, Any]]:
        return list(self._entries.values())


# ── Row-level helpers ─────────────────────────────────────────────────────────

async def _lock_received_likes(
    session: AsyncSession, user_id: str
) -> list[dict[str, Any]] | None:
    """Return the user's stored array under a row lock, or None if the
    user does not exist."""
    stmt = (
        select(User.received_likes)
        .where(User.id == user_id)
        .with_for_update()
    )
    row = (await session.execute(stmt)).one_or_none()
    if row is None:
        return None
    return list(row[0] or [])


async def _write_if_changed(
    session: AsyncSession,
    user_id: str,
    stored: list[dict[str, Any]],
    likes: ReceivedLikes,
) -> bool:
    updated = likes.to_column()
    if updated == stored:
        return False
    await session.execute(
        update(User).where(User.id == user_id).values(received_likes=updated)
    )
    return True


async def append_received_like(
    session: AsyncSession,
    user_id: str,
    from_user_id: str,
    timestamp: datetime | str,
) -> bool:
    """Add ``from_user_id`` to ``user_id``'s mirror.

    Returns True when the row was written.  A missing user is a no-op; the
    caller owns the transaction.
    """
    stored = await _lock_received_likes(session, user_id)
    if stored is None:
        logger.info("received_like_target_missing", user_id=user_id)
        return False

    likes = ReceivedLikes(stored)
    likes.add(from_user_id, timestamp)
    return await _write_if_changed(session, user_id, stored, likes)


async def retract_received_like(
    session: AsyncSession,
    user_id: str,
    from_user_id: str,
) -> bool:
    """Filter every ``from_user_id`` entry out of ``user_id``'s mirror.

    Returns True when the row was written.  Retracting from a user that no
    longer exists, or an entry that is already gone, is a no-op.
    """
    stored = await _lock_received_likes(session, user_id)
    if stored is None:
        return False

    likes = ReceivedLikes(stored)
    likes.discard(from_user_id)
    return await _write_if_changed(session, user_id, stored, likes)
