"""
Matchgraph — Interaction store & match detection

Handles the ``InteractionCreated`` trigger:

  1. A ``pass`` is terminal; it is recorded only so the pair is not offered
     again.
  2. A ``like`` adds the actor to the target's received-likes mirror
     (set-union under a row lock).
  3. If the reciprocal interaction is not a ``like``, the target gets a
     "like received" notification and processing ends.
  4. Otherwise the pair is promoted to a match: the match row is upserted
     under its canonical key, the mirror entry is retracted on both sides,
     and both users are notified.

The trigger is delivered at least once and the a→b / b→a triggers may run
concurrently in any order.  Every step is therefore an idempotent repair of
current state: the match key is canonical, the match insert is
insert-if-absent, and the mirror writes are set operations.  Failures are
logged and swallowed; a redelivery converges on the same end state.
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import dialect_insert
from app.models.interaction import Interaction, InteractionAction
from app.models.match import Match, canonical_match_key
from app.models.user import User
from app.schemas.events import InteractionCreatedEvent
from app.services.notification_service import NotificationService
from app.services.received_likes import (
    ReceivedLikes,
    append_received_like,
    retract_received_like,
)

logger = structlog.get_logger("matchgraph.interaction_service")


class InteractionOutcome(str, enum.Enum):
    PASS_RECORDED = "pass_recorded"
    LIKE_RECORDED = "like_recorded"
    MATCHED = "matched"
    IGNORED = "ignored"
    FAILED = "failed"


class InteractionConflictError(Exception):
    """An interaction for this ordered pair already exists."""


class InteractionService:
    """Records interactions and turns mutual likes into matches."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        notification_service: NotificationService | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.notifications = notification_service or NotificationService(session_factory)

    # ── Client path ───────────────────────────────────────────────────────

    async def record_interaction(
        self,
        actor_id: str,
        target_id: str,
        action: InteractionAction,
        created_at: datetime | None = None,
    ) -> Interaction:
        """Store ``actor_id``'s decision about ``target_id``.

        Raises
        ------
        ValueError
            If the actor and target are the same account.
        LookupError
            If either account does not exist.
        InteractionConflictError
            If a decision for this ordered pair was already recorded.
        """
        if actor_id == target_id:
            raise ValueError("Users cannot interact with themselves.")

        interaction = Interaction(
            owner_id=actor_id,
            target_id=target_id,
            action=InteractionAction(action).value,
            created_at=created_at or datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            missing = await self._lock_users(session, actor_id, target_id)
            if missing:
                raise LookupError(f"Unknown user(s): {', '.join(sorted(missing))}")

            session.add(interaction)
            try:
                await session.flush()
                # Without row locks (SQLite) a delete can commit between the
                # check and the insert.
                missing = await self._lock_users(session, actor_id, target_id)
                if missing:
                    await session.rollback()
                    raise LookupError(f"Unknown user(s): {', '.join(sorted(missing))}")
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise InteractionConflictError(
                    f"{actor_id} already decided on {target_id}."
                ) from exc

        logger.info(
            "interaction_recorded",
            actor_id=actor_id,
            target_id=target_id,
            action=interaction.action,
        )
        return interaction

    # ── Trigger ───────────────────────────────────────────────────────────

    async def handle_interaction_created(
        self, event: InteractionCreatedEvent
    ) -> InteractionOutcome:
        """Process one (possibly redelivered) ``InteractionCreated`` event."""
        actor_id, target_id = event.actor_id, event.target_id
        log = logger.bind(actor_id=actor_id, target_id=target_id)

        if event.action != InteractionAction.LIKE:
            log.info("interaction_pass_skipped")
            return InteractionOutcome.PASS_RECORDED

        liked_at = event.created_at or datetime.now(timezone.utc)

        try:
            if not await self._mirror_like(actor_id, target_id, liked_at):
                log.info("interaction_user_missing")
                return InteractionOutcome.IGNORED

            if not await self._reciprocal_is_like(actor_id, target_id):
                await self.notifications.notify_like(target_id, actor_id)
                log.info("like_recorded")
                return InteractionOutcome.LIKE_RECORDED

            match_id = await self._promote_to_match(actor_id, target_id)
            if match_id is None:
                log.info("interaction_user_missing")
                return InteractionOutcome.IGNORED
        except Exception:
            log.exception("interaction_processing_failed")
            return InteractionOutcome.FAILED

        await self.notifications.notify_match(actor_id, target_id)
        log.info("match_transition_complete", match_id=match_id)
        return InteractionOutcome.MATCHED

    async def _mirror_like(
        self, actor_id: str, target_id: str, liked_at: datetime
    ) -> bool:
        """Add the actor to the target's mirror.

        Returns False, writing nothing, when either account no longer exists;
        the deletion cascade owns whatever state is left for it.
        """
        async with self._session_factory() as session:
            if await self._lock_users(session, actor_id, target_id, write_id=target_id):
                return False
            await append_received_like(session, target_id, actor_id, liked_at)
            # Re-checked after the write for backends without row locks.
            if await self._lock_users(session, actor_id, target_id, write_id=target_id):
                await session.rollback()
                return False
            await session.commit()
        return True

    async def _lock_users(
        self,
        session: AsyncSession,
        actor_id: str,
        target_id: str,
        write_id: str | None = None,
    ) -> set[str]:
        """Lock both user rows until the transaction ends; return the ids that
        no longer exist.

        ``write_id`` is locked FOR UPDATE and the other row FOR SHARE, always
        in id order, so a concurrent delete of either account waits for this
        transaction and the cascade that follows it sees its writes.
        """
        missing = set()
        for user_id in sorted({actor_id, target_id}):
            stmt = (
                select(User.id)
                .where(User.id == user_id)
                .with_for_update(read=user_id != write_id)
            )
            if (await session.execute(stmt)).scalar_one_or_none() is None:
                missing.add(user_id)
        return missing

    async def _reciprocal_is_like(self, actor_id: str, target_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Interaction.action).where(
                    Interaction.owner_id == target_id,
                    Interaction.target_id == actor_id,
                )
            )
            return result.scalar_one_or_none() == InteractionAction.LIKE.value

    async def _promote_to_match(self, actor_id: str, target_id: str) -> str | None:
        """Upsert the match and retract both mirror entries.

        Returns None, creating nothing, if either account has been deleted.
        """
        match_id = canonical_match_key(actor_id, target_id)
        user_a_id, user_b_id = sorted((actor_id, target_id))

        async with self._session_factory() as session:
            if await self._lock_users(session, actor_id, target_id):
                return None
            stmt = (
                dialect_insert(session, Match)
                .values(
                    id=match_id,
                    user_a_id=user_a_id,
                    user_b_id=user_b_id,
                    created_at=datetime.now(timezone.utc),
                    last_message=None,
                    last_message_at=None,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )
            await session.execute(stmt)
            if await self._lock_users(session, actor_id, target_id):
                await session.rollback()
                return None
            await session.commit()
        logger.info("match_upserted", match_id=match_id)

        async with self._session_factory() as session:
            await retract_received_like(session, actor_id, target_id)
            await retract_received_like(session, target_id, actor_id)
            await session.commit()
        return match_id

    # ── Reads ─────────────────────────────────────────────────────────────

    async def list_received_likes(self, user_id: str) -> list[dict] | None:
        """Return ``user_id``'s mirror entries, or None for an unknown user."""
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(User.received_likes).where(User.id == user_id)
                )
            ).one_or_none()
        if row is None:
            return None
        return ReceivedLikes(row[0]).to_column()

    async def list_matches(
        self, user_id: str, limit: int | None = None, offset: int = 0
    ) -> list[Match]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Match)
                .where(or_(Match.user_a_id == user_id, Match.user_b_id == user_id))
                .order_by(Match.created_at.desc(), Match.id)
                .limit(limit)
                .offset(offset)
            )
            return list(result.scalars().all())
