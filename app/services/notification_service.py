"""
Matchgraph — Notification fan-out

Builds "like received" and "match" push payloads from already-stored data
and hands them to the push transport.  Delivery is best-effort: nothing in
here raises, so a push failure can never roll back or block the
interaction / match writes that precede it.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import get_settings
from app.models.user import User
from app.schemas.notification import NotificationKind, NotificationPayload
from app.utils.push import send_push_notification

logger = structlog.get_logger("matchgraph.notification_service")

PushSender = Callable[[str, NotificationKind, NotificationPayload], Optional[str]]

_FALLBACK_NAME = "Someone"


def build_like_payload(
    actor_id: str,
    image_url: str | None,
    app_name: str,
) -> NotificationPayload:
    return NotificationPayload(
        title="Someone likes you! 💙",
        body=f"Someone just liked your profile. Open {app_name} to find out who!",
        image_url=image_url,
        data={"type": "like_received", "fromUserId": actor_id},
    )


def build_match_payload(
    matched_user_id: str,
    matched_user_name: str | None,
) -> NotificationPayload:
    name = matched_user_name or _FALLBACK_NAME
    return NotificationPayload(
        title="It's a Match! 💙",
        body=f"You and {name} like each other! Start chatting now.",
        data={"type": "match", "matchedUserId": matched_user_id},
    )


class NotificationService:
    """Push notifications for new likes and new matches.

    ``sender`` is the blocking transport call; it runs in a worker thread.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        sender: PushSender | None = None,
        app_name: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._sender = sender or send_push_notification
        self.app_name = app_name or get_settings().APP_NAME

    # ── Lookups ───────────────────────────────────────────────────────────

    async def _load_users(self, *user_ids: str) -> dict[str, User]:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.id.in_(user_ids)))
            return {user.id: user for user in result.scalars().all()}

    async def resolve_obfuscated_media(self, user_id: str) -> str | None:
        """Return the obfuscated preview of ``user_id``'s primary photo.

        The mapping is maintained by the image pipeline; a missing user,
        photo or preview simply yields None.
        """
        try:
            users = await self._load_users(user_id)
        except Exception:
            logger.warning("obfuscated_media_lookup_failed", user_id=user_id, exc_info=True)
            return None

        user = users.get(user_id)
        if user is None or user.primary_photo is None:
            return None
        return (user.blurred_photos or {}).get(user.primary_photo)

    # ── Delivery ──────────────────────────────────────────────────────────

    async def _deliver(
        self,
        user: User | None,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> bool:
        if user is None or not user.push_token:
            logger.info(
                "push_token_missing",
                user_id=user.id if user else None,
                kind=kind.value,
            )
            return False
        try:
            message_id = await asyncio.to_thread(
                self._sender, user.push_token, kind, payload
            )
        except Exception:
            logger.warning("push_delivery_failed", user_id=user.id, kind=kind.value, exc_info=True)
            return False
        return message_id is not None

    async def notify(
        self,
        target_id: str,
        kind: NotificationKind,
        payload: NotificationPayload,
    ) -> bool:
        """Send ``payload`` to ``target_id``'s device; True if it was sent."""
        try:
            users = await self._load_users(target_id)
        except Exception:
            logger.warning("push_target_lookup_failed", user_id=target_id, exc_info=True)
            return False
        return await self._deliver(users.get(target_id), kind, payload)

    async def notify_like(self, target_id: str, actor_id: str) -> bool:
        image_url = await self.resolve_obfuscated_media(actor_id)
        payload = build_like_payload(actor_id, image_url, self.app_name)
        sent = await self.notify(target_id, NotificationKind.LIKE, payload)
        logger.info(
            "like_notification",
            target_id=target_id,
            actor_id=actor_id,
            sent=sent,
            has_preview=image_url is not None,
        )
        return sent

    async def notify_match(self, user_a_id: str, user_b_id: str) -> int:
        """Notify both participants; return how many were sent."""
        try:
            users = await self._load_users(user_a_id, user_b_id)
        except Exception:
            logger.warning("match_notification_lookup_failed", exc_info=True)
            return 0

        sent = 0
        for recipient_id, other_id in ((user_a_id, user_b_id), (user_b_id, user_a_id)):
            other = users.get(other_id)
            payload = build_match_payload(other_id, other.display_name if other else None)
            if await self._deliver(users.get(recipient_id), NotificationKind.MATCH, payload):
                sent += 1
        logger.info("match_notifications", user_a_id=user_a_id, user_b_id=user_b_id, sent=sent)
        return sent
