"""
Matchgraph — Firebase Cloud Messaging transport.

Maps a :class:`NotificationPayload` onto an FCM message and sends it.  The
Firebase Admin app is initialised lazily; when push is disabled or the
credentials cannot be loaded, sending is a logged no-op.
"""

from __future__ import annotations

from typing import Optional

import firebase_admin
import structlog
from firebase_admin import credentials, exceptions, messaging

from app.config import get_settings
from app.schemas.notification import NotificationKind, NotificationPayload

logger = structlog.get_logger("matchgraph.push")

_ANDROID_CHANNELS = {
    NotificationKind.LIKE: "likes",
    NotificationKind.MATCH: "matches",
}

_app: Optional[firebase_admin.App] = None


def _load_credential():
    path = get_settings().FIREBASE_CREDENTIALS_FILE
    if path:
        return credentials.Certificate(path)
    return credentials.ApplicationDefault()


def get_firebase_app() -> Optional[firebase_admin.App]:
    """Return the Firebase Admin app, initialising it on first use.

    Returns None if push notifications are disabled or initialisation fails,
    so callers can skip sending instead of crashing.
    """
    global _app
    if _app is not None:
        return _app

    settings = get_settings()
    if not settings.PUSH_NOTIFICATIONS_ENABLED:
        return None

    if firebase_admin._apps:
        _app = firebase_admin.get_app()
        return _app

    options = {"projectId": settings.GCP_PROJECT_ID} if settings.GCP_PROJECT_ID else None
    try:
        _app = firebase_admin.initialize_app(_load_credential(), options)
    except (ValueError, OSError) as exc:
        logger.error("firebase_init_failed", error=str(exc))
        return None
    logger.info("firebase_initialised", project=settings.GCP_PROJECT_ID or None)
    return _app


def build_message(
    token: str,
    kind: NotificationKind,
    payload: NotificationPayload,
) -> messaging.Message:
    """Translate a payload into an FCM message for ``token``."""
    image = payload.image_url
    return messaging.Message(
        token=token,
        notification=messaging.Notification(
            title=payload.title,
            body=payload.body,
            image=image,
        ),
        data={**payload.data, "click_action": "FLUTTER_NOTIFICATION_CLICK"},
        android=messaging.AndroidConfig(
            priority="high",
            notification=messaging.AndroidNotification(
                channel_id=_ANDROID_CHANNELS[kind],
                image=image,
            ),
        ),
        apns=messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(badge=1, sound="default"),
            ),
            fcm_options=messaging.APNSFCMOptions(image=image) if image else None,
        ),
    )


def send_push_notification(
    token: str,
    kind: NotificationKind,
    payload: NotificationPayload,
) -> Optional[str]:
    """Send one push notification; blocking.

    Returns the FCM message id, or None when nothing was sent.  Delivery
    errors reported by FCM are logged, not raised.
    """
    app = get_firebase_app()
    if app is None:
        logger.info("push_disabled", kind=kind.value)
        return None

    try:
        message_id = messaging.send(build_message(token, kind, payload), app=app)
    except exceptions.FirebaseError as exc:
        logger.warning(
            "push_send_failed",
            kind=kind.value,
            code=getattr(exc, "code", None),
            error=str(exc),
        )
        return None

    logger.info("push_sent", kind=kind.value, message_id=message_id)
    return message_id
