"""
Matchgraph — Service dependencies

Process-wide service singletons exposed as FastAPI dependencies so routes
(and tests, through ``app.dependency_overrides``) share one construction
point.
"""

from __future__ import annotations

from app.database import get_session_factory
from app.services.interaction_service import InteractionService
from app.services.notification_service import NotificationService
from app.services.reconciliation_service import ReconciliationService

# ── Service singletons ────────────────────────────────────────────────────────

_notification_service: NotificationService | None = None
_interaction_service: InteractionService | None = None
_reconciliation_service: ReconciliationService | None = None


def get_notification_service() -> NotificationService:
    global _notification_service
    if _notification_service is None:
        _notification_service = NotificationService(get_session_factory())
    return _notification_service


def get_interaction_service() -> InteractionService:
    global _interaction_service
    if _interaction_service is None:
        _interaction_service = InteractionService(
            get_session_factory(), get_notification_service()
        )
    return _interaction_service


def get_reconciliation_service() -> ReconciliationService:
    global _reconciliation_service
    if _reconciliation_service is None:
        _reconciliation_service = ReconciliationService(get_session_factory())
    return _reconciliation_service
