"""
Matchgraph — Event trigger endpoints

Push-subscription style entry points for the two database triggers.  Both
handlers are idempotent and never raise, so every delivery is acknowledged
with 200; the body reports what happened.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_interaction_service, get_reconciliation_service
from app.schemas.events import (
    InteractionCreatedEvent,
    InteractionEventResponse,
    UserDeletedEvent,
)
from app.schemas.reconciliation import ReconciliationReport
from app.services.interaction_service import InteractionService
from app.services.reconciliation_service import ReconciliationService

logger = structlog.get_logger("matchgraph.api.events")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /interaction-created — Like / match transition
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/interaction-created",
    response_model=InteractionEventResponse,
    summary="Process an InteractionCreated trigger",
)
async def interaction_created(
    event: InteractionCreatedEvent,
    service: InteractionService = Depends(get_interaction_service),
) -> InteractionEventResponse:
    outcome = await service.handle_interaction_created(event)
    return InteractionEventResponse(outcome=outcome.value)


# ──────────────────────────────────────────────────────────────────────────────
# POST /user-deleted — Deletion cascade
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/user-deleted",
    response_model=ReconciliationReport,
    summary="Process a UserDeleted trigger",
)
async def user_deleted(
    event: UserDeletedEvent,
    restart: bool = Query(False, description="Discard saved progress and start over"),
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> ReconciliationReport:
    """Run (or resume) the deletion cascade for ``userId``.

    A report with status ``incomplete`` means the run stopped on its budget
    or on a failed step; redelivering the event continues from the saved
    checkpoints.
    """
    return await service.handle_user_deleted(event.user_id, restart=restart)


@router.post(
    "/reconciliation/resume",
    response_model=list[ReconciliationReport],
    summary="Continue every unfinished deletion cascade",
)
async def resume_reconciliation(
    service: ReconciliationService = Depends(get_reconciliation_service),
) -> list[ReconciliationReport]:
    reports = await service.resume_pending()
    logger.info("reconciliation_resume_complete", runs=len(reports))
    return reports
