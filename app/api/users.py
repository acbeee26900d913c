"""
Matchgraph — Users API

Client-facing endpoints for recording decisions, reading the
received-likes mirror, and deleting an account.  Writes that the host event
system would normally trigger on (interaction created, user deleted) are
followed by the same trigger handler, run as a background task.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Response, status
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_interaction_service, get_reconciliation_service
from app.database import get_db
from app.models.user import User
from app.schemas.events import InteractionCreatedEvent
from app.schemas.interaction import (
    InteractionCreate,
    InteractionResponse,
    ReceivedLikeItem,
)
from app.services.interaction_service import (
    InteractionConflictError,
    InteractionService,
)
from app.services.reconciliation_service import ReconciliationService

logger = structlog.get_logger("matchgraph.api.users")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /{actor_id}/interactions — Record a like or pass
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{actor_id}/interactions",
    response_model=InteractionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a like or pass",
)
async def create_interaction(
    actor_id: str,
    payload: InteractionCreate,
    background_tasks: BackgroundTasks,
    service: InteractionService = Depends(get_interaction_service),
) -> InteractionResponse:
    """Store the actor's decision about ``target_id``.

    A decision is final: a second one for the same pair is rejected with
    409.  The like / match transition runs after the response is sent.
    """
    log = logger.bind(actor_id=actor_id, target_id=payload.target_id)

    try:
        interaction = await service.record_interaction(
            actor_id, payload.target_id, payload.action
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except InteractionConflictError as exc:
        log.warning("create_interaction_conflict")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))

    event = InteractionCreatedEvent(
        actor_id=interaction.owner_id,
        target_id=interaction.target_id,
        action=interaction.action,
        created_at=interaction.created_at,
    )
    background_tasks.add_task(service.handle_interaction_created, event)
    return InteractionResponse.model_validate(interaction)


# ──────────────────────────────────────────────────────────────────────────────
# GET /{user_id}/received-likes — Pending likes mirror
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{user_id}/received-likes",
    response_model=list[ReceivedLikeItem],
    summary="List likes received but not yet reciprocated",
)
async def list_received_likes(
    user_id: str,
    service: InteractionService = Depends(get_interaction_service),
) -> list[ReceivedLikeItem]:
    entries = await service.list_received_likes(user_id)
    if entries is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found.",
        )
    return [
        ReceivedLikeItem(from_user_id=entry["fromUserId"], timestamp=entry.get("timestamp"))
        for entry in entries
    ]


# ──────────────────────────────────────────────────────────────────────────────
# DELETE /{user_id} — Delete an account
# ──────────────────────────────────────────────────────────────────────────────

@router.delete(
    "/{user_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a user and cascade the deletion",
)
async def delete_user(
    user_id: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    reconciler: ReconciliationService = Depends(get_reconciliation_service),
) -> Response:
    """Delete the user row; references elsewhere are cleaned up by the
    deletion cascade in the background."""
    log = logger.bind(user_id=user_id)

    result = await db.execute(delete(User).where(User.id == user_id))
    if result.rowcount == 0:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found.",
        )
    await db.commit()
    log.info("delete_user_complete")

    background_tasks.add_task(reconciler.handle_user_deleted, user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
