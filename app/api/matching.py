"""
Matchgraph — Matching API

Read access to the matches a user takes part in.
"""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends, Query

from app.api.deps import get_interaction_service
from app.schemas.match import MatchListItem
from app.services.interaction_service import InteractionService

logger = structlog.get_logger("matchgraph.api.matching")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# GET /user/{user_id} — List all matches for a user
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/user/{user_id}",
    response_model=list[MatchListItem],
    summary="List all matches for a user",
)
async def list_user_matches(
    user_id: str,
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    service: InteractionService = Depends(get_interaction_service),
) -> list[MatchListItem]:
    """Return the user's matches, newest first.  Each item names the other
    participant."""
    log = logger.bind(user_id=user_id)
    log.info("list_user_matches", limit=limit, offset=offset)

    matches = await service.list_matches(user_id, limit=limit, offset=offset)
    items = [
        MatchListItem(
            match_id=m.id,
            other_user_id=m.other_user(user_id),
            created_at=m.created_at,
            last_message=m.last_message,
            last_message_at=m.last_message_at,
        )
        for m in matches
    ]

    log.info("list_user_matches_complete", count=len(items))
    return items
