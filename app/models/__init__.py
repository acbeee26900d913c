"""
Matchgraph — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from app.models.user import User
from app.models.interaction import Interaction, InteractionAction
from app.models.match import Match, canonical_match_key
from app.models.reconciliation import ReconciliationCheckpoint

__all__ = [
    "User",
    "Interaction",
    "InteractionAction",
    "Match",
    "canonical_match_key",
    "ReconciliationCheckpoint",
]
