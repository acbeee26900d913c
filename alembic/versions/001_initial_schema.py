"""Initial schema — users, interactions, matches, reconciliation checkpoints.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.String(128), primary_key=True),
        sa.Column("display_name", sa.String, nullable=True),
        sa.Column(
            "push_token",
            sa.String,
            nullable=True,
            comment="FCM registration token",
        ),
        sa.Column(
            "photos",
            postgresql.JSONB,
            nullable=True,
            comment="Ordered media URLs, first is primary",
        ),
        sa.Column(
            "blurred_photos",
            postgresql.JSONB,
            nullable=True,
            comment="Original media URL -> obfuscated preview URL",
        ),
        sa.Column(
            "received_likes",
            postgresql.JSONB,
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
            comment="Array of {fromUserId, timestamp}",
        ),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    )

    # ── 2. interactions (owner -> target decisions) ─────────────────
    op.create_table(
        "interactions",
        sa.Column("owner_id", sa.String(128), primary_key=True),
        sa.Column("target_id", sa.String(128), primary_key=True),
        sa.Column("action", sa.String(16), nullable=False, comment="like / pass"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )
    op.create_index("ix_interactions_target_id", "interactions", ["target_id"])

    # ── 3. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column(
            "id",
            sa.String(257),
            primary_key=True,
            comment="canonical_match_key(user_a, user_b)",
        ),
        sa.Column("user_a_id", sa.String(128), nullable=False),
        sa.Column("user_b_id", sa.String(128), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("last_message", sa.Text, nullable=True),
        sa.Column("last_message_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_matches_user_a_id", "matches", ["user_a_id"])
    op.create_index("ix_matches_user_b_id", "matches", ["user_b_id"])

    # ── 4. reconciliation_checkpoints ───────────────────────────────
    op.create_table(
        "reconciliation_checkpoints",
        sa.Column("deleted_user_id", sa.String(128), primary_key=True),
        sa.Column("step", sa.String(32), primary_key=True),
        sa.Column("last_seen_key", sa.String(257), nullable=True),
        sa.Column(
            "pages_processed", sa.Integer, server_default="0", nullable=False
        ),
        sa.Column("writes", sa.Integer, server_default="0", nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("reconciliation_checkpoints")

    op.drop_index("ix_matches_user_b_id", table_name="matches")
    op.drop_index("ix_matches_user_a_id", table_name="matches")
    op.drop_table("matches")

    op.drop_index("ix_interactions_target_id", table_name="interactions")
    op.drop_table("interactions")

    op.drop_table("users")
