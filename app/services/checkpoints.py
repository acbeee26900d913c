"""
Matchgraph — Persisted checkpoints for deletion-cascade steps.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.database import dialect_insert
from app.models.reconciliation import ReconciliationCheckpoint


class CheckpointStore:
    """Checkpoint rows for one deleted account."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        deleted_user_id: str,
    ) -> None:
        self._session_factory = session_factory
        self.deleted_user_id = deleted_user_id

    async def register(self, steps: list[str]) -> None:
        """Create a row for every step that does not have one yet."""
        async with self._session_factory() as session:
            for step in steps:
                stmt = (
                    dialect_insert(session, ReconciliationCheckpoint)
                    .values(
                        deleted_user_id=self.deleted_user_id,
                        step=step,
                        pages_processed=0,
                        writes=0,
                        updated_at=datetime.now(timezone.utc),
                    )
                    .on_conflict_do_nothing(
                        index_elements=["deleted_user_id", "step"]
                    )
                )
                await session.execute(stmt)
            await session.commit()

    async def reset(self) -> None:
        async with self._session_factory() as session:
            await session.execute(
                delete(ReconciliationCheckpoint).where(
                    ReconciliationCheckpoint.deleted_user_id == self.deleted_user_id
                )
            )
            await session.commit()

    async def completed_steps(self) -> set[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(ReconciliationCheckpoint.step).where(
                    ReconciliationCheckpoint.deleted_user_id == self.deleted_user_id,
                    ReconciliationCheckpoint.completed_at.is_not(None),
                )
            )
            return set(result.scalars().all())

    def for_step(self, step: str) -> "StepCheckpoint":
        return StepCheckpoint(self._session_factory, self.deleted_user_id, step)


class StepCheckpoint:
    """Keyset cursor of a single cascade step (a ``SweepCheckpoint``)."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        deleted_user_id: str,
        step: str,
    ) -> None:
        self._session_factory = session_factory
        self.deleted_user_id = deleted_user_id
        self.step = step

    def _where(self):
        return (
            ReconciliationCheckpoint.deleted_user_id == self.deleted_user_id,
            ReconciliationCheckpoint.step == self.step,
        )

    async def load(self) -> tuple[str | None, bool]:
        async with self._session_factory() as session:
            row = (
                await session.execute(
                    select(
                        ReconciliationCheckpoint.last_seen_key,
                        ReconciliationCheckpoint.completed_at,
                    ).where(*self._where())
                )
            ).one_or_none()
        if row is None:
            return None, False
        return row.last_seen_key, row.completed_at is not None

    async def advance(self, last_seen_key: str, writes: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(ReconciliationCheckpoint)
                .where(*self._where())
                .values(
                    last_seen_key=last_seen_key,
                    pages_processed=ReconciliationCheckpoint.pages_processed + 1,
                    writes=ReconciliationCheckpoint.writes + writes,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()

    async def complete(self) -> None:
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            await session.execute(
                update(ReconciliationCheckpoint)
                .where(*self._where())
                .values(completed_at=now, updated_at=now)
            )
            await session.commit()
