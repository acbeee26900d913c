"""Unit tests for keyset sweeps, bounded write batches and sweep budgets."""
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select, update

from app.models.user import User
from app.services.sweep import KeysetSweep, SweepBudget, WriteBatch


def _rename(user_id, name):
    async def op(session):
        await session.execute(update(User).where(User.id == user_id).values(display_name=name))
    return op


async def _seed(make_user, count):
    for i in range(count):
        await make_user(f"u{i:04d}")


class MemoryCheckpoint:
    """In-memory ``SweepCheckpoint``."""

    def __init__(self):
        self.last_key = None
        self.completed = False
        self.advances = []

    async def load(self):
        return self.last_key, self.completed

    async def advance(self, last_seen_key, writes):
        self.last_key = last_seen_key
        self.advances.append((last_seen_key, writes))

    async def complete(self):
        self.completed = True


class TestWriteBatch:

    @pytest.mark.parametrize("limit", [0, -1, 401])
    def test_limit_outside_platform_ceiling_rejected(self, limit):
        with pytest.raises(ValueError):
            WriteBatch(MagicMock(), limit=limit)

    @pytest.mark.asyncio
    async def test_commits_in_chunks_of_at_most_limit(self, session_factory, make_user, fetch):
        await _seed(make_user, 25)
        batch = WriteBatch(session_factory, limit=10)

        for i in range(25):
            await batch.add(_rename(f"u{i:04d}", "renamed"))
            assert batch.pending < 10
        await batch.flush()

        assert batch.writes == 25
        assert batch.commits == 3
        assert (await fetch.user("u0024")).display_name == "renamed"

    @pytest.mark.asyncio
    async def test_failed_op_rolls_back_its_batch_only(self, session_factory, make_user, fetch):
        await _seed(make_user, 2)

        async def boom(session):
            raise RuntimeError("write rejected")

        batch = WriteBatch(session_factory, limit=5)
        await batch.add(_rename("u0000", "first"))
        await batch.flush()
        await batch.add(_rename("u0001", "second"))
        await batch.add(boom)
        with pytest.raises(RuntimeError):
            await batch.flush()

        assert (await fetch.user("u0000")).display_name == "first"
        assert (await fetch.user("u0001")).display_name == "U0001"


class TestSweepBudget:

    def test_unlimited_by_default(self):
        budget = SweepBudget.from_limits(0, 0)
        for _ in range(1000):
            budget.consume()
        assert not budget.exhausted()

    def test_page_limit(self):
        budget = SweepBudget.from_limits(2, None)
        budget.consume()
        assert not budget.exhausted()
        budget.consume()
        assert budget.exhausted()

    def test_deadline_in_the_past_is_exhausted(self):
        assert SweepBudget(deadline=0.0).exhausted()


class TestKeysetSweep:

    @pytest.mark.asyncio
    async def test_visits_every_row_once_in_key_order(self, session_factory, make_user):
        await _seed(make_user, 23)
        seen = []

        async def handle(rows, batch):
            seen.extend(row.id for row in rows)

        sweep = KeysetSweep(session_factory, select(User.id), User.id, page_size=5)
        result = await sweep.run(handle)

        assert seen == [f"u{i:04d}" for i in range(23)]
        assert result.pages == 5
        assert result.rows == 23
        assert result.completed

    @pytest.mark.asyncio
    async def test_empty_table_completes(self, session_factory):
        async def handle(rows, batch):
            raise AssertionError("no pages expected")

        result = await KeysetSweep(session_factory, select(User.id), User.id).run(handle)
        assert result.completed
        assert result.pages == 0

    @pytest.mark.asyncio
    async def test_batches_flushed_per_page(self, session_factory, make_user, fetch):
        await _seed(make_user, 12)

        async def handle(rows, batch):
            for row in rows:
                await batch.add(_rename(row.id, "swept"))

        sweep = KeysetSweep(
            session_factory, select(User.id), User.id, page_size=5, batch_limit=2
        )
        result = await sweep.run(handle)

        assert result.writes == 12
        # pages of 5, 5, 2 -> 3 + 3 + 1 commits
        assert result.commits == 7
        assert (await fetch.user("u0011")).display_name == "swept"

    @pytest.mark.asyncio
    async def test_budget_stops_and_checkpoint_resumes(self, session_factory, make_user):
        await _seed(make_user, 12)
        checkpoint = MemoryCheckpoint()
        seen = []

        async def handle(rows, batch):
            seen.extend(row.id for row in rows)

        def sweep():
            return KeysetSweep(
                session_factory, select(User.id), User.id,
                page_size=5, checkpoint=checkpoint,
            )

        first = await sweep().run(handle, SweepBudget(max_pages=1))
        assert not first.completed
        assert checkpoint.last_key == "u0004"
        assert not checkpoint.completed

        second = await sweep().run(handle, SweepBudget())
        assert second.completed
        assert checkpoint.completed
        assert seen == [f"u{i:04d}" for i in range(12)]

        # A completed sweep does not touch the table again.
        third = await sweep().run(handle)
        assert third.completed
        assert third.pages == 0
        assert len(seen) == 12

    def test_page_size_must_be_positive(self):
        with pytest.raises(ValueError):
            KeysetSweep(MagicMock(), select(User.id), User.id, page_size=0)
