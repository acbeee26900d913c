"""
Matchgraph — Paginated sweeps with bounded write batches

The deletion cascade has to walk tables far larger than one unit of work can
hold, while every atomic write set stays under a hard size ceiling.  Two
primitives cover that:

``WriteBatch``
    Collects write operations and commits them in transactions of at most
    ``limit`` operations.  A new transaction starts each time the previous
    one fills; ``flush()`` commits whatever is left.

``KeysetSweep``
    Walks a query in fixed-size pages ordered by a stable key, resuming
    strictly after the last key it has seen.  Each page is handed to a
    callback together with a fresh ``WriteBatch``; the batch is flushed and
    the optional checkpoint advanced before the next page is fetched, so an
    interrupted sweep resumes at the first unfinished page.

A ``SweepBudget`` bounds how many pages (and how much wall-clock time) one
invocation may spend across any number of sweeps.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, Sequence

import structlog
from sqlalchemy import Row, Select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.config import MAX_WRITE_BATCH_LIMIT

logger = structlog.get_logger("matchgraph.sweep")

WriteOp = Callable[[AsyncSession], Awaitable[Any]]
PageHandler = Callable[[Sequence[Row], "WriteBatch"], Awaitable[None]]


class WriteBatch:
    """Group write operations into transactions of bounded size."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        limit: int = MAX_WRITE_BATCH_LIMIT,
    ) -> None:
        if not 1 <= limit <= MAX_WRITE_BATCH_LIMIT:
            raise ValueError(
                f"Batch limit must be between 1 and {MAX_WRITE_BATCH_LIMIT}, got {limit}"
            )
        self._session_factory = session_factory
        self.limit = limit
        self._pending: list[WriteOp] = []
        self.writes = 0
        self.commits = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def add(self, op: WriteOp) -> None:
        """Queue ``op``; commit the batch as soon as it is full."""
        self._pending.append(op)
        if len(self._pending) >= self.limit:
            await self.flush()

    async def flush(self) -> None:
        """Commit every queued operation in one transaction."""
        if not self._pending:
            return
        ops, self._pending = self._pending, []
        async with self._session_factory() as session:
            async with session.begin():
                for op in ops:
                    await op(session)
        self.writes += len(ops)
        self.commits += 1
        logger.debug("write_batch_committed", size=len(ops), commits=self.commits)


@dataclass
class SweepBudget:
    """Page and wall-clock allowance shared by every sweep of one run."""

    max_pages: int | None = None
    deadline: float | None = None  # time.monotonic() value
    pages_used: int = 0

    @classmethod
    def from_limits(
        cls, max_pages: int | None, time_budget_seconds: float | None
    ) -> "SweepBudget":
        deadline = (
            time.monotonic() + time_budget_seconds
            if time_budget_seconds
            else None
        )
        return cls(max_pages=max_pages or None, deadline=deadline)

    def exhausted(self) -> bool:
        if self.max_pages is not None and self.pages_used >= self.max_pages:
            return True
        return self.deadline is not None and time.monotonic() >= self.deadline

    def consume(self) -> None:
        self.pages_used += 1


class SweepCheckpoint(Protocol):
    """Persistence for a sweep's position."""

    async def load(self) -> tuple[str | None, bool]:
        """Return ``(last_seen_key, completed)``."""
        ...

    async def advance(self, last_seen_key: str, writes: int) -> None:
        ...

    async def complete(self) -> None:
        ...


@dataclass
class SweepResult:
    pages: int = 0
    rows: int = 0
    writes: int = 0
    commits: int = 0
    last_key: str | None = None
    completed: bool = False


class KeysetSweep:
    """Page through ``query`` ordered by ``key_column``.

    ``query`` must select ``key_column`` first and must not carry its own
    ordering or limit; the sweep adds
    ``WHERE key > :last ORDER BY key LIMIT :size``.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        query: Select,
        key_column: Any,
        *,
        page_size: int = 100,
        batch_limit: int = MAX_WRITE_BATCH_LIMIT,
        checkpoint: SweepCheckpoint | None = None,
        name: str = "sweep",
    ) -> None:
        if page_size < 1:
            raise ValueError(f"page_size must be positive, got {page_size}")
        self._session_factory = session_factory
        self._query = query
        self._key_column = key_column
        self._page_size = page_size
        self._batch_limit = batch_limit
        self._checkpoint = checkpoint
        self._log = logger.bind(sweep=name)

    async def _fetch_page(self, after: str | None) -> Sequence[Row]:
        stmt = self._query
        if after is not None:
            stmt = stmt.where(self._key_column > after)
        stmt = stmt.order_by(self._key_column).limit(self._page_size)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.all()

    async def run(
        self,
        handle_page: PageHandler,
        budget: SweepBudget | None = None,
    ) -> SweepResult:
        """Process pages until the query is exhausted or the budget runs out."""
        result = SweepResult()
        last_key: str | None = None

        if self._checkpoint is not None:
            last_key, completed = await self._checkpoint.load()
            if completed:
                result.completed = True
                result.last_key = last_key
                return result
            if last_key is not None:
                self._log.info("sweep_resumed", after=last_key)

        while True:
            if budget is not None and budget.exhausted():
                self._log.info(
                    "sweep_budget_exhausted",
                    pages=result.pages,
                    last_key=last_key,
                )
                result.last_key = last_key
                return result

            page = await self._fetch_page(last_key)
            if not page:
                break

            batch = WriteBatch(self._session_factory, self._batch_limit)
            await handle_page(page, batch)
            await batch.flush()

            last_key = page[-1][0]
            result.pages += 1
            result.rows += len(page)
            result.writes += batch.writes
            result.commits += batch.commits
            if budget is not None:
                budget.consume()
            if self._checkpoint is not None:
                await self._checkpoint.advance(last_key, batch.writes)

            if len(page) < self._page_size:
                break

        result.last_key = last_key
        result.completed = True
        if self._checkpoint is not None:
            await self._checkpoint.complete()
        self._log.info(
            "sweep_complete",
            pages=result.pages,
            rows=result.rows,
            writes=result.writes,
            commits=result.commits,
        )
        return result
