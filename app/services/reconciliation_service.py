"""
Matchgraph — Deletion cascade reconciler

When a user row is deleted, every reference to that account held anywhere
else has to go.  The cascade runs five steps, in this order:

  1. ``received_likes``          — sweep every user's received-likes mirror
                                   and filter out the deleted account.
  2. ``matches``                 — delete every match it took part in.
  3. ``own_interactions``        — delete the interactions it owned.
  4. ``interaction_references``  — sweep every user again and delete the
                                   interaction each one holds *about* the
                                   deleted account.
  5. ``storage``                 — delete every object under its media
                                   prefix.

Steps 1–4 are commutative.  Storage runs last so it never races a re-read of
the user's own data.

Step 4 costs one existence check per remaining user (batched per page),
i.e. O(N) point reads over the population.  That is the accepted price for
not maintaining a second reverse index of interactions.

All table walks use :class:`~app.services.sweep.KeysetSweep`; every mutation
goes through bounded :class:`~app.services.sweep.WriteBatch` transactions and
every step persists a checkpoint after each page.  Re-running any step is a
no-op on already-clean data, so a crashed, timed-out or redelivered cascade
resumes where it stopped and only ever moves the data closer to clean.
"""

from __future__ import annotations

import asyncio
import enum

import structlog
from google.api_core import exceptions as gcs_exceptions
from sqlalchemy import delete, distinct, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import get_settings
from app.models.interaction import Interaction
from app.models.match import Match
from app.models.reconciliation import ReconciliationCheckpoint
from app.models.user import User
from app.schemas.reconciliation import ReconciliationReport, StepReport, StepStatus
from app.services.checkpoints import CheckpointStore, StepCheckpoint
from app.services.received_likes import ReceivedLikes, retract_received_like
from app.services.sweep import KeysetSweep, SweepBudget, SweepResult, WriteOp
from app.utils import storage

logger = structlog.get_logger("matchgraph.reconciliation_service")


class CascadeStep(str, enum.Enum):
    RECEIVED_LIKES = "received_likes"
    MATCHES = "matches"
    OWN_INTERACTIONS = "own_interactions"
    INTERACTION_REFERENCES = "interaction_references"
    STORAGE = "storage"


CASCADE_ORDER: tuple[CascadeStep, ...] = (
    CascadeStep.RECEIVED_LIKES,
    CascadeStep.MATCHES,
    CascadeStep.OWN_INTERACTIONS,
    CascadeStep.INTERACTION_REFERENCES,
    CascadeStep.STORAGE,
)

_FINISHED = (StepStatus.DONE, StepStatus.SKIPPED)


def _is_transient_storage_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (
            gcs_exceptions.TooManyRequests,
            gcs_exceptions.ServerError,
            ConnectionError,
        ),
    )


def _execute_op(stmt) -> WriteOp:
    async def op(session: AsyncSession) -> None:
        await session.execute(stmt)
    return op


def _retract_like_op(owner_id: str, from_user_id: str) -> WriteOp:
    async def op(session: AsyncSession) -> None:
        await retract_received_like(session, owner_id, from_user_id)
    return op


class ReconciliationService:
    """Propagates an account deletion to every dependent record."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        page_size: int | None = None,
        batch_limit: int | None = None,
        max_pages_per_run: int | None = None,
        time_budget_seconds: float | None = None,
        storage_enabled: bool | None = None,
        storage_delete_attempts: int | None = None,
    ) -> None:
        settings = get_settings()
        self._session_factory = session_factory
        self.page_size = page_size or settings.SWEEP_PAGE_SIZE
        self.batch_limit = batch_limit or settings.WRITE_BATCH_LIMIT
        self.max_pages_per_run = (
            max_pages_per_run
            if max_pages_per_run is not None
            else settings.SWEEP_MAX_PAGES_PER_RUN
        )
        self.time_budget_seconds = (
            time_budget_seconds
            if time_budget_seconds is not None
            else settings.RECONCILE_TIME_BUDGET_SECONDS
        )
        self.storage_enabled = (
            storage_enabled
            if storage_enabled is not None
            else bool(settings.GCS_BUCKET_NAME)
        )
        self.storage_delete_attempts = (
            storage_delete_attempts or settings.STORAGE_DELETE_ATTEMPTS
        )

    def new_budget(self) -> SweepBudget:
        return SweepBudget.from_limits(self.max_pages_per_run, self.time_budget_seconds)

    # ── Public API ────────────────────────────────────────────────────────

    async def handle_user_deleted(
        self,
        user_id: str,
        *,
        restart: bool = False,
        budget: SweepBudget | None = None,
    ) -> ReconciliationReport:
        """Run (or resume) the cascade for ``user_id``.

        Never raises: failures are logged and show up in the report as
        ``failed`` / ``incomplete`` so that a later run can pick them up.
        """
        log = logger.bind(deleted_user_id=user_id)
        log.info("reconciliation_start", restart=restart)

        checkpoints = CheckpointStore(self._session_factory, user_id)
        try:
            if await self._user_exists(user_id):
                log.warning("reconciliation_user_still_exists")
                return ReconciliationReport(deleted_user_id=user_id, status="user_exists")
            if restart:
                await checkpoints.reset()
            await checkpoints.register([step.value for step in CASCADE_ORDER])
            finished = await checkpoints.completed_steps()
        except Exception:
            log.exception("reconciliation_setup_failed")
            return ReconciliationReport(deleted_user_id=user_id, status="failed")

        budget = budget or self.new_budget()
        reports: list[StepReport] = []
        for step in CASCADE_ORDER:
            if step.value in finished:
                reports.append(StepReport(step=step.value, status=StepStatus.SKIPPED))
                continue
            if budget.exhausted():
                reports.append(StepReport(step=step.value, status=StepStatus.PENDING))
                continue
            if step is CascadeStep.STORAGE and not self.storage_enabled:
                # Left unfinished so a run with a configured bucket cleans up.
                log.warning("storage_cleanup_deferred", reason="GCS_BUCKET_NAME not configured")
                reports.append(StepReport(
                    step=step.value,
                    status=StepStatus.PENDING,
                    error="object storage not configured",
                ))
                continue
            reports.append(
                await self._run_step(step, user_id, checkpoints.for_step(step.value), budget)
            )

        completed = all(report.status in _FINISHED for report in reports)
        report = ReconciliationReport(
            deleted_user_id=user_id,
            status="completed" if completed else "incomplete",
            steps=reports,
        )
        log.info(
            "reconciliation_finished",
            status=report.status,
            steps={r.step: r.status.value for r in reports},
            pages_used=budget.pages_used,
        )
        return report

    async def pending_user_ids(self) -> list[str]:
        """Accounts whose cascade has at least one unfinished step."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(distinct(ReconciliationCheckpoint.deleted_user_id))
                .where(ReconciliationCheckpoint.completed_at.is_(None))
                .order_by(ReconciliationCheckpoint.deleted_user_id)
            )
            return list(result.scalars().all())

    async def resume_pending(self) -> list[ReconciliationReport]:
        """Continue every unfinished cascade within one shared budget."""
        try:
            pending = await self.pending_user_ids()
        except Exception:
            logger.exception("reconciliation_pending_lookup_failed")
            return []

        logger.info("reconciliation_resume", pending=len(pending))
        budget = self.new_budget()
        reports = []
        for user_id in pending:
            if budget.exhausted():
                break
            reports.append(await self.handle_user_deleted(user_id, budget=budget))
        return reports

    # ── Step dispatch ─────────────────────────────────────────────────────

    async def _run_step(
        self,
        step: CascadeStep,
        user_id: str,
        checkpoint: StepCheckpoint,
        budget: SweepBudget,
    ) -> StepReport:
        handlers = {
            CascadeStep.RECEIVED_LIKES: self._retract_received_likes,
            CascadeStep.MATCHES: self._delete_matches,
            CascadeStep.OWN_INTERACTIONS: self._delete_own_interactions,
            CascadeStep.INTERACTION_REFERENCES: self._delete_interaction_references,
            CascadeStep.STORAGE: self._delete_storage_objects,
        }
        try:
            result = await handlers[step](user_id, checkpoint, budget)
        except Exception as exc:
            logger.exception(
                "reconciliation_step_failed",
                deleted_user_id=user_id,
                step=step.value,
            )
            return StepReport(step=step.value, status=StepStatus.FAILED, error=str(exc))

        logger.info(
            "reconciliation_step",
            deleted_user_id=user_id,
            step=step.value,
            completed=result.completed,
            pages=result.pages,
            writes=result.writes,
        )
        return StepReport(
            step=step.value,
            status=StepStatus.DONE if result.completed else StepStatus.PARTIAL,
            pages=result.pages,
            writes=result.writes,
        )

    def _sweep(self, query, key_column, checkpoint: StepCheckpoint) -> KeysetSweep:
        return KeysetSweep(
            self._session_factory,
            query,
            key_column,
            page_size=self.page_size,
            batch_limit=self.batch_limit,
            checkpoint=checkpoint,
            name=checkpoint.step,
        )

    async def _user_exists(self, user_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(select(User.id).where(User.id == user_id))
            return result.scalar_one_or_none() is not None

    # ── 1. Received-likes mirrors ─────────────────────────────────────────

    async def _retract_received_likes(
        self, user_id: str, checkpoint: StepCheckpoint, budget: SweepBudget
    ) -> SweepResult:
        async def handle_page(rows, batch) -> None:
            for row in rows:
                if user_id in ReceivedLikes(row.received_likes):
                    await batch.add(_retract_like_op(row.id, user_id))

        sweep = self._sweep(select(User.id, User.received_likes), User.id, checkpoint)
        return await sweep.run(handle_page, budget)

    # ── 2. Matches ────────────────────────────────────────────────────────

    async def _delete_matches(
        self, user_id: str, checkpoint: StepCheckpoint, budget: SweepBudget
    ) -> SweepResult:
        async def handle_page(rows, batch) -> None:
            for row in rows:
                await batch.add(_execute_op(delete(Match).where(Match.id == row.id)))

        query = select(Match.id).where(
            or_(Match.user_a_id == user_id, Match.user_b_id == user_id)
        )
        return await self._sweep(query, Match.id, checkpoint).run(handle_page, budget)

    # ── 3. Own interactions ───────────────────────────────────────────────

    async def _delete_own_interactions(
        self, user_id: str, checkpoint: StepCheckpoint, budget: SweepBudget
    ) -> SweepResult:
        async def handle_page(rows, batch) -> None:
            for row in rows:
                await batch.add(
                    _execute_op(
                        delete(Interaction).where(
                            Interaction.owner_id == user_id,
                            Interaction.target_id == row.target_id,
                        )
                    )
                )

        query = select(Interaction.target_id).where(Interaction.owner_id == user_id)
        return await self._sweep(query, Interaction.target_id, checkpoint).run(
            handle_page, budget
        )

    # ── 4. Interactions held by others about the deleted account ─────────

    async def _delete_interaction_references(
        self, user_id: str, checkpoint: StepCheckpoint, budget: SweepBudget
    ) -> SweepResult:
        async def handle_page(rows, batch) -> None:
            owner_ids = [row.id for row in rows]
            async with self._session_factory() as session:
                result = await session.execute(
                    select(Interaction.owner_id).where(
                        Interaction.target_id == user_id,
                        Interaction.owner_id.in_(owner_ids),
                    )
                )
                holders = list(result.scalars().all())
            for owner_id in holders:
                await batch.add(
                    _execute_op(
                        delete(Interaction).where(
                            Interaction.owner_id == owner_id,
                            Interaction.target_id == user_id,
                        )
                    )
                )

        return await self._sweep(select(User.id), User.id, checkpoint).run(
            handle_page, budget
        )

    # ── 5. Object storage ─────────────────────────────────────────────────

    async def _delete_storage_objects(
        self, user_id: str, checkpoint: StepCheckpoint, budget: SweepBudget
    ) -> SweepResult:
        result = SweepResult()
        prefix = storage.user_media_prefix(user_id)
        # Listing pages are fetched one at a time in a worker thread.
        pages = storage.iter_file_pages(prefix, self.page_size)
        while True:
            names = await asyncio.to_thread(next, pages, None)
            if names is None:
                break
            for name in names:
                await self._delete_object(name)
            result.pages += 1
            result.writes += len(names)

        logger.info("storage_cleanup_complete", prefix=prefix, deleted=result.writes)
        result.completed = True
        await checkpoint.complete()
        return result

    async def _delete_object(self, name: str) -> None:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.storage_delete_attempts),
            wait=wait_exponential(multiplier=0.5, max=8),
            retry=retry_if_exception(_is_transient_storage_error),
            reraise=True,
        ):
            with attempt:
                try:
                    await asyncio.to_thread(storage.delete_file, name)
                except gcs_exceptions.NotFound:
                    logger.info("storage_object_already_deleted", name=name)
