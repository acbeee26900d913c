"""Tests for ReconciliationService — the account-deletion cascade."""
from datetime import datetime, timezone

import pytest
from google.api_core import exceptions as gcs_exceptions
from sqlalchemy import delete, select

from app.models.interaction import Interaction
from app.models.match import Match
from app.models.reconciliation import ReconciliationCheckpoint
from app.models.user import User
from app.schemas.events import InteractionCreatedEvent
from app.schemas.reconciliation import StepStatus
from app.services import sweep
from app.services.reconciliation_service import CASCADE_ORDER, ReconciliationService
from app.utils import storage as storage_module


class FakeStorage:
    """In-memory bucket standing in for ``app.utils.storage``."""

    def __init__(self, names=()):
        self.objects = set(names)
        self.delete_calls = []

    def iter_file_pages(self, prefix, page_size=1000):
        names = sorted(name for name in self.objects if name.startswith(prefix))
        for start in range(0, len(names), page_size):
            yield names[start:start + page_size]

    def delete_file(self, name):
        self.delete_calls.append(name)
        if name not in self.objects:
            raise gcs_exceptions.NotFound(name)
        self.objects.remove(name)


@pytest.fixture
def bucket(monkeypatch):
    fake = FakeStorage()
    monkeypatch.setattr(storage_module, "iter_file_pages", fake.iter_file_pages)
    monkeypatch.setattr(storage_module, "delete_file", fake.delete_file)
    return fake


@pytest.fixture
def make_service(session_factory):
    def _make(**kwargs):
        kwargs.setdefault("page_size", 100)
        kwargs.setdefault("max_pages_per_run", 0)
        kwargs.setdefault("time_budget_seconds", 0)
        kwargs.setdefault("storage_enabled", True)
        kwargs.setdefault("storage_delete_attempts", 2)
        return ReconciliationService(session_factory, **kwargs)
    return _make


async def _delete_row(session_factory, user_id):
    async with session_factory() as session:
        await session.execute(delete(User).where(User.id == user_id))
        await session.commit()


async def _seed_population(session_factory, deleted_id, count):
    """``count`` users, each liked by and liking ``deleted_id``, plus one
    unrelated mirror entry apiece."""
    now = datetime.now(timezone.utc)
    async with session_factory() as session:
        for i in range(count):
            user_id = f"u{i:04d}"
            session.add(User(
                id=user_id,
                received_likes=[
                    {"fromUserId": deleted_id, "timestamp": now.isoformat()},
                    {"fromUserId": "keeper", "timestamp": now.isoformat()},
                ],
            ))
            session.add(Interaction(
                owner_id=user_id, target_id=deleted_id, action="like", created_at=now
            ))
            session.add(Interaction(
                owner_id=deleted_id, target_id=user_id, action="like", created_at=now
            ))
        await session.commit()


async def _references_to(session_factory, user_id):
    """Everything in the database that still mentions ``user_id``."""
    async with session_factory() as session:
        users = (await session.execute(select(User))).scalars().all()
        interactions = (await session.execute(
            select(Interaction).where(
                (Interaction.owner_id == user_id) | (Interaction.target_id == user_id)
            )
        )).scalars().all()
    async with session_factory() as session:
        matches = (await session.execute(
            select(Match).where((Match.user_a_id == user_id) | (Match.user_b_id == user_id))
        )).scalars().all()
    mirrors = [
        u.id for u in users
        if any(e.get("fromUserId") == user_id for e in u.received_likes)
    ]
    return {"mirrors": mirrors, "interactions": list(interactions), "matches": list(matches)}


def _statuses(report):
    return {step.step: step.status for step in report.steps}


class TestCascadeScenario:

    @pytest.mark.asyncio
    async def test_deleted_user_with_match_and_pending_like(
        self, session_factory, make_user, interaction_service, add_interaction,
        make_service, bucket, fetch,
    ):
        for user_id in ("alice", "bob", "carol", "dave"):
            await make_user(user_id)

        async def like(actor, target):
            await add_interaction(actor, target)
            await interaction_service.handle_interaction_created(
                InteractionCreatedEvent(actor_id=actor, target_id=target, action="like")
            )

        await like("alice", "bob")
        await like("bob", "alice")      # match alice_bob
        await like("alice", "carol")    # pending like toward carol
        await like("dave", "alice")     # dave's interaction about alice
        await like("bob", "carol")      # unrelated
        bucket.objects.update({
            "user_photos/alice/0.jpg",
            "user_photos/alice/0_blur.jpg",
            "user_photos/bob/0.jpg",
        })

        await _delete_row(session_factory, "alice")
        report = await make_service().handle_user_deleted("alice")

        assert report.status == "completed"
        assert [s.step for s in report.steps] == [s.value for s in CASCADE_ORDER]
        assert all(s.status == StepStatus.DONE for s in report.steps)

        leftovers = await _references_to(session_factory, "alice")
        assert leftovers == {"mirrors": [], "interactions": [], "matches": []}
        assert bucket.objects == {"user_photos/bob/0.jpg"}

        # Unrelated state survives.
        assert await fetch.mirror_ids("carol") == ["bob"]
        remaining = {(i.owner_id, i.target_id) for i in await fetch.interactions()}
        assert remaining == {("bob", "carol")}

    @pytest.mark.asyncio
    async def test_existing_user_is_left_alone(
        self, session_factory, make_user, add_interaction, make_service, bucket, fetch
    ):
        await make_user("alice")
        await make_user("bob")
        await add_interaction("bob", "alice")
        bucket.objects.add("user_photos/alice/0.jpg")

        report = await make_service().handle_user_deleted("alice")

        assert report.status == "user_exists"
        assert report.steps == []
        assert len(await fetch.interactions()) == 1
        assert bucket.objects == {"user_photos/alice/0.jpg"}
        async with session_factory() as session:
            rows = (await session.execute(select(ReconciliationCheckpoint))).all()
        assert rows == []


class TestResumability:

    @pytest.mark.asyncio
    async def test_interrupted_after_first_page_then_resumed(
        self, session_factory, make_service, bucket,
    ):
        await _seed_population(session_factory, "x", 250)
        bucket.objects.add("user_photos/x/0.jpg")

        first = await make_service(max_pages_per_run=1).handle_user_deleted("x")

        assert first.status == "incomplete"
        statuses = _statuses(first)
        assert statuses["received_likes"] == StepStatus.PARTIAL
        assert all(statuses[s.value] == StepStatus.PENDING for s in CASCADE_ORDER[1:])
        leftovers = await _references_to(session_factory, "x")
        assert len(leftovers["mirrors"]) == 150
        assert sorted(leftovers["mirrors"])[0] == "u0100"

        service = make_service()
        assert await service.pending_user_ids() == ["x"]

        second = await service.handle_user_deleted("x")

        assert second.status == "completed"
        mirror_step = second.steps[0]
        assert mirror_step.step == "received_likes"
        assert mirror_step.pages == 2          # resumed after u0099, not restarted
        assert mirror_step.writes == 150
        assert await _references_to(session_factory, "x") == {
            "mirrors": [], "interactions": [], "matches": []
        }
        assert bucket.objects == set()
        assert await service.pending_user_ids() == []

        async with session_factory() as session:
            users = (await session.execute(select(User))).scalars().all()
        assert len(users) == 250
        assert all(u.received_likes[0]["fromUserId"] == "keeper" for u in users)
        assert all(len(u.received_likes) == 1 for u in users)

    @pytest.mark.asyncio
    async def test_completed_cascade_redelivery_is_noop(
        self, session_factory, make_service, bucket,
    ):
        await _seed_population(session_factory, "x", 5)
        service = make_service()
        await service.handle_user_deleted("x")

        again = await service.handle_user_deleted("x")
        assert again.status == "completed"
        assert all(s.status == StepStatus.SKIPPED for s in again.steps)

        restarted = await service.handle_user_deleted("x", restart=True)
        assert restarted.status == "completed"
        assert all(s.status == StepStatus.DONE for s in restarted.steps)
        assert all(s.writes == 0 for s in restarted.steps)

    @pytest.mark.asyncio
    async def test_resume_pending_finishes_every_cascade(
        self, session_factory, make_service, bucket,
    ):
        await _seed_population(session_factory, "x", 120)
        async with session_factory() as session:
            for i in range(120):
                user = await session.get(User, f"u{i:04d}")
                user.received_likes = user.received_likes + [
                    {"fromUserId": "y", "timestamp": "2026-01-01T00:00:00+00:00"}
                ]
            await session.commit()

        limited = make_service(max_pages_per_run=1)
        await limited.handle_user_deleted("x")
        await limited.handle_user_deleted("y")
        assert await limited.pending_user_ids() == ["x", "y"]

        reports = await make_service().resume_pending()

        assert [r.deleted_user_id for r in reports] == ["x", "y"]
        assert all(r.status == "completed" for r in reports)
        for user_id in ("x", "y"):
            assert (await _references_to(session_factory, user_id))["mirrors"] == []


class TestBatching:

    @pytest.mark.asyncio
    async def test_transactions_never_exceed_batch_limit(
        self, session_factory, make_service, bucket, monkeypatch,
    ):
        await _seed_population(session_factory, "x", 130)
        sizes = []
        original_flush = sweep.WriteBatch.flush

        async def recording_flush(self):
            if self.pending:
                sizes.append(self.pending)
            await original_flush(self)

        monkeypatch.setattr(sweep.WriteBatch, "flush", recording_flush)

        report = await make_service(page_size=50, batch_limit=20).handle_user_deleted("x")

        assert report.status == "completed"
        assert sizes and max(sizes) <= 20
        # 130 mirrors + 130 own interactions + 130 references
        assert sum(sizes) == 390


class TestFailures:

    @pytest.mark.asyncio
    async def test_failed_step_does_not_stop_later_steps(
        self, session_factory, make_service, bucket,
    ):
        await _seed_population(session_factory, "x", 3)
        bucket.objects.add("user_photos/x/0.jpg")
        service = make_service()

        async def broken(*args):
            raise RuntimeError("matches unavailable")

        service._delete_matches = broken
        report = await service.handle_user_deleted("x")

        statuses = _statuses(report)
        assert report.status == "incomplete"
        assert statuses["matches"] == StepStatus.FAILED
        assert report.steps[1].error == "matches unavailable"
        assert statuses["own_interactions"] == StepStatus.DONE
        assert statuses["storage"] == StepStatus.DONE
        assert bucket.objects == set()

        retry = await make_service().handle_user_deleted("x")
        statuses = _statuses(retry)
        assert retry.status == "completed"
        assert statuses["matches"] == StepStatus.DONE
        assert statuses["received_likes"] == StepStatus.SKIPPED

    @pytest.mark.asyncio
    async def test_storage_listing_failure_reports_failed(
        self, session_factory, make_service, monkeypatch,
    ):
        def unavailable(prefix, page_size=1000):
            raise gcs_exceptions.ServiceUnavailable("gcs down")

        monkeypatch.setattr(storage_module, "iter_file_pages", unavailable)
        report = await make_service().handle_user_deleted("x")

        assert _statuses(report)["storage"] == StepStatus.FAILED
        assert await make_service().pending_user_ids() == ["x"]

    @pytest.mark.asyncio
    async def test_transient_delete_error_is_retried(
        self, session_factory, make_service, bucket, monkeypatch,
    ):
        bucket.objects.add("user_photos/x/0.jpg")
        failures = iter([gcs_exceptions.ServiceUnavailable("try again")])
        real_delete = bucket.delete_file

        def flaky_delete(name):
            error = next(failures, None)
            if error is not None:
                raise error
            real_delete(name)

        monkeypatch.setattr(storage_module, "delete_file", flaky_delete)
        report = await make_service().handle_user_deleted("x")

        assert report.status == "completed"
        assert bucket.objects == set()

    @pytest.mark.asyncio
    async def test_already_deleted_object_counts_as_done(
        self, session_factory, make_service, bucket, monkeypatch,
    ):
        monkeypatch.setattr(
            storage_module,
            "iter_file_pages",
            lambda prefix, page_size=1000: iter([[f"{prefix}gone.jpg"]]),
        )
        report = await make_service().handle_user_deleted("x")

        assert report.status == "completed"
        assert bucket.delete_calls == ["user_photos/x/gone.jpg"]

    @pytest.mark.asyncio
    async def test_unconfigured_storage_stays_pending_until_configured(
        self, session_factory, make_service, bucket,
    ):
        bucket.objects.add("user_photos/x/0.jpg")

        first = await make_service(storage_enabled=False).handle_user_deleted("x")

        statuses = _statuses(first)
        assert first.status == "incomplete"
        assert statuses["storage"] == StepStatus.PENDING
        assert first.steps[-1].error == "object storage not configured"
        assert statuses["received_likes"] == StepStatus.DONE
        assert bucket.objects == {"user_photos/x/0.jpg"}
        assert await make_service().pending_user_ids() == ["x"]

        second = await make_service(storage_enabled=True).handle_user_deleted("x")

        statuses = _statuses(second)
        assert second.status == "completed"
        assert statuses["storage"] == StepStatus.DONE
        assert statuses["received_likes"] == StepStatus.SKIPPED
        assert bucket.objects == set()
        assert await make_service().pending_user_ids() == []


class TestStorageListing:

    @pytest.mark.asyncio
    async def test_objects_deleted_page_by_page(
        self, session_factory, make_service, bucket,
    ):
        bucket.objects.update(f"user_photos/x/{i:03d}.jpg" for i in range(250))
        bucket.objects.add("user_photos/xy/keep.jpg")

        report = await make_service(page_size=100).handle_user_deleted("x")

        storage_step = report.steps[-1]
        assert storage_step.status == StepStatus.DONE
        assert storage_step.pages == 3
        assert storage_step.writes == 250
        assert bucket.objects == {"user_photos/xy/keep.jpg"}
