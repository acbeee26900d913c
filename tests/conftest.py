"""Shared pytest fixtures for Matchgraph tests."""
import os

# Settings are read on first use; point them at a throwaway configuration
# before anything under ``app`` is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./matchgraph-test.db")
os.environ.setdefault("PUSH_NOTIFICATIONS_ENABLED", "false")
os.environ.setdefault("GCS_BUCKET_NAME", "")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import app.models  # noqa: F401  (registers every table on Base.metadata)
from app.database import Base
from app.models.interaction import Interaction, InteractionAction
from app.models.match import Match
from app.models.user import User
from app.services.interaction_service import InteractionService
from app.services.notification_service import NotificationService


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """A fresh SQLite database per test, with the real schema."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'matchgraph.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def push_sender():
    """Stand-in for the FCM transport; every send "succeeds"."""
    return MagicMock(return_value="projects/test/messages/1")


@pytest.fixture
def notification_service(session_factory, push_sender):
    return NotificationService(session_factory, sender=push_sender, app_name="Matchgraph")


@pytest.fixture
def interaction_service(session_factory, notification_service):
    return InteractionService(session_factory, notification_service)


@pytest.fixture
def make_user(session_factory):
    """Insert a user; photos get an obfuscated preview by default."""

    async def _make(user_id, *, display_name=None, push_token="token", photos=None,
                    blurred_photos=None, received_likes=None):
        if photos is None:
            photos = [f"https://cdn.test/{user_id}/0.jpg"]
            if blurred_photos is None:
                blurred_photos = {photos[0]: f"https://cdn.test/{user_id}/0_blur.jpg"}
        user = User(
            id=user_id,
            display_name=display_name or user_id.title(),
            push_token=push_token,
            photos=photos,
            blurred_photos=blurred_photos or {},
            received_likes=received_likes or [],
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _make


@pytest.fixture
def add_interaction(session_factory):
    """Store an interaction row directly, without running the trigger."""

    async def _add(owner_id, target_id, action=InteractionAction.LIKE):
        async with session_factory() as session:
            session.add(Interaction(
                owner_id=owner_id,
                target_id=target_id,
                action=InteractionAction(action).value,
                created_at=datetime.now(timezone.utc),
            ))
            await session.commit()

    return _add


@pytest.fixture
def fetch(session_factory):
    """Small read helpers used by assertions."""

    class _Fetch:
        async def user(self, user_id):
            async with session_factory() as session:
                return await session.get(User, user_id)

        async def mirror_ids(self, user_id):
            user = await self.user(user_id)
            return [entry["fromUserId"] for entry in user.received_likes]

        async def matches(self):
            async with session_factory() as session:
                return list((await session.execute(select(Match))).scalars().all())

        async def interactions(self):
            async with session_factory() as session:
                return list((await session.execute(select(Interaction))).scalars().all())

    return _Fetch()
