"""Shared fixtures: in-memory database and user rows."""

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database import build_session_factory, create_tables
from app.models.user import User
from tests.factories import make_lesson


@pytest.fixture
def lesson_factory():
    return make_lesson


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory SQLite database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(engine)

    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def create_user(session_factory):
    """Insert a user row and return it."""
    async def _create(user_id="user-1", username="alice", with_secret=True, **fields):
        user = User(
            id=user_id,
            username=username,
            untis_secret_ciphertext=b"cipher" if with_secret else None,
            untis_secret_nonce=b"nonce-123456" if with_secret else None,
            untis_secret_key_version=1 if with_secret else None,
            **fields,
        )
        async with session_factory() as session:
            session.add(user)
            await session.commit()
        return user

    return _create
