"""Pytest configuration and shared fixtures.

This module provides centralized test fixtures for:
- HTTP client for API testing
- Test database sessions (DATABASE_TEST_URL, or in-memory SQLite)
- Common patient / account test data
"""

import os
import uuid
from datetime import date

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from drknowsit.auth import verify_bearer_token
from drknowsit.database import Base, get_db
from drknowsit.main import app
from drknowsit.models import AISettings, Patient, Subscriber

TEST_USER_ID = "test-user"
OTHER_USER_ID = "other-user"


async def stub_verify_bearer_token() -> str:
    """Stub auth dependency that returns a fixed test user ID."""
    return TEST_USER_ID


# =============================================================================
# HTTP Client Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(session_maker):
    """Async test client for FastAPI app with test database.

    Overrides the app's get_db dependency to use the test database,
    ensuring API tests use the same database as other test fixtures.
    """

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    # Override dependencies
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[verify_bearer_token] = stub_verify_bearer_token

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    # Clean up overrides
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(verify_bearer_token, None)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    """Authentication headers for API requests."""
    return {"Authorization": "Bearer test-token"}


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def test_engine():
    """Create test database engine with automatic schema management.

    Creates all tables before tests, drops them after.
    Uses DATABASE_TEST_URL env var if set, otherwise an in-memory SQLite
    database shared by every session of the test.
    """
    db_url = os.environ.get("DATABASE_TEST_URL")
    if db_url:
        engine = create_async_engine(db_url, echo=False)
    else:
        engine = create_async_engine(
            "sqlite+aiosqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncSession:
    """Create test database session with automatic rollback.

    Each test gets a fresh session that rolls back on completion,
    ensuring test isolation.
    """
    async with session_maker() as session:
        yield session
        await session.rollback()


# =============================================================================
# Account / Patient Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def subscribed_user(session_maker) -> str:
    """Give the test user an active basic subscription."""
    async with session_maker() as session:
        session.add(Subscriber(user_id=TEST_USER_ID, subscription_tier="basic", subscribed=True))
        session.add(AISettings(user_id=TEST_USER_ID, memory_enabled=True, personalization_level="medium"))
        await session.commit()
    return TEST_USER_ID


@pytest_asyncio.fixture
async def patient_in_db(session_maker) -> uuid.UUID:
    """Create a patient owned by the test user and return its UUID."""
    patient_uuid = uuid.uuid4()
    async with session_maker() as session:
        session.add(Patient(
            id=patient_uuid,
            user_id=TEST_USER_ID,
            first_name="Jane",
            last_name="Doe",
            date_of_birth=date(1988, 4, 12),
            gender="female",
            relationship="self",
            is_primary=True,
            probable_diagnoses=[],
        ))
        await session.commit()
    return patient_uuid


@pytest_asyncio.fixture
async def foreign_patient_in_db(session_maker) -> uuid.UUID:
    """Create a patient owned by another account."""
    patient_uuid = uuid.uuid4()
    async with session_maker() as session:
        session.add(Patient(
            id=patient_uuid,
            user_id=OTHER_USER_ID,
            first_name="Someone",
            probable_diagnoses=[],
        ))
        await session.commit()
    return patient_uuid
