"""Tests for bearer token authentication."""

import logging
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from drknowsit.auth import EXPIRED_SESSION, MISSING_TOKEN, UNKNOWN_TOKEN, verify_bearer_token
from drknowsit.database import get_db
from drknowsit.models import AuthSession


@pytest.fixture
def protected_app(session_maker):
    """Create a test app with a protected endpoint and test DB."""
    app = FastAPI()

    async def override_get_db():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db

    @app.get("/protected")
    async def protected_endpoint(user_id: str = Depends(verify_bearer_token)):
        return {"message": "success", "user_id": user_id}

    return app


@pytest_asyncio.fixture
async def protected_client(protected_app):
    """Async test client for protected app."""
    async with AsyncClient(
        transport=ASGITransport(app=protected_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def seed_session(session_maker):
    """Create a valid session in the database."""
    async with session_maker() as db:
        db.add(AuthSession(
            id="test-session-id",
            token="valid-test-token",
            user_id="test-user-123",
            expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
            created_at=datetime.now(timezone.utc),
        ))
        await db.commit()


@pytest_asyncio.fixture
async def seed_expired_session(session_maker):
    """Create an expired session in the database."""
    async with session_maker() as db:
        db.add(AuthSession(
            id="expired-session-id",
            token="expired-test-token",
            user_id="test-user-456",
            expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
            created_at=datetime.now(timezone.utc),
        ))
        await db.commit()


@pytest.mark.asyncio
async def test_valid_bearer_token(protected_client, seed_session):
    """Test that valid bearer token allows access."""
    response = await protected_client.get(
        "/protected",
        headers={"Authorization": "Bearer valid-test-token"},
    )
    assert response.status_code == 200
    assert response.json()["user_id"] == "test-user-123"


@pytest.mark.asyncio
async def test_missing_token(protected_client):
    """Test that missing token returns 401."""
    response = await protected_client.get("/protected")
    assert response.status_code == 401
    assert response.json()["detail"] == MISSING_TOKEN
    assert response.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_invalid_token(protected_client):
    """Test that invalid token returns 401."""
    response = await protected_client.get(
        "/protected",
        headers={"Authorization": "Bearer nonexistent-token"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == UNKNOWN_TOKEN


@pytest.mark.asyncio
async def test_expired_token(protected_client, seed_expired_session):
    """Test that expired session token returns 401."""
    response = await protected_client.get(
        "/protected",
        headers={"Authorization": "Bearer expired-test-token"},
    )
    assert response.status_code == 401
    assert response.json()["detail"] == EXPIRED_SESSION


@pytest.mark.asyncio
async def test_expired_session_logged_with_owner(protected_client, seed_expired_session, caplog):
    """Test that an expired session is logged against its account."""
    with caplog.at_level(logging.INFO, logger="drknowsit.auth"):
        await protected_client.get(
            "/protected",
            headers={"Authorization": "Bearer expired-test-token"},
        )

    assert "expired-session-id" in caplog.text
    assert "test-user-456" in caplog.text
