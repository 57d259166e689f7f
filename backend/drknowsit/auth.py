"""Account authentication: bearer tokens issued at sign-in, stored in auth_sessions.

Every chat, patient and analysis route scopes its queries by the user id
returned here, so a token never reaches another account's patients.
"""

import logging
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.database import get_db
from drknowsit.models.auth import AuthSession

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)

MISSING_TOKEN = "Sign in to chat with DrKnowsIt"
UNKNOWN_TOKEN = "Unrecognized session token"
EXPIRED_SESSION = "Your session has expired. Please sign in again."


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def verify_bearer_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> str:
    """Resolve the signed-in account behind a bearer token.

    Returns:
        The account's user_id, the owner key for patients and conversations.

    Raises:
        HTTPException: 401 if the token is missing, unknown, or its session expired.
    """
    if credentials is None:
        raise _unauthorized(MISSING_TOKEN)

    result = await db.execute(
        select(AuthSession).where(AuthSession.token == credentials.credentials)
    )
    session = result.scalar_one_or_none()
    if session is None:
        logger.warning("Rejected unknown session token")
        raise _unauthorized(UNKNOWN_TOKEN)

    if _as_utc(session.expires_at) <= datetime.now(timezone.utc):
        logger.info("Rejected expired session %s for user %s", session.id, session.user_id)
        raise _unauthorized(EXPIRED_SESSION)

    return session.user_id
