"""Per-account token budget with a timed cool-down.

Each account accumulates the tokens its chat turns consume. Reaching the
limit stamps `limit_reached_at` and blocks chat until the timeout elapses,
after which the counter resets on the next check.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.config import settings
from drknowsit.models import UserTokenLimit

logger = logging.getLogger(__name__)


@dataclass
class TokenStatus:
    """Result of a token-budget check."""

    allowed: bool
    current_tokens: float
    retry_after_seconds: int = 0
    timeout_end: datetime | None = None


class TokenLimitExceeded(RuntimeError):
    """The account is in its token cool-down."""

    def __init__(self, status: TokenStatus):
        self.status = status
        super().__init__("Token limit reached. Please wait before continuing.")


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _timeout() -> timedelta:
    return timedelta(minutes=settings.token_timeout_minutes)


async def _get_or_create(db: AsyncSession, user_id: str) -> UserTokenLimit:
    result = await db.execute(select(UserTokenLimit).where(UserTokenLimit.user_id == user_id))
    row = result.scalar_one_or_none()
    if row is None:
        row = UserTokenLimit(user_id=user_id, current_tokens=0, can_chat=True, limit_reached_at=None)
        db.add(row)
        await db.flush()
    return row


async def check_token_status(
    db: AsyncSession,
    user_id: str,
    now: datetime | None = None,
) -> TokenStatus:
    """Check whether the account may chat, resetting an expired cool-down.

    Args:
        db: Database session
        user_id: Account id
        now: Reference time (defaults to UTC now)

    Returns:
        TokenStatus; when not allowed, carries the remaining wait.
    """
    now = now or datetime.now(timezone.utc)
    row = await _get_or_create(db, user_id)

    if row.limit_reached_at is not None:
        timeout_end = _as_utc(row.limit_reached_at) + _timeout()
        remaining = (timeout_end - now).total_seconds()
        if remaining <= 0:
            row.current_tokens = 0
            row.can_chat = True
            row.limit_reached_at = None
            await db.flush()
            logger.info("Token cool-down expired for user %s, counter reset", user_id)
            return TokenStatus(allowed=True, current_tokens=0)
        return TokenStatus(
            allowed=False,
            current_tokens=row.current_tokens,
            retry_after_seconds=math.ceil(remaining),
            timeout_end=timeout_end,
        )

    if not row.can_chat:
        return TokenStatus(
            allowed=False,
            current_tokens=row.current_tokens,
            retry_after_seconds=int(_timeout().total_seconds()),
            timeout_end=now + _timeout(),
        )
    return TokenStatus(allowed=True, current_tokens=row.current_tokens)


async def require_tokens(db: AsyncSession, user_id: str, now: datetime | None = None) -> TokenStatus:
    """Like check_token_status, but raises TokenLimitExceeded when blocked."""
    status = await check_token_status(db, user_id, now=now)
    if not status.allowed:
        logger.info(
            "No tokens remaining for user %s (current=%.0f, retry in %ds)",
            user_id, status.current_tokens, status.retry_after_seconds,
        )
        raise TokenLimitExceeded(status)
    return status


async def add_tokens(
    db: AsyncSession,
    user_id: str,
    tokens: float,
    now: datetime | None = None,
) -> bool:
    """Add consumed tokens to the account.

    Returns:
        True if this addition reached the limit and started the cool-down.
    """
    now = now or datetime.now(timezone.utc)
    row = await _get_or_create(db, user_id)
    row.current_tokens = (row.current_tokens or 0) + max(0.0, tokens)

    timeout_triggered = False
    if row.current_tokens >= settings.token_limit and row.limit_reached_at is None:
        row.can_chat = False
        row.limit_reached_at = now
        timeout_triggered = True
        logger.info("User %s reached the token limit and entered timeout", user_id)

    await db.flush()
    return timeout_triggered


def estimate_tokens(text: str) -> float:
    """Rough token estimate used when the model reports no usage."""
    return len(text) / 4
