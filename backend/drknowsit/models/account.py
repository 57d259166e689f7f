"""Per-account state: subscription, AI settings and token limits.

Subscription rows are owned by the billing integration; this service only
reads them.
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, String
from sqlalchemy.orm import Mapped, mapped_column

from drknowsit.database import Base


class Subscriber(Base):
    """Billing-owned subscription state."""

    __tablename__ = "subscribers"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    subscription_tier: Mapped[str] = mapped_column(String(20), nullable=False, default="free")
    subscribed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)


class AISettings(Base):
    """User-controlled AI behaviour settings."""

    __tablename__ = "ai_settings"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    memory_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    personalization_level: Mapped[str] = mapped_column(String(20), nullable=False, default="medium")


class UserTokenLimit(Base):
    """Rolling token counter driving the chat cool-down."""

    __tablename__ = "user_token_limits"

    user_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    current_tokens: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    can_chat: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    limit_reached_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
