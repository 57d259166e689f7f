"""Conversation and message repository."""

from __future__ import annotations

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from drknowsit.models import Conversation, Message, MessageType

# Conversation titles are derived from the first user message
MAX_TITLE_LENGTH = 50


def title_from_message(message: str) -> str:
    """Derive a conversation title from its first message."""
    message = " ".join(message.split())
    if len(message) > MAX_TITLE_LENGTH:
        return message[:MAX_TITLE_LENGTH] + "..."
    return message or "New conversation"


class ConversationRepository:
    """Repository for conversations and their append-only messages."""

    def __init__(self, db: AsyncSession):
        """Initialize repository with database session.

        Args:
            db: Async SQLAlchemy session.
        """
        self.db = db

    async def get_for_user(self, conversation_id: uuid.UUID, user_id: str) -> Conversation | None:
        """Get a conversation owned by the given account."""
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.user_id == user_id,
            )
        )
        return result.scalar_one_or_none()

    async def create(
        self,
        user_id: str,
        patient_id: uuid.UUID | None,
        title: str,
    ) -> Conversation:
        """Create a conversation.

        Args:
            user_id: Owning account id.
            patient_id: Patient the conversation is about, if any.
            title: Display title.

        Returns:
            The flushed Conversation.
        """
        conversation = Conversation(user_id=user_id, patient_id=patient_id, title=title)
        self.db.add(conversation)
        await self.db.flush()
        return conversation

    async def add_message(
        self,
        conversation_id: uuid.UUID,
        message_type: MessageType,
        content: str,
        image_url: str | None = None,
    ) -> Message:
        """Append a message to a conversation."""
        message = Message(
            conversation_id=conversation_id,
            type=message_type,
            content=content,
            image_url=image_url,
        )
        self.db.add(message)
        await self.db.flush()
        return message

    async def recent_messages(self, conversation_id: uuid.UUID, limit: int) -> list[Message]:
        """Get the most recent messages in chronological order.

        Args:
            conversation_id: Conversation UUID.
            limit: Number of messages to return.

        Returns:
            Up to `limit` messages, oldest first.
        """
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.desc())
            .limit(limit)
        )
        return list(reversed(result.scalars().all()))

    async def list_messages(
        self,
        conversation_id: uuid.UUID,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Message]:
        """List messages oldest first."""
        result = await self.db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
