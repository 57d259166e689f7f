"""Chat API request/response schemas."""

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

from drknowsit.schemas.diagnosis import DiagnosisCandidate

# Validation limits
MAX_MESSAGE_LENGTH = 10000
MAX_CONVERSATION_HISTORY = 50


class ChatMessage(BaseModel):
    """A single message in client-supplied conversation history."""

    type: Literal["user", "ai"] = Field(description="Message author: 'user' or 'ai'")
    content: str = Field(max_length=MAX_MESSAGE_LENGTH)
    image_url: str | None = None


class ChatRequest(BaseModel):
    """Request body for the chat endpoint.

    `message` is deliberately not length-constrained at the schema level: an
    absent message is reported as a 400 input error by the pipeline.
    """

    message: str = Field(default="", max_length=MAX_MESSAGE_LENGTH)
    conversation_history: list[ChatMessage] = Field(
        default_factory=list,
        max_length=MAX_CONVERSATION_HISTORY,
    )
    user_id: str | None = Field(
        default=None,
        description="Ignored; the authenticated user is taken from the bearer token",
    )
    conversation_id: uuid.UUID | None = None
    patient_id: uuid.UUID | None = None
    image_url: str | None = None


class ChatResponse(BaseModel):
    """Chat turn result."""

    response: str = Field(description="Clean, user-visible assistant text")
    model: str
    usage: dict[str, Any] = Field(default_factory=dict)
    updated_diagnoses: list[DiagnosisCandidate] | None = Field(
        default=None,
        description="Merged candidate list when this turn produced candidates",
    )
    conversation_id: uuid.UUID | None = None
    tokens_used: float = 0
    timeout_triggered: bool = False


class MessageResponse(BaseModel):
    """Stored message as returned by the conversations API."""

    id: uuid.UUID
    type: Literal["user", "ai"]
    content: str
    image_url: str | None = None
    created_at: datetime | None = None
